"""Turns (policy, snapshot) into iptables-restore lines.

Everything in here is a pure function of its arguments: the same policy and
the same snapshot always produce the same lines in the same order. Networks
are walked sorted by name, containers sorted by name, rule specs in the order
they were written in the policy file.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple

from dpfw.policy import Category, Policy, RuleSpec
from dpfw.runtime import Container, ContainerSnapshot, NetworkInfo
from dpfw.selectors import WILDCARD, Selector, matches_network, select

FORWARD_CHAIN = "DPFW_FORWARD"
INPUT_CHAIN = "DPFW_INPUT"
PREROUTING_CHAIN = "DPFW_PREROUTING"
POSTROUTING_CHAIN = "DPFW_POSTROUTING"

TABLES = ("filter", "nat")

RuleSet = Dict[str, List[str]]
Builder = Callable[[ContainerSnapshot, Category, str, RuleSet], None]


def rules_head(chain: str, stateful: bool = False) -> List[str]:
    lines = [f"################ {chain} head:", f"-F {chain}"]
    if stateful:
        lines.append(f"-A {chain} -m state --state INVALID -j DROP")
        lines.append(f"-A {chain} -m state --state RELATED,ESTABLISHED -j ACCEPT")
    return lines


def rules_tail(chain: str) -> List[str]:
    # DPFW_INPUT has no tail so other rule sets on INPUT keep working
    if chain == INPUT_CHAIN:
        return []
    return [f"################ {chain} tail:", f"-A {chain} -j DROP"]


def _rule(chain: str, *parts: Optional[str]) -> str:
    return " ".join([f"-A {chain}", *(p for p in parts if p)])


def _networks(snapshot: ContainerSnapshot, selector: Selector) -> List[NetworkInfo]:
    """Bridge networks matching ``selector``, sorted by name."""
    return [net for net in snapshot.sorted_networks() if net.bridge and matches_network(selector, net)]


def _address(container: Container, network: NetworkInfo) -> str:
    return container.networks[network.name].address


def _emit(rules: List[str], category: str, spec: RuleSpec, lines: List[str]):
    if not lines:
        logging.debug(f"{category} #{spec.index} matched nothing ({spec.describe()})")
        return
    rules.append(f"# {category} #{spec.index}: {spec.describe()}")
    rules.extend(lines)


def _pick_target(category: str, spec: RuleSpec,
                 candidates: List[Tuple[NetworkInfo, Container]]) -> Optional[Tuple[NetworkInfo, Container]]:
    """A host port can be redirected to a single address only, the first candidate wins."""
    if not candidates:
        return None
    if len(candidates) > 1:
        others = ", ".join(c.name for _, c in candidates[1:])
        logging.warning(f"{category} #{spec.index}: dst_container matches more than one container, "
                        f"using {candidates[0][1].name} and ignoring {others}")
    return candidates[0]


# ---------------- Category Builders -----------------
def build_container_to_container(snapshot: ContainerSnapshot, category: Category, ext_if: str, rules: RuleSet):
    out = rules["filter"]
    for spec in category.rules:
        lines = []
        for src_net in _networks(snapshot, spec.network):
            if spec.dst_network is None:
                dst_nets = [src_net]
            else:
                dst_nets = _networks(snapshot, spec.dst_network)
            sources = select(spec.src_container, snapshot.members(src_net.name))
            for dst_net in dst_nets:
                destinations = select(spec.dst_container, snapshot.members(dst_net.name))
                for src in sources:
                    for dst in destinations:
                        if src.id == dst.id:
                            continue
                        lines.append(_rule(
                            FORWARD_CHAIN, f"-i {src_net.bridge} -o {dst_net.bridge}",
                            f"-s {_address(src, src_net)} -d {_address(dst, dst_net)}",
                            spec.filter, f"-j {spec.action}"))
        _emit(out, "container_to_container", spec, lines)

    if category.default_policy:
        out.append("# container_to_container default policy")
        for net in _networks(snapshot, WILDCARD):
            out.append(_rule(FORWARD_CHAIN, f"-i {net.bridge} -o {net.bridge}", f"-j {category.default_policy}"))


def build_container_to_wider_world(snapshot: ContainerSnapshot, category: Category, ext_if: str, rules: RuleSet):
    out = rules["filter"]
    for spec in category.rules:
        lines = []
        for net in _networks(snapshot, spec.network):
            for src in select(spec.src_container, snapshot.members(net.name)):
                lines.append(_rule(FORWARD_CHAIN, f"-i {net.bridge} -o {ext_if}", f"-s {_address(src, net)}",
                                   spec.filter, f"-j {spec.action}"))
        _emit(out, "container_to_wider_world", spec, lines)

    if category.default_policy:
        out.append("# container_to_wider_world default policy")
        for net in _networks(snapshot, WILDCARD):
            out.append(_rule(FORWARD_CHAIN, f"-i {net.bridge} -o {ext_if}", f"-j {category.default_policy}"))


def build_container_to_host(snapshot: ContainerSnapshot, category: Category, ext_if: str, rules: RuleSet):
    out = rules["filter"]
    for spec in category.rules:
        lines = []
        for net in _networks(snapshot, spec.network):
            for src in select(spec.src_container, snapshot.members(net.name)):
                lines.append(_rule(INPUT_CHAIN, f"-i {net.bridge}", f"-s {_address(src, net)}",
                                   spec.filter, f"-j {spec.action}"))
        _emit(out, "container_to_host", spec, lines)

    if category.default_policy:
        out.append("# container_to_host default policy")
        for net in _networks(snapshot, WILDCARD):
            out.append(_rule(INPUT_CHAIN, f"-i {net.bridge}", f"-j {category.default_policy}"))


def build_wider_world_to_container(snapshot: ContainerSnapshot, category: Category, ext_if: str, rules: RuleSet):
    for spec in category.rules:
        candidates = [(net, c) for net in _networks(snapshot, spec.network)
                      for c in select(spec.dst_container, snapshot.members(net.name))]
        target = _pick_target("wider_world_to_container", spec, candidates)
        nat_lines, filter_lines = [], []
        if target:
            net, dst = target
            address = _address(dst, net)
            for port in spec.expose_port:
                nat_lines.append(_rule(
                    PREROUTING_CHAIN, f"-i {ext_if}", f"-p {port.family} --dport {port.host_port}",
                    f"-j DNAT --to-destination {address}:{port.container_port}"))
                filter_lines.append(_rule(
                    FORWARD_CHAIN, f"-i {ext_if} -o {net.bridge}", f"-d {address}",
                    f"-p {port.family} --dport {port.container_port}", "-j ACCEPT"))
        _emit(rules["nat"], "wider_world_to_container", spec, nat_lines)
        _emit(rules["filter"], "wider_world_to_container", spec, filter_lines)


def build_container_dnat(snapshot: ContainerSnapshot, category: Category, ext_if: str, rules: RuleSet):
    for spec in category.rules:
        dst_selector = spec.network if spec.dst_network is None else spec.dst_network
        candidates = [(net, c) for net in _networks(snapshot, dst_selector)
                      for c in select(spec.dst_container, snapshot.members(net.name))]
        target = _pick_target("container_dnat", spec, candidates)
        nat_lines, filter_lines = [], []
        if target:
            dst_net, dst = target
            dst_address = _address(dst, dst_net)
            for src_net in _networks(snapshot, spec.network):
                for src in select(spec.src_container, snapshot.members(src_net.name)):
                    if src.id == dst.id:
                        continue
                    src_address = _address(src, src_net)
                    for port in spec.expose_port:
                        nat_lines.append(_rule(
                            PREROUTING_CHAIN, f"-i {src_net.bridge}", f"-s {src_address}",
                            "-m addrtype --dst-type LOCAL", f"-p {port.family} --dport {port.host_port}",
                            f"-j DNAT --to-destination {dst_address}:{port.container_port}"))
                        filter_lines.append(_rule(
                            FORWARD_CHAIN, f"-i {src_net.bridge} -o {dst_net.bridge}",
                            f"-s {src_address} -d {dst_address}",
                            f"-p {port.family} --dport {port.container_port}", "-j ACCEPT"))
        _emit(rules["nat"], "container_dnat", spec, nat_lines)
        _emit(rules["filter"], "container_dnat", spec, filter_lines)


BUILDERS: Tuple[Tuple[str, Builder], ...] = (
    ("container_to_container", build_container_to_container),
    ("container_to_wider_world", build_container_to_wider_world),
    ("container_to_host", build_container_to_host),
    ("wider_world_to_container", build_wider_world_to_container),
    ("container_dnat", build_container_dnat),
)


def assemble(policy: Policy, snapshot: ContainerSnapshot) -> RuleSet:
    rules: RuleSet = {table: [] for table in TABLES}

    rules["filter"] += rules_head(FORWARD_CHAIN, stateful=True)
    rules["filter"] += rules_head(INPUT_CHAIN)
    rules["nat"] += rules_head(PREROUTING_CHAIN)

    for name, builder in BUILDERS:
        builder(snapshot, getattr(policy, name), policy.external_network_interface, rules)

    # and the final rule just for sure
    rules["filter"] += rules_tail(FORWARD_CHAIN)
    return rules
