"""Policy model and its JSON loader.

A policy file looks like:

    {
      "external_network_interface": "eth0",
      "container_to_container": {
        "default_policy": "DROP",
        "rules": [
          {"network": "Name == backend", "src_container": "Name =~ ^web",
           "dst_container": "Name == db", "filter": "-p tcp --dport 5432",
           "action": "ACCEPT"}
        ]
      },
      "wider_world_to_container": {
        "rules": [{"network": "Name == frontend", "dst_container": "Label tier == web",
                   "expose_port": [80, "8443:443/tcp"]}]
      }
    }

A Policy is immutable. Loading either returns a brand new Policy or raises
ParseError, the previously loaded one is never touched.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dpfw.errors import ParseError
from dpfw.selectors import WILDCARD, Selector, parse_network_selector, parse_selector

DEFAULT_CONFIG_PATH = "/etc/dpfw.conf"
DEFAULT_DOCKER_SOCKET = "unix:///var/run/docker.sock"
DEFAULT_REFRESH_INTERVAL = 300.0

ACTIONS = {"ACCEPT", "DROP", "REJECT", "RETURN"}
FAMILIES = {"tcp", "udp"}
TABLES = {"filter", "nat", "mangle", "raw"}

CATEGORY_FIELDS = {
    "container_to_container": {"network", "dst_network", "src_container", "dst_container", "filter", "action"},
    "container_to_wider_world": {"network", "src_container", "filter", "action"},
    "container_to_host": {"network", "src_container", "filter", "action"},
    "wider_world_to_container": {"network", "dst_container", "expose_port"},
    "container_dnat": {"network", "src_container", "dst_network", "dst_container", "expose_port"},
}
# Categories where a rule without ports makes no sense
PORT_CATEGORIES = {"wider_world_to_container", "container_dnat"}
DEFAULT_POLICY_CATEGORIES = {"container_to_container", "container_to_wider_world", "container_to_host"}

TOP_LEVEL_KEYS = {
    "docker_socket", "external_network_interface", "refresh_interval", "initialization",
    "container_internals", "container_aliases",
} | set(CATEGORY_FIELDS)


@dataclass(frozen=True)
class PortMapping:
    host_port: int
    container_port: int
    family: str = "tcp"

    def __str__(self):
        return f"{self.host_port}:{self.container_port}/{self.family}"


@dataclass(frozen=True)
class RuleSpec:
    index: int
    network: Selector = WILDCARD
    dst_network: Optional[Selector] = None
    src_container: Selector = WILDCARD
    dst_container: Selector = WILDCARD
    filter: str = ""
    action: str = "ACCEPT"
    expose_port: Tuple[PortMapping, ...] = ()

    def describe(self) -> str:
        parts = [f"network: {self.network}"]
        if self.dst_network is not None:
            parts.append(f"dst_network: {self.dst_network}")
        parts.append(f"src: {self.src_container}")
        parts.append(f"dst: {self.dst_container}")
        if self.expose_port:
            parts.append("ports: " + ",".join(str(p) for p in self.expose_port))
        return ", ".join(parts)


@dataclass(frozen=True)
class Category:
    rules: Tuple[RuleSpec, ...] = ()
    default_policy: Optional[str] = None


@dataclass(frozen=True)
class InternalRule:
    container: Selector
    rules: Tuple[str, ...]


@dataclass(frozen=True)
class AliasRule:
    aliased_container: Selector
    receiver_network: Selector = WILDCARD
    receiver_containers: Selector = WILDCARD
    alias_name: Optional[str] = None


@dataclass(frozen=True)
class Policy:
    docker_socket: str = DEFAULT_DOCKER_SOCKET
    external_network_interface: str = "eth0"
    refresh_interval: float = DEFAULT_REFRESH_INTERVAL
    initialization: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    container_to_container: Category = Category()
    container_to_wider_world: Category = Category()
    container_to_host: Category = Category()
    wider_world_to_container: Category = Category()
    container_dnat: Category = Category()
    container_internals: Tuple[InternalRule, ...] = ()
    container_aliases: Tuple[AliasRule, ...] = ()

    @property
    def needs_extended_info(self) -> bool:
        """Inspecting every container is only worth it for internals and aliases."""
        return bool(self.container_internals or self.container_aliases)


# ---------------- Parsing -----------------
def _rule_line(value, where: str) -> str:
    if not isinstance(value, str):
        raise ParseError(f"{where}: expected a string, got {value!r}")
    if "\n" in value or "\r" in value:
        raise ParseError(f"{where}: line breaks are not allowed")
    return value.strip()


def _action(value, where: str) -> str:
    if not isinstance(value, str) or value.upper() not in ACTIONS:
        raise ParseError(f"{where}: invalid action {value!r}, expected one of {', '.join(sorted(ACTIONS))}")
    return value.upper()


def _port(value, where: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ParseError(f"{where}: invalid port {value!r}") from None
    if not 0 < port < 65536:
        raise ParseError(f"{where}: port {port} out of range")
    return port


def parse_port_mapping(value, where: str) -> PortMapping:
    """Accept 80, "80", "8080:80", "53/udp", "5353:53/udp" or an object."""
    if isinstance(value, dict):
        unknown = set(value) - {"host_port", "container_port", "family"}
        if unknown:
            raise ParseError(f"{where}: unknown keys {', '.join(sorted(unknown))}")
        if "container_port" not in value:
            raise ParseError(f"{where}: container_port is required")
        container_port = _port(value["container_port"], where)
        host_port = _port(value.get("host_port", container_port), where)
        family = str(value.get("family", "tcp")).lower()
    elif isinstance(value, (int, str)) and not isinstance(value, bool):
        text = str(value).strip()
        family = "tcp"
        if "/" in text:
            text, family = text.split("/", 1)
            family = family.lower()
        if ":" in text:
            host, cont = text.split(":", 1)
            host_port, container_port = _port(host, where), _port(cont, where)
        else:
            host_port = container_port = _port(text, where)
    else:
        raise ParseError(f"{where}: invalid expose_port entry {value!r}")

    if family not in FAMILIES:
        raise ParseError(f"{where}: unknown protocol '{family}'")
    return PortMapping(host_port, container_port, family)


def parse_rule(category: str, index: int, raw) -> RuleSpec:
    where = f"{category}[{index}]"
    if not isinstance(raw, dict):
        raise ParseError(f"{where}: rule must be an object")
    unknown = set(raw) - CATEGORY_FIELDS[category]
    if unknown:
        raise ParseError(f"{where}: unknown keys {', '.join(sorted(unknown))}")

    ports = ()
    if category in PORT_CATEGORIES:
        raw_ports = raw.get("expose_port")
        if raw_ports is None:
            raise ParseError(f"{where}: expose_port is required")
        if not isinstance(raw_ports, list):
            raw_ports = [raw_ports]
        if not raw_ports:
            raise ParseError(f"{where}: expose_port is empty")
        ports = tuple(parse_port_mapping(p, f"{where}.expose_port") for p in raw_ports)

    dst_network = raw.get("dst_network")
    return RuleSpec(
        index=index,
        network=parse_network_selector(raw.get("network")),
        dst_network=parse_network_selector(dst_network) if dst_network is not None else None,
        src_container=parse_selector(raw.get("src_container")),
        dst_container=parse_selector(raw.get("dst_container")),
        filter=_rule_line(raw.get("filter", ""), f"{where}.filter"),
        action=_action(raw.get("action", "ACCEPT"), f"{where}.action"),
        expose_port=ports,
    )


def parse_category(name: str, raw) -> Category:
    if raw is None:
        return Category()
    if isinstance(raw, list):
        raw = {"rules": raw}
    if not isinstance(raw, dict):
        raise ParseError(f"{name}: expected an object or a list of rules")
    unknown = set(raw) - {"rules", "default_policy"}
    if unknown:
        raise ParseError(f"{name}: unknown keys {', '.join(sorted(unknown))}")

    default_policy = raw.get("default_policy")
    if default_policy is not None:
        if name not in DEFAULT_POLICY_CATEGORIES:
            raise ParseError(f"{name}: default_policy is not supported here")
        default_policy = _action(default_policy, f"{name}.default_policy")

    rules = raw.get("rules") or []
    if not isinstance(rules, list):
        raise ParseError(f"{name}.rules: expected a list")
    return Category(
        rules=tuple(parse_rule(name, i, r) for i, r in enumerate(rules)),
        default_policy=default_policy,
    )


def parse_initialization(raw) -> Dict[str, Tuple[str, ...]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ParseError("initialization: expected an object of table -> rule list")
    tables = {}
    for table, lines in raw.items():
        if table not in TABLES:
            raise ParseError(f"initialization: unknown table '{table}'")
        if not isinstance(lines, list):
            raise ParseError(f"initialization.{table}: expected a list")
        tables[table] = tuple(_rule_line(line, f"initialization.{table}[{i}]") for i, line in enumerate(lines))
    return tables


def parse_internals(raw) -> Tuple[InternalRule, ...]:
    if raw is None:
        return ()
    if isinstance(raw, dict):
        raw = raw.get("rules") or []
    if not isinstance(raw, list):
        raise ParseError("container_internals: expected a list of rules")
    internals = []
    for i, entry in enumerate(raw):
        where = f"container_internals[{i}]"
        if not isinstance(entry, dict) or "container" not in entry:
            raise ParseError(f"{where}: expected an object with a 'container' selector")
        lines = entry.get("rules") or []
        if not isinstance(lines, list):
            raise ParseError(f"{where}.rules: expected a list")
        internals.append(InternalRule(
            container=parse_selector(entry["container"]),
            rules=tuple(_rule_line(line, f"{where}.rules[{n}]") for n, line in enumerate(lines)),
        ))
    return tuple(internals)


def parse_aliases(raw) -> Tuple[AliasRule, ...]:
    if raw is None:
        return ()
    if isinstance(raw, dict):
        raw = raw.get("rules") or []
    if not isinstance(raw, list):
        raise ParseError("container_aliases: expected a list of rules")
    aliases = []
    for i, entry in enumerate(raw):
        where = f"container_aliases[{i}]"
        if not isinstance(entry, dict) or "aliased_container" not in entry:
            raise ParseError(f"{where}: expected an object with an 'aliased_container' selector")
        alias_name = entry.get("alias_name")
        if alias_name is not None and (not isinstance(alias_name, str) or not alias_name.strip()
                                       or any(ch.isspace() for ch in alias_name.strip())):
            raise ParseError(f"{where}.alias_name: invalid host name {alias_name!r}")
        aliases.append(AliasRule(
            aliased_container=parse_selector(entry["aliased_container"]),
            receiver_network=parse_network_selector(entry.get("receiver_network")),
            receiver_containers=parse_selector(entry.get("receiver_containers")),
            alias_name=alias_name.strip() if alias_name else None,
        ))
    return tuple(aliases)


def parse_policy(data) -> Policy:
    if not isinstance(data, dict):
        raise ParseError("Policy must be a JSON object")
    unknown = set(data) - TOP_LEVEL_KEYS
    if unknown:
        raise ParseError(f"Unknown top level keys: {', '.join(sorted(unknown))}")

    iface = data.get("external_network_interface", "eth0")
    if not isinstance(iface, str) or not iface.strip() or " " in iface.strip():
        raise ParseError(f"external_network_interface: invalid interface name {iface!r}")

    socket = data.get("docker_socket", DEFAULT_DOCKER_SOCKET)
    if not isinstance(socket, str) or not socket:
        raise ParseError(f"docker_socket: invalid value {socket!r}")
    if socket.startswith("/"):
        socket = f"unix://{socket}"

    refresh = data.get("refresh_interval", DEFAULT_REFRESH_INTERVAL)
    if isinstance(refresh, bool) or not isinstance(refresh, (int, float)) or refresh <= 0:
        raise ParseError(f"refresh_interval: expected a positive number of seconds, got {refresh!r}")

    return Policy(
        docker_socket=socket,
        external_network_interface=iface.strip(),
        refresh_interval=float(refresh),
        initialization=parse_initialization(data.get("initialization")),
        container_internals=parse_internals(data.get("container_internals")),
        container_aliases=parse_aliases(data.get("container_aliases")),
        **{name: parse_category(name, data.get(name)) for name in CATEGORY_FIELDS},
    )


class PolicyLoader:
    """Reads and validates the policy file, as often as asked to."""

    def __init__(self, path: str = DEFAULT_CONFIG_PATH):
        self.path = path

    def load(self) -> Policy:
        logging.info(f"Parsing policy file {self.path}")
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except OSError as e:
            raise ParseError(f"Cannot read {self.path}: {e.strerror or e}") from e
        except json.JSONDecodeError as e:
            raise ParseError(f"{self.path}:{e.lineno}:{e.colno}: {e.msg}") from e

        try:
            return parse_policy(data)
        except ParseError as e:
            raise ParseError(f"{self.path}: {e}") from e
