"""Publishes container aliases into the hosts files of other containers.

Each container_aliases rule makes the ``aliased_container`` resolvable (under
its own name or ``alias_name``) from every receiver container that shares a
network with it. Entries live in a marked block at the end of the receiver's
hosts file, so the lines Docker writes there are left alone.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

from dpfw.policy import AliasRule
from dpfw.runtime import ContainerSnapshot
from dpfw.selectors import matches_network, select

BLOCK_BEGIN = "# dpfw aliases begin"
BLOCK_END = "# dpfw aliases end"


def alias_entries(rules: Sequence[AliasRule], snapshot: ContainerSnapshot) -> Dict[str, List[Tuple[str, str]]]:
    """Receiver hosts path -> [(address, host name)], in rule order."""
    entries: Dict[str, List[Tuple[str, str]]] = {}
    for rule in rules:
        for net in snapshot.sorted_networks():
            if not matches_network(rule.receiver_network, net):
                continue
            members = snapshot.members(net.name)
            aliased = select(rule.aliased_container, members)
            for receiver in select(rule.receiver_containers, members):
                if not receiver.hosts_path:
                    continue
                for target in aliased:
                    if target.id == receiver.id:
                        continue
                    entry = (target.networks[net.name].address, rule.alias_name or target.name)
                    bucket = entries.setdefault(receiver.hosts_path, [])
                    if entry not in bucket:
                        bucket.append(entry)
    return entries


def render_hosts(existing: str, entries: Sequence[Tuple[str, str]]) -> str:
    kept, block = [], None
    for line in existing.splitlines():
        marker = line.strip()
        if marker == BLOCK_BEGIN:
            if block:
                kept.extend(block)
            block = []
        elif marker == BLOCK_END:
            block = None
        elif block is not None:
            block.append(line)
        else:
            kept.append(line)
    # Unterminated block (truncated write): keep what follows the marker
    if block:
        kept.extend(block)

    if entries:
        kept.append(BLOCK_BEGIN)
        kept.extend(f"{address}\t{name}" for address, name in entries)
        kept.append(BLOCK_END)
    return "\n".join(kept) + "\n" if kept else ""


class HostsPublisher:
    def __init__(self, rules: Sequence[AliasRule], dry_run: bool = False):
        self.rules = rules
        self.dry_run = dry_run

    def publish(self, snapshot: ContainerSnapshot):
        if not self.rules:
            return
        entries = alias_entries(self.rules, snapshot)

        # Visit every container so blocks of aliases that no longer apply get removed
        for container in snapshot.containers:
            path = container.hosts_path
            if not path:
                continue
            wanted = entries.get(path, [])
            try:
                with open(path, "r") as f:
                    current = f.read()
                updated = render_hosts(current, wanted)
                if updated == current:
                    continue
                if self.dry_run:
                    logging.info(f"[DRY-RUN] would publish {len(wanted)} aliases to {container.name}")
                    continue
                # Rewritten in place: Docker bind mounts this very inode
                with open(path, "w") as f:
                    f.write(updated)
                logging.info(f"Published {len(wanted)} aliases to {container.name}")
            except OSError as e:
                logging.warning(f"Cannot update hosts file of {container.name} ({path}): {e}")
