"""Everything that mutates the firewall: chain bootstrap and rule commits.

Both classes honour dry-run themselves: in dry-run mode the backend only
ever sees read-only ``exists`` probes and the would-be changes are logged.
"""

from __future__ import annotations

import logging
from typing import List, Sequence

from dpfw.errors import BackendError
from dpfw.iptables import restore_input
from dpfw.policy import Policy
from dpfw.rules import FORWARD_CHAIN, INPUT_CHAIN, POSTROUTING_CHAIN, PREROUTING_CHAIN, TABLES, RuleSet
from dpfw.runtime import ContainerSnapshot
from dpfw.selectors import select

# (reserved chain, table, builtin chain jumping into it)
RESERVED_CHAINS = (
    (FORWARD_CHAIN, "filter", "FORWARD"),
    (INPUT_CHAIN, "filter", "INPUT"),
    (POSTROUTING_CHAIN, "nat", "POSTROUTING"),
    (PREROUTING_CHAIN, "nat", "PREROUTING"),
)


class Bootstrapper:
    """Creates and links the reserved chains, once per missing chain."""

    def __init__(self, backend, dry_run: bool = False):
        self.backend = backend
        self.dry_run = dry_run

    @staticmethod
    def chain_lines(chain: str, builtin: str, external_if: str) -> List[str]:
        lines = [f":{chain} - [0:0]", f"-I {builtin} -j {chain}"]
        if chain == POSTROUTING_CHAIN:
            lines.append(f"-A {chain} -o {external_if} -j MASQUERADE")
        return lines

    def run(self, policy: Policy) -> List[str]:
        """Returns the chains that had to be created."""
        created = []
        for chain, table, builtin in RESERVED_CHAINS:
            if self.backend.exists(chain, table):
                logging.debug(f"{chain} chain already present in {table} table")
                continue

            logging.info(f"{chain} chain not found, initializing")
            # Declaration and jump go in one restore call so the chain never exists unlinked
            lines = self.chain_lines(chain, builtin, policy.external_network_interface)
            if self.dry_run:
                logging.info(f"[DRY-RUN] would load into {table}:\n" + restore_input(table, lines))
            else:
                self.backend.bulk_load(table, lines)
            created.append(chain)
        return created


class Committer:
    """The only place where rule sets reach the backend."""

    def __init__(self, backend, dry_run: bool = False):
        self.backend = backend
        self.dry_run = dry_run

    def _load(self, table: str, lines: Sequence[str]):
        logging.debug(f"Rules for the {table} table:\n" + restore_input(table, lines))
        if self.dry_run:
            logging.info(f"[DRY-RUN] {table} table:\n" + restore_input(table, lines))
            return
        logging.info(f"Committing {len(lines)} lines to the {table} table")
        self.backend.bulk_load(table, lines)

    def initialize(self, policy: Policy):
        """Load the operator's startup rules (``initialization`` in the policy)."""
        for table in sorted(policy.initialization):
            lines = policy.initialization[table]
            if lines:
                logging.info(f"Applying {len(lines)} initialization rules to the {table} table")
                self._load(table, lines)

    def commit(self, rules: RuleSet):
        for table in TABLES:
            self._load(table, rules[table])

    def apply_internals(self, policy: Policy, snapshot: ContainerSnapshot) -> int:
        """Apply container_internals rules inside each matching container.

        A container failing (typically because it died since the snapshot)
        is logged and skipped, the others still get their rules.
        """
        applied = 0
        for internal in policy.container_internals:
            for container in select(internal.container, snapshot.containers):
                try:
                    for rule in internal.rules:
                        if self.dry_run:
                            logging.info(f"[DRY-RUN] {container.name}: iptables {rule}")
                        else:
                            self.backend.apply_rule(container, rule)
                        applied += 1
                except BackendError as e:
                    logging.error(f"Internal rules of container {container.name} failed: {e}")
        return applied
