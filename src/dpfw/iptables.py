"""Firewall Backend Interface on top of the iptables command line tools."""

from __future__ import annotations

import shlex
import logging
import subprocess
from typing import List, Sequence

from dpfw.errors import BackendError


def restore_input(table: str, lines: Sequence[str]) -> str:
    """Wrap rule lines into an iptables-restore transaction for one table."""
    body = "\n".join(lines)
    return f"*{table}\n{body}\nCOMMIT\n"


class IptablesBackend:
    def __init__(self, iptables: str = "iptables", iptables_restore: str = "iptables-restore",
                 nsenter: str = "nsenter"):
        self.iptables = iptables
        self.iptables_restore = iptables_restore
        self.nsenter = nsenter

    def _run(self, cmd: List[str], stdin: str = None) -> subprocess.CompletedProcess:
        logging.debug(f"Running command: {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, input=stdin.encode() if stdin is not None else None, check=True,
                                  stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError as e:
            raise BackendError(f"Required binary not found: {cmd[0]}") from e
        except subprocess.CalledProcessError as e:
            raise BackendError(f"Command failed: {' '.join(cmd)}\n{e.stderr.decode(errors='ignore').strip()}") from e

    def exists(self, chain: str, table: str = "filter") -> bool:
        """Read-only probe for a chain."""
        try:
            self._run([self.iptables, "-n", "-t", table, "--list", chain])
        except BackendError as e:
            if isinstance(e.__cause__, FileNotFoundError):
                raise
            return False
        return True

    def bulk_load(self, table: str, lines: Sequence[str]):
        """Load all lines for ``table`` in one iptables-restore call.

        iptables-restore commits a table atomically. --noflush keeps every
        chain not mentioned in ``lines`` as it is.
        """
        self._run([self.iptables_restore, "--noflush"], stdin=restore_input(table, lines))

    def apply_rule(self, container, rule: str):
        """Run one iptables rule inside the network namespace of a container."""
        if not container.pid:
            raise BackendError(f"Container {container.name} has no pid, cannot enter its network namespace")
        cmd = [self.nsenter, "-t", str(container.pid), "-n", self.iptables, *shlex.split(rule)]
        self._run(cmd)
