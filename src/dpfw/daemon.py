#!/usr/bin/env python3
"""dpfw daemon: keeps iptables in line with the policy and running containers.

Triggers and what they do:

  startup            load policy (fatal on error), bootstrap the DPFW_* chains,
                     apply initialization rules, full pass
  SIGTERM / SIGINT   exit right away, rules stay in place
  SIGALRM / timer    new snapshot, full pass (policy is not reparsed)
  SIGHUP             reload the policy; a broken file keeps the old policy and
                     only other queued triggers get a pass
  container event    new snapshot, full pass (start and die only)
  subscribed         new snapshot, full pass; closes the gap between the
                     startup snapshot and the first event we can see

Signal handlers and the Docker event thread never touch iptables. They put a
message on ``Daemon.queue`` and the main thread, the single consumer, runs the
passes one after another.
"""

from __future__ import annotations

import queue
import signal
import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

import click

from dpfw.aliases import HostsPublisher
from dpfw.engine import Bootstrapper, Committer
from dpfw.errors import FirewallError, ParseError
from dpfw.iptables import IptablesBackend
from dpfw.policy import DEFAULT_CONFIG_PATH, Policy, PolicyLoader
from dpfw.rules import assemble
from dpfw.runtime import EVENT_BACKOFF_SECS, ContainerSnapshot, DockerRuntime


# ---------------- Control Messages -----------------
@dataclass(frozen=True)
class Refresh:
    reason: str = "timer"


@dataclass(frozen=True)
class Reload:
    pass


@dataclass(frozen=True)
class RuntimeEvent:
    action: str
    container: str


@dataclass(frozen=True)
class Subscribed:
    pass


@dataclass(frozen=True)
class Context:
    """What a pass works from. Replaced as a whole, never modified."""
    policy: Policy
    snapshot: ContainerSnapshot


class Daemon:
    def __init__(self, loader: PolicyLoader, backend, runtime_factory: Callable = DockerRuntime,
                 dry_run: bool = False, one_shot: bool = False):
        self.loader = loader
        self.runtime_factory = runtime_factory
        self.dry_run = dry_run
        self.one_shot = one_shot
        self.bootstrapper = Bootstrapper(backend, dry_run=dry_run)
        self.committer = Committer(backend, dry_run=dry_run)
        # SimpleQueue.put is reentrant, signal handlers may call it
        self.queue: queue.SimpleQueue = queue.SimpleQueue()
        self.runtime = None
        self.context: Optional[Context] = None

    # ---------------- Startup -----------------
    def bootstrap(self):
        """Everything that must work for the daemon to start. Errors propagate."""
        policy = self.loader.load()
        self.runtime = self.runtime_factory(policy.docker_socket)
        self.bootstrapper.run(policy)
        self.committer.initialize(policy)
        self.context = Context(policy, self.runtime.snapshot(policy.needs_extended_info))
        self.reconcile()

    def run(self):
        self.install_signal_handlers()
        self.bootstrap()
        self.watch_events()
        while True:
            self.step()

    def install_signal_handlers(self):
        signal.signal(signal.SIGTERM, self.terminate)
        signal.signal(signal.SIGINT, self.terminate)
        signal.signal(signal.SIGHUP, lambda *_: self.queue.put(Reload()))
        signal.signal(signal.SIGALRM, lambda *_: self.queue.put(Refresh("SIGALRM")))

    def terminate(self, *_):
        logging.info("Received term signal, exiting")
        raise SystemExit(0)

    # ---------------- Docker Events -----------------
    def watch_events(self) -> threading.Thread:
        thread = threading.Thread(target=self._event_worker, name="docker-events", daemon=True)
        thread.start()
        return thread

    def _event_worker(self):
        while True:
            try:
                self.runtime.subscribe(self._on_event, self._on_subscribed)
            except Exception as e:
                logging.error(f"Event subscription failed: {e}", exc_info=e)
            time.sleep(EVENT_BACKOFF_SECS)

    def _on_event(self, event: dict):
        action = event.get("Action") or event.get("status")
        actor = event.get("Actor") or {}
        name = (actor.get("Attributes") or {}).get("name") or (actor.get("ID") or event.get("id", ""))[:12]
        logging.info(f"Docker event: {action} of {name}")
        self.queue.put(RuntimeEvent(action, name))

    def _on_subscribed(self):
        self.queue.put(Subscribed())

    # ---------------- Reconciliation -----------------
    def refresh_snapshot(self):
        policy = self.context.policy
        self.context = Context(policy, self.runtime.snapshot(policy.needs_extended_info))

    def reload(self) -> bool:
        try:
            policy = self.loader.load()
        except ParseError as e:
            logging.error(f"Syntax error in configuration file:\n{e}\n\n"
                          "Reverting to original config and not proceeding to firewall ruleset rebuild")
            return False

        if policy.docker_socket != self.context.policy.docker_socket:
            logging.warning("docker_socket changed, the new value is only used after a restart")
        # Policy swaps first, a snapshot failure below must not undo it
        self.context = Context(policy, self.context.snapshot)
        self.committer.initialize(policy)
        self.refresh_snapshot()
        return True

    def reconcile(self):
        """One full pass over the current context."""
        ctx = self.context
        logging.info("Rebuilding firewall ruleset...")
        rules = assemble(ctx.policy, ctx.snapshot)
        self.committer.commit(rules)
        self.committer.apply_internals(ctx.policy, ctx.snapshot)
        HostsPublisher(ctx.policy.container_aliases, dry_run=self.dry_run).publish(ctx.snapshot)

        if self.one_shot:
            logging.info("Exiting, one-shot was specified")
            raise SystemExit(0)

    def handle(self, messages: List):
        """Run one pass for a batch of messages; a Reload in the batch wins."""
        try:
            if any(isinstance(m, Reload) for m in messages):
                logging.info("Received HUP signal, rebuilding everything")
                if not self.reload():
                    if all(isinstance(m, Reload) for m in messages):
                        return
                    # Other triggers in the batch still get their pass, under the old policy
                    self.refresh_snapshot()
            else:
                self.refresh_snapshot()
            self.reconcile()
        except FirewallError as e:
            logging.error(f"Reconciliation failed, waiting for the next trigger: {e}")
        except Exception as e:
            logging.error(f"Unexpected error during reconciliation: {e}", exc_info=e)

    def step(self, timeout: Optional[float] = None):
        """Wait for the next trigger, then run a single pass for it and anything queued behind it."""
        if timeout is None:
            timeout = self.context.policy.refresh_interval
        try:
            messages = [self.queue.get(timeout=timeout)]
        except queue.Empty:
            messages = [Refresh("timer")]
        while True:
            try:
                messages.append(self.queue.get_nowait())
            except queue.Empty:
                break
        logging.debug(f"Handling {messages}")
        if any(isinstance(m, Refresh) and m.reason == "SIGALRM" for m in messages):
            logging.info("Received alarm signal, rebuilding Docker configuration")
        self.handle(messages)


@click.command()
@click.option("--dry-run", is_flag=True, help="Compute and log the rule sets, change nothing.")
@click.option("--one-shot", is_flag=True, help="Reconcile once, then exit.")
def main(dry_run: bool, one_shot: bool):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    logging.info("Starting dpfw...")
    daemon = Daemon(PolicyLoader(DEFAULT_CONFIG_PATH), IptablesBackend(), dry_run=dry_run, one_shot=one_shot)
    try:
        daemon.run()
    except FirewallError as e:
        logging.critical(f"Startup failed: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
