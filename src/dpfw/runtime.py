"""Docker side of dpfw: point-in-time snapshots and the event subscription.

A snapshot is built from scratch on every reconciliation pass and never
updated in place. Two levels of detail are available:

  - sparse (``containers.list(sparse=True)``): one API call, enough for the
    rule builders (names, labels, addresses, exposed ports).
  - extended: every container is inspected, which adds the namespace pid and
    the hosts file path. Only needed for container internals and aliases.
"""

from __future__ import annotations

import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

import docker
from docker.errors import DockerException
from requests.exceptions import RequestException

from dpfw.errors import TransportError

BRIDGE_NAME_OPTION = "com.docker.network.bridge.name"
WATCHED_ACTIONS = ("start", "die")
EVENT_BACKOFF_SECS = 2.0


@dataclass(frozen=True)
class NetworkInfo:
    name: str
    id: str
    bridge: Optional[str] = None
    subnet: Optional[str] = None
    gateway: Optional[str] = None


@dataclass(frozen=True)
class Membership:
    network: str
    address: Optional[str]
    aliases: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Container:
    id: str
    name: str
    networks: Dict[str, Membership] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    ports: FrozenSet[str] = frozenset()
    # Extended info only
    pid: Optional[int] = None
    hosts_path: Optional[str] = None

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass(frozen=True)
class ContainerSnapshot:
    containers: Tuple[Container, ...] = ()
    networks: Dict[str, NetworkInfo] = field(default_factory=dict)
    extended: bool = False

    def sorted_networks(self) -> List[NetworkInfo]:
        return [self.networks[name] for name in sorted(self.networks)]

    def members(self, network: str) -> List[Container]:
        """Containers attached to ``network`` with an address, by name."""
        found = [c for c in self.containers
                 if network in c.networks and c.networks[network].address]
        return sorted(found, key=lambda c: c.name)


def network_from_attrs(attrs: dict) -> NetworkInfo:
    net_id = attrs.get("Id", "")
    options = attrs.get("Options") or {}
    bridge = options.get(BRIDGE_NAME_OPTION)
    if not bridge and attrs.get("Driver") == "bridge":
        bridge = f"br-{net_id[:12]}"

    subnet = gateway = None
    for pool in (attrs.get("IPAM") or {}).get("Config") or []:
        # IPv4 pool wins, the rules are iptables only
        if ":" in pool.get("Subnet", ""):
            continue
        subnet = pool.get("Subnet")
        gateway = pool.get("Gateway")
        break

    return NetworkInfo(name=attrs.get("Name", ""), id=net_id, bridge=bridge, subnet=subnet, gateway=gateway)


def container_from_attrs(attrs: dict) -> Container:
    """Build a Container from either list (sparse) or inspect attributes."""
    if attrs.get("Name"):
        name = attrs["Name"].lstrip("/")
    else:
        names = attrs.get("Names") or [""]
        name = names[0].lstrip("/")

    config = attrs.get("Config") or {}
    labels = config.get("Labels") if "Config" in attrs else attrs.get("Labels")

    settings = attrs.get("NetworkSettings") or {}
    networks: Dict[str, Membership] = {}
    for net_name, net in (settings.get("Networks") or {}).items():
        networks[net_name] = Membership(
            network=net_name,
            address=net.get("IPAddress") or None,
            aliases=tuple(net.get("Aliases") or ()),
        )

    ports = set()
    raw_ports = attrs.get("Ports")
    if isinstance(raw_ports, list):
        for port in raw_ports:
            ports.add(f"{port.get('PrivatePort')}/{port.get('Type', 'tcp')}")
    else:
        ports.update((config.get("ExposedPorts") or {}).keys())
        ports.update((settings.get("Ports") or {}).keys())

    state = attrs.get("State")
    pid = state.get("Pid") if isinstance(state, dict) else None

    return Container(
        id=attrs.get("Id", ""),
        name=name,
        networks=networks,
        labels=dict(labels or {}),
        ports=frozenset(ports),
        pid=pid or None,
        hosts_path=attrs.get("HostsPath") or None,
    )


class DockerRuntime:
    """Container Runtime Interface backed by the Docker SDK."""

    def __init__(self, socket: str, client: Optional[docker.DockerClient] = None,
                 events_client: Optional[docker.DockerClient] = None):
        self.socket = socket
        self._client = client
        self._events_client = events_client

    def connect(self) -> docker.DockerClient:
        try:
            return docker.DockerClient(base_url=self.socket)
        except DockerException as e:
            raise TransportError(f"Cannot connect to Docker at {self.socket}: {e}") from e

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = self.connect()
        return self._client

    def snapshot(self, extended: bool = False) -> ContainerSnapshot:
        logging.info("Talking to Docker daemon to learn current network and container configuration")
        try:
            networks = {}
            for net in self.client.networks.list():
                info = network_from_attrs(net.attrs)
                networks[info.name] = info

            containers = []
            for c in self.client.containers.list(sparse=not extended):
                containers.append(container_from_attrs(c.attrs))
        except (DockerException, RequestException) as e:
            raise TransportError(f"Docker snapshot failed: {e}") from e

        containers.sort(key=lambda c: c.name)
        logging.debug(f"Snapshot: {len(containers)} containers, {len(networks)} networks (extended={extended})")
        return ContainerSnapshot(containers=tuple(containers), networks=networks, extended=extended)

    # ---------------- Event Subscription -----------------
    def subscribe(self, on_event: Callable[[dict], None], on_subscribed: Callable[[], None]):
        """Block forever, forwarding start/die events.

        ``on_subscribed`` fires every time the event stream is (re)opened, so
        that changes made while no subscription was active still get picked
        up by a full pass. A broken stream is logged and reopened after
        EVENT_BACKOFF_SECS.
        """
        filters = {"type": "container", "event": list(WATCHED_ACTIONS)}
        while True:
            try:
                # Separate connection, snapshots keep using self.client from the main thread
                if self._events_client is None:
                    self._events_client = self.connect()
                events = self._events_client.events(decode=True, filters=filters)
                logging.info("Listening for Docker events...")
                on_subscribed()
                for event in events:
                    action = event.get("Action") or event.get("status")
                    if action in WATCHED_ACTIONS:
                        on_event(event)
                logging.warning("Docker event stream ended, resubscribing")
            except (DockerException, RequestException, TransportError) as e:
                logging.error(f"Docker event stream error: {e}. Reconnecting...")
                self._events_client = None
            time.sleep(EVENT_BACKOFF_SECS)
