import pytest

from dpfw.errors import BackendError
from dpfw.policy import parse_policy
from dpfw.runtime import Container, ContainerSnapshot, Membership, NetworkInfo


class FakeBackend:
    """Records every call; chains declared through bulk_load start to exist."""

    def __init__(self, chains=()):
        self.chains = set(chains)
        self.probes = []
        self.loads = []
        self.applied = []
        self.fail_load = False
        self.fail_apply_for = set()

    def exists(self, chain, table="filter"):
        self.probes.append((chain, table))
        return (chain, table) in self.chains

    def bulk_load(self, table, lines):
        if self.fail_load:
            raise BackendError("iptables-restore: line 3 failed")
        self.loads.append((table, list(lines)))
        for line in lines:
            if line.startswith(":"):
                self.chains.add((line[1:].split()[0], table))

    def apply_rule(self, container, rule):
        if container.name in self.fail_apply_for:
            raise BackendError(f"nsenter: cannot open /proc/{container.pid}/ns/net")
        self.applied.append((container.name, rule))

    @property
    def mutations(self):
        return len(self.loads) + len(self.applied)


class FakeRuntime:
    def __init__(self, snapshot):
        self.current = snapshot
        self.requests = []
        self.subscriptions = 0
        self.error = None

    def snapshot(self, extended=False):
        self.requests.append(extended)
        if self.error:
            raise self.error
        return self.current

    def subscribe(self, on_event, on_subscribed):
        self.subscriptions += 1


class FakeLoader:
    """Returns (or raises) the queued results, repeating the last one."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def load(self):
        self.calls += 1
        result = self.results[0] if len(self.results) == 1 else self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def make_container(name, networks, labels=None, pid=None, hosts_path=None, ports=()):
    return Container(
        id=f"{name}-{'0' * 60}",
        name=name,
        networks={net: Membership(net, addr, (name,)) for net, addr in networks.items()},
        labels=labels or {},
        ports=frozenset(ports),
        pid=pid,
        hosts_path=hosts_path,
    )


@pytest.fixture
def networks():
    return {
        "frontend": NetworkInfo("frontend", "f" * 64, "br-front", "172.18.0.0/16", "172.18.0.1"),
        "backend": NetworkInfo("backend", "b" * 64, "br-back", "172.19.0.0/16", "172.19.0.1"),
        "host": NetworkInfo("host", "h" * 64, None),
    }


@pytest.fixture
def snapshot(networks):
    containers = (
        make_container("db", {"backend": "172.19.0.3"}, {"tier": "db"}, pid=300),
        make_container("proxy", {"frontend": "172.18.0.3"}, {"tier": "proxy"}, pid=200),
        make_container("web", {"frontend": "172.18.0.2", "backend": "172.19.0.2"}, {"tier": "web"}, pid=100),
    )
    return ContainerSnapshot(containers=containers, networks=networks)


@pytest.fixture
def empty_policy():
    return parse_policy({})


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def bootstrapped_backend():
    return FakeBackend(chains={
        ("DPFW_FORWARD", "filter"), ("DPFW_INPUT", "filter"),
        ("DPFW_POSTROUTING", "nat"), ("DPFW_PREROUTING", "nat"),
    })
