import pytest

from dpfw.engine import RESERVED_CHAINS, Bootstrapper, Committer
from dpfw.errors import BackendError
from dpfw.policy import parse_policy
from dpfw.rules import assemble


class TestBootstrapper:
    def test_creates_and_links_missing_chains(self, backend):
        policy = parse_policy({"external_network_interface": "wan0"})
        created = Bootstrapper(backend).run(policy)

        assert created == ["DPFW_FORWARD", "DPFW_INPUT", "DPFW_POSTROUTING", "DPFW_PREROUTING"]
        assert backend.loads == [
            ("filter", [":DPFW_FORWARD - [0:0]", "-I FORWARD -j DPFW_FORWARD"]),
            ("filter", [":DPFW_INPUT - [0:0]", "-I INPUT -j DPFW_INPUT"]),
            ("nat", [":DPFW_POSTROUTING - [0:0]", "-I POSTROUTING -j DPFW_POSTROUTING",
                     "-A DPFW_POSTROUTING -o wan0 -j MASQUERADE"]),
            ("nat", [":DPFW_PREROUTING - [0:0]", "-I PREROUTING -j DPFW_PREROUTING"]),
        ]

    def test_second_run_is_read_only(self, backend, empty_policy):
        bootstrapper = Bootstrapper(backend)
        bootstrapper.run(empty_policy)
        chains_after_first = set(backend.chains)
        loads_after_first = len(backend.loads)

        assert bootstrapper.run(empty_policy) == []
        assert backend.chains == chains_after_first
        assert len(backend.loads) == loads_after_first

    def test_only_missing_chains_are_created(self, backend, empty_policy):
        backend.chains.add(("DPFW_INPUT", "filter"))
        backend.chains.add(("DPFW_PREROUTING", "nat"))
        assert Bootstrapper(backend).run(empty_policy) == ["DPFW_FORWARD", "DPFW_POSTROUTING"]

    def test_probes_every_reserved_chain(self, bootstrapped_backend, empty_policy):
        Bootstrapper(bootstrapped_backend).run(empty_policy)
        assert bootstrapped_backend.probes == [(chain, table) for chain, table, _ in RESERVED_CHAINS]
        assert bootstrapped_backend.mutations == 0

    def test_dry_run(self, backend, empty_policy):
        assert len(Bootstrapper(backend, dry_run=True).run(empty_policy)) == 4
        assert backend.mutations == 0

    def test_backend_errors_propagate(self, backend, empty_policy):
        backend.fail_load = True
        with pytest.raises(BackendError):
            Bootstrapper(backend).run(empty_policy)


class TestCommitter:
    def test_one_bulk_load_per_table(self, bootstrapped_backend, empty_policy, snapshot):
        rules = assemble(empty_policy, snapshot)
        Committer(bootstrapped_backend).commit(rules)
        assert [table for table, _ in bootstrapped_backend.loads] == ["filter", "nat"]
        assert bootstrapped_backend.loads[0][1] == rules["filter"]

    def test_dry_run_logs_instead_of_loading(self, bootstrapped_backend, empty_policy, snapshot, caplog):
        caplog.set_level("INFO")
        Committer(bootstrapped_backend, dry_run=True).commit(assemble(empty_policy, snapshot))
        assert bootstrapped_backend.mutations == 0
        assert "[DRY-RUN] filter table:\n*filter\n" in caplog.text

    def test_initialization(self, bootstrapped_backend):
        policy = parse_policy({"initialization": {
            "nat": ["-A POSTROUTING -s 10.0.0.0/8 -j MASQUERADE"],
            "filter": ["-P FORWARD DROP"],
            "raw": [],
        }})
        Committer(bootstrapped_backend).initialize(policy)
        assert bootstrapped_backend.loads == [
            ("filter", ["-P FORWARD DROP"]),
            ("nat", ["-A POSTROUTING -s 10.0.0.0/8 -j MASQUERADE"]),
        ]

    def test_internals_once_per_matching_container(self, bootstrapped_backend, snapshot):
        policy = parse_policy({"container_internals": [
            {"container": "Network == frontend", "rules": ["-P INPUT DROP", "-A INPUT -p tcp --dport 80 -j ACCEPT"]},
        ]})
        applied = Committer(bootstrapped_backend).apply_internals(policy, snapshot)
        assert applied == 4
        assert bootstrapped_backend.applied == [
            ("proxy", "-P INPUT DROP"),
            ("proxy", "-A INPUT -p tcp --dport 80 -j ACCEPT"),
            ("web", "-P INPUT DROP"),
            ("web", "-A INPUT -p tcp --dport 80 -j ACCEPT"),
        ]

    def test_failing_container_does_not_stop_the_others(self, bootstrapped_backend, snapshot):
        bootstrapped_backend.fail_apply_for.add("proxy")
        policy = parse_policy({"container_internals": [{"container": "*", "rules": ["-P INPUT DROP"]}]})
        Committer(bootstrapped_backend).apply_internals(policy, snapshot)
        assert bootstrapped_backend.applied == [("db", "-P INPUT DROP"), ("web", "-P INPUT DROP")]

    def test_internals_dry_run(self, bootstrapped_backend, snapshot):
        policy = parse_policy({"container_internals": [{"container": "*", "rules": ["-P INPUT DROP"]}]})
        assert Committer(bootstrapped_backend, dry_run=True).apply_internals(policy, snapshot) == 3
        assert bootstrapped_backend.mutations == 0
