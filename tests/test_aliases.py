from dpfw.aliases import BLOCK_BEGIN, BLOCK_END, HostsPublisher, alias_entries, render_hosts
from dpfw.policy import parse_policy
from dpfw.runtime import ContainerSnapshot

from conftest import make_container

DOCKER_HOSTS = "127.0.0.1\tlocalhost\n::1\tlocalhost ip6-localhost\n172.18.0.2\tweb\n"


def snapshot_with_hosts(tmp_path, networks):
    containers = []
    for name, nets in (("db", {"backend": "172.19.0.3"}),
                       ("proxy", {"frontend": "172.18.0.3"}),
                       ("web", {"frontend": "172.18.0.2", "backend": "172.19.0.2"})):
        path = tmp_path / f"{name}.hosts"
        path.write_text(DOCKER_HOSTS)
        containers.append(make_container(name, nets, hosts_path=str(path)))
    return ContainerSnapshot(containers=tuple(containers), networks=networks, extended=True)


def test_render_replaces_previous_block():
    first = render_hosts(DOCKER_HOSTS, [("172.19.0.3", "database")])
    assert first.startswith(DOCKER_HOSTS)
    assert f"{BLOCK_BEGIN}\n172.19.0.3\tdatabase\n{BLOCK_END}\n" in first

    second = render_hosts(first, [("172.19.0.4", "database")])
    assert "172.19.0.3" not in second
    assert second.count(BLOCK_BEGIN) == 1

    assert render_hosts(second, []) == DOCKER_HOSTS


def test_render_keeps_lines_after_unterminated_block():
    truncated = f"{BLOCK_BEGIN}\n{DOCKER_HOSTS}"
    assert render_hosts(truncated, [("172.19.0.4", "database")]) == (
        f"{DOCKER_HOSTS}{BLOCK_BEGIN}\n172.19.0.4\tdatabase\n{BLOCK_END}\n"
    )
    assert render_hosts(truncated, []) == DOCKER_HOSTS


def test_entries_only_for_shared_networks(tmp_path, networks):
    snapshot = snapshot_with_hosts(tmp_path, networks)
    policy = parse_policy({"container_aliases": [{"aliased_container": "Name == db", "alias_name": "database"}]})
    entries = alias_entries(policy.container_aliases, snapshot)

    assert entries == {str(tmp_path / "web.hosts"): [("172.19.0.3", "database")]}


def test_publish_writes_and_cleans_up(tmp_path, networks):
    snapshot = snapshot_with_hosts(tmp_path, networks)
    policy = parse_policy({"container_aliases": [
        {"aliased_container": "Name == web", "receiver_network": "Name == frontend"},
    ]})
    HostsPublisher(policy.container_aliases).publish(snapshot)

    proxy_hosts = (tmp_path / "proxy.hosts").read_text()
    assert "172.18.0.2\tweb\n" + BLOCK_END in proxy_hosts
    assert (tmp_path / "db.hosts").read_text() == DOCKER_HOSTS

    other = parse_policy({"container_aliases": [{"aliased_container": "Name == nobody"}]})
    HostsPublisher(other.container_aliases).publish(snapshot)
    assert (tmp_path / "proxy.hosts").read_text() == DOCKER_HOSTS


def test_dry_run_writes_nothing(tmp_path, networks):
    snapshot = snapshot_with_hosts(tmp_path, networks)
    policy = parse_policy({"container_aliases": [{"aliased_container": "*"}]})
    HostsPublisher(policy.container_aliases, dry_run=True).publish(snapshot)
    assert all(p.read_text() == DOCKER_HOSTS for p in tmp_path.iterdir())


def test_missing_hosts_file_is_only_logged(tmp_path, networks, caplog):
    snapshot = snapshot_with_hosts(tmp_path, networks)
    (tmp_path / "proxy.hosts").unlink()
    policy = parse_policy({"container_aliases": [{"aliased_container": "*"}]})
    HostsPublisher(policy.container_aliases).publish(snapshot)

    assert "Cannot update hosts file of proxy" in caplog.text
    assert "172.18.0.3\tproxy" in (tmp_path / "web.hosts").read_text()
