# tests/test_firewall.py
import sys
import subprocess
import pytest
from unittest import mock

# Ensure src/ is importable
import os
TEST_DIR = os.path.dirname(__file__)
REPO_ROOT = os.path.abspath(os.path.join(TEST_DIR, ".."))
SRC_DIR = os.path.join(REPO_ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from firewall_manager import FirewallManager, ListedRule, parse_rule_listing
from models import Container, FirewallError, ForwardingRule, PortBinding

IPTABLES = "/sbin/iptables"
WEB_ID = "abcdef1234567890abcdef1234567890abcdef1234567890abcdef1234567890"
OTHER_ID = "111111111111aaaabbbbccccddddeeeeffff00001111222233334444555566667"

DOCKER_LISTING = """Chain DOCKER (2 references)
num  target     prot opt source               destination
1    DNAT       tcp  --  0.0.0.0/0            0.0.0.0/0            tcp dpt:9000 /* Docker other[111111111111] */ to:10.0.0.9:9000
2    DNAT       tcp  --  0.0.0.0/0            0.0.0.0/0            tcp dpt:8080 /* Docker web[abcdef123456] */ to:10.0.0.5:80
3    DNAT       tcp  --  0.0.0.0/0            0.0.0.0/0            tcp dpt:22 to:10.0.0.2:22
4    DNAT       udp  --  0.0.0.0/0            0.0.0.0/0            udp dpt:5353 /* 'Docker web[abcdef123456]' */ to:10.0.0.5:53
"""


class DummyConfig:
    def __init__(self, rules=None, read_only=False):
        self.iptables_cmd = IPTABLES
        self.docker_interface = "docker0"
        self.rules = rules if rules is not None else {
            "web": [ForwardingRule(host_port=8080, chain="DOCKER")],
        }
        self.chains = sorted({r.chain for entries in self.rules.values() for r in entries})
        self.read_only = read_only


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def web_container(**bindings):
    port_bindings = bindings or {"80/tcp": (PortBinding("", 8080),)}
    return Container(id=WEB_ID, name="web", address="10.0.0.5", port_bindings=port_bindings)


def dnat_command(chain, port, target, protocol="tcp", destination="0.0.0.0/0", name="web", tag="abcdef123456"):
    return [
        IPTABLES, "-t", "nat", "-A", chain, "-d", destination, "!", "-i", "docker0",
        "-p", protocol, "-m", protocol, "--dport", str(port), "-j", "DNAT",
        "--to-destination", target, "-m", "comment", "--comment", f"Docker {name}[{tag}]",
    ]


def issued(run_mock):
    return [c.args[0] for c in run_mock.call_args_list]


@pytest.fixture
def manager():
    return FirewallManager(DummyConfig())


def test_parse_rule_listing_extracts_line_numbers_and_tags():
    parsed = parse_rule_listing(DOCKER_LISTING)
    assert parsed == [
        ListedRule(1, "111111111111"),
        ListedRule(2, "abcdef123456"),
        ListedRule(3, None),
        ListedRule(4, "abcdef123456"),
    ]


def test_parse_rule_listing_ignores_headers_and_empty_output():
    assert parse_rule_listing("") == []
    assert parse_rule_listing("Chain DOCKER (0 references)\nnum  target  prot opt source  destination\n") == []


def test_add_container_rules_scenario(manager):
    with mock.patch("subprocess.run", return_value=completed()) as run:
        errors = manager.add_container_rules(web_container())

    assert errors == []
    run.assert_called_once_with(dnat_command("DOCKER", 8080, "10.0.0.5:80"), capture_output=True, text=True)


def test_add_container_rules_skips_unmatched_host_port(manager):
    container = web_container(**{"80/tcp": (PortBinding("", 9090),)})
    with mock.patch("subprocess.run", return_value=completed()) as run:
        errors = manager.add_container_rules(container)

    assert errors == []
    run.assert_not_called()


def test_add_container_rules_without_configured_rules():
    manager = FirewallManager(DummyConfig(rules={"db": [ForwardingRule(5432, "DOCKER")]}))
    with mock.patch("subprocess.run", return_value=completed()) as run:
        manager.add_container_rules(web_container())
    run.assert_not_called()


def test_add_container_rules_uses_protocol_and_host_ip():
    rules = {"web": [ForwardingRule(host_port=5353, chain="FWD", host_ip="192.168.1.10")]}
    manager = FirewallManager(DummyConfig(rules=rules))
    container = web_container(**{
        "80/tcp": (PortBinding("", 8080),),
        "53/udp": (PortBinding("0.0.0.0", 5353),),
    })
    with mock.patch("subprocess.run", return_value=completed()) as run:
        manager.add_container_rules(container)

    assert issued(run) == [
        dnat_command("FWD", 5353, "10.0.0.5:53", protocol="udp", destination="192.168.1.10"),
    ]


def test_add_container_rules_failure_does_not_block_others():
    rules = {"web": [ForwardingRule(8080, "DOCKER"), ForwardingRule(8443, "DOCKER")]}
    manager = FirewallManager(DummyConfig(rules=rules))
    container = web_container(**{
        "80/tcp": (PortBinding("", 8080),),
        "443/tcp": (PortBinding("", 8443),),
    })
    results = [completed(returncode=1, stderr="iptables: No chain/target/match by that name."), completed()]
    with mock.patch("subprocess.run", side_effect=results) as run:
        errors = manager.add_container_rules(container)

    assert run.call_count == 2
    assert len(errors) == 1
    assert isinstance(errors[0], FirewallError)
    assert issued(run)[1] == dnat_command("DOCKER", 8443, "10.0.0.5:443")


def test_add_container_rules_every_matching_binding_gets_a_command(manager):
    container = web_container(**{"80/tcp": (PortBinding("0.0.0.0", 8080), PortBinding("::", 8080))})
    with mock.patch("subprocess.run", return_value=completed()) as run:
        manager.add_container_rules(container)
    assert run.call_count == 2


def test_add_container_rules_missing_binary_is_reported(manager):
    with mock.patch("subprocess.run", side_effect=FileNotFoundError(IPTABLES)):
        errors = manager.add_container_rules(web_container())
    assert len(errors) == 1


def test_remove_container_rules_deletes_tagged_lines_highest_first(manager):
    with mock.patch("subprocess.run", return_value=completed(stdout=DOCKER_LISTING)) as run:
        manager.remove_container_rules(WEB_ID)

    assert issued(run) == [
        [IPTABLES, "-t", "nat", "-L", "DOCKER", "-n", "--line-numbers"],
        [IPTABLES, "-t", "nat", "-D", "DOCKER", "4"],
        [IPTABLES, "-t", "nat", "-D", "DOCKER", "2"],
    ]


def test_remove_container_rules_scenario_single_delete(manager):
    listing = "\n".join(DOCKER_LISTING.splitlines()[:4])
    with mock.patch("subprocess.run", return_value=completed(stdout=listing)) as run:
        manager.remove_container_rules(WEB_ID)

    assert issued(run)[1:] == [[IPTABLES, "-t", "nat", "-D", "DOCKER", "2"]]


def test_remove_container_rules_leaves_other_containers(manager):
    with mock.patch("subprocess.run", return_value=completed(stdout=DOCKER_LISTING)) as run:
        manager.remove_container_rules(OTHER_ID)

    assert issued(run)[1:] == [[IPTABLES, "-t", "nat", "-D", "DOCKER", "1"]]


def test_remove_container_rules_listing_failure_raises(manager):
    with mock.patch("subprocess.run", return_value=completed(returncode=1, stderr="No chain")):
        with pytest.raises(FirewallError):
            manager.remove_container_rules(WEB_ID)


def test_remove_container_rules_delete_failure_raises(manager):
    results = [completed(stdout=DOCKER_LISTING), completed(returncode=1, stderr="Index of deletion too big")]
    with mock.patch("subprocess.run", side_effect=results) as run:
        with pytest.raises(FirewallError):
            manager.remove_container_rules(WEB_ID)
    assert run.call_count == 2


def test_remove_container_rules_without_chains():
    manager = FirewallManager(DummyConfig(rules={}))
    with mock.patch("subprocess.run") as run:
        manager.remove_container_rules(WEB_ID)
    run.assert_not_called()


def test_read_only_never_mutates():
    manager = FirewallManager(DummyConfig(read_only=True))
    with mock.patch("subprocess.run", return_value=completed(stdout=DOCKER_LISTING)) as run:
        errors = manager.rebuild([web_container()])
        manager.remove_container_rules(WEB_ID)
        listed = manager.list_chain("DOCKER")

    assert errors == []
    # only the listing commands reach the real binary
    assert all(cmd[3] == "-L" for cmd in issued(run))
    assert len(listed) == 4


def test_read_only_remove_tolerates_missing_chain():
    manager = FirewallManager(DummyConfig(read_only=True))
    with mock.patch("subprocess.run", return_value=completed(returncode=1, stderr="No chain")):
        manager.remove_container_rules(WEB_ID)


def test_ensure_chains_flushes_existing_chain(manager):
    results = [completed(returncode=1, stderr="Chain already exists."), completed()]
    with mock.patch("subprocess.run", side_effect=results) as run:
        manager.ensure_chains()

    assert issued(run) == [
        [IPTABLES, "-t", "nat", "-N", "DOCKER"],
        [IPTABLES, "-t", "nat", "-F", "DOCKER"],
    ]


def test_rebuild_aborts_when_chain_cannot_be_prepared(manager):
    with mock.patch("subprocess.run", return_value=completed(returncode=1, stderr="Permission denied")) as run:
        with pytest.raises(FirewallError):
            manager.rebuild([web_container()])
    assert run.call_count == 2


def test_rebuild_aggregates_add_failures():
    rules = {"web": [ForwardingRule(8080, "DOCKER")], "api": [ForwardingRule(9000, "DOCKER")]}
    manager = FirewallManager(DummyConfig(rules=rules))
    api = Container(id=OTHER_ID, name="api", address="10.0.0.9",
                    port_bindings={"9000/tcp": (PortBinding("", 9000),)})
    results = [completed(), completed(returncode=1, stderr="boom"), completed()]
    with mock.patch("subprocess.run", side_effect=results) as run:
        errors = manager.rebuild([web_container(), api])

    assert len(errors) == 1
    assert run.call_count == 3
    assert issued(run)[2] == dnat_command("DOCKER", 9000, "10.0.0.9:9000", name="api", tag="111111111111")


def test_rebuild_twice_issues_same_commands(manager):
    with mock.patch("subprocess.run", return_value=completed()) as run:
        manager.rebuild([web_container()])
        first = issued(run)
        run.reset_mock()
        manager.rebuild([web_container()])
        second = issued(run)

    assert first == second
    assert first == [
        [IPTABLES, "-t", "nat", "-N", "DOCKER"],
        dnat_command("DOCKER", 8080, "10.0.0.5:80"),
    ]
