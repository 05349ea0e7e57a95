import subprocess

import pytest

from conftest import FakeRunner

from logwarden.modules.firewall import (
    ALLOW_IN,
    DENY_IN,
    DENY_OUT,
    BufferedExecutor,
    CommandAction,
    FirewallCommand,
    FirewallIntent,
    FirewallRuleEngine,
    ImmediateExecutor,
    Intent,
    normalize_ports,
)


def test_block_commands_delete_then_insert_each_direction(engine):
    commands = engine.commands_for(FirewallIntent(Intent.BLOCK, "203.0.113.5"))

    assert [(c.chain, c.action) for c in commands] == [
        (DENY_IN, CommandAction.DELETE),
        (DENY_IN, CommandAction.INSERT),
        (DENY_OUT, CommandAction.DELETE),
        (DENY_OUT, CommandAction.INSERT),
    ]
    assert commands[1].to_args("/sbin/iptables") == [
        "/sbin/iptables", "-I", "DENYIN", "1", "-s", "203.0.113.5", "-j", "DROP",
    ]
    assert commands[2].to_args("/sbin/iptables", wait=True) == [
        "/sbin/iptables", "--wait", "-D", "DENYOUT", "-d", "203.0.113.5", "-j", "DROP",
    ]


def test_unblock_only_deletes(engine):
    commands = engine.commands_for(FirewallIntent(Intent.UNBLOCK, "203.0.113.5", scope="in"))

    assert [(c.chain, c.action) for c in commands] == [(DENY_IN, CommandAction.DELETE)]


def test_allow_uses_accept_in_allow_chains(engine):
    commands = engine.commands_for(FirewallIntent(Intent.ALLOW, "2001:db8::7", scope="in"))

    assert commands[-1].family == 6
    assert commands[-1].chain == ALLOW_IN
    assert commands[-1].target == "ACCEPT"


def test_single_port_without_protocol_covers_tcp_and_udp(engine):
    commands = engine.commands_for(FirewallIntent(Intent.BLOCK, "192.0.2.1", scope="in", ports="22"))
    inserts = [c.match for c in commands if c.action is CommandAction.INSERT]

    assert inserts == [
        ("-s", "192.0.2.1", "-p", "tcp", "--dport", "22"),
        ("-s", "192.0.2.1", "-p", "udp", "--dport", "22"),
    ]


def test_port_list_uses_multiport(engine):
    intent = FirewallIntent(Intent.BLOCK, "192.0.2.1", scope="in", ports="80,443", protocol="tcp")
    inserts = [c.match for c in engine.commands_for(intent) if c.action is CommandAction.INSERT]

    assert inserts == [("-s", "192.0.2.1", "-p", "tcp", "-m", "multiport", "--dports", "80,443")]


def test_custom_drop_targets(firewall):
    engine = FirewallRuleEngine(firewall, drop="LOGDROPIN", drop_out="REJECT", position=3)
    commands = engine.commands_for(FirewallIntent(Intent.BLOCK, "192.0.2.1"))

    assert commands[1].target == "LOGDROPIN"
    assert commands[1].position == 3
    assert commands[3].target == "REJECT"


def test_apply_is_idempotent(engine, firewall):
    intent = FirewallIntent(Intent.BLOCK, "203.0.113.5")

    assert engine.apply(intent)
    assert engine.apply(intent)

    assert firewall.rules(DENY_IN) == [(("-s", "203.0.113.5"), "DROP")]
    assert firewall.rules(DENY_OUT) == [(("-d", "203.0.113.5"), "DROP")]


def test_apply_skips_ipv6_when_disabled(firewall):
    engine = FirewallRuleEngine(firewall, ipv6=False)

    assert engine.apply(FirewallIntent(Intent.BLOCK, "2001:db8::1")) is False
    assert firewall.commands == []


def test_apply_rejects_invalid_address_and_scope(engine, firewall):
    assert engine.apply(FirewallIntent(Intent.BLOCK, "999.1.1.1")) is False
    assert engine.apply(FirewallIntent(Intent.BLOCK, "192.0.2.1", scope="sideways")) is False
    assert firewall.commands == []


def test_setup_chains_puts_allow_before_deny(engine, firewall):
    assert engine.setup_chains()
    assert engine.setup_chains()

    assert firewall.rules("INPUT") == [((), ALLOW_IN), ((), DENY_IN)]
    assert firewall.rules("OUTPUT") == [((), "ALLOWOUT"), ((), DENY_OUT)]
    assert firewall.rules("INPUT", family=6) == [((), ALLOW_IN), ((), DENY_IN)]
    assert (4, "DENYIN") in firewall.chains


def test_use_executor_returns_previous(engine, firewall):
    buffered = BufferedExecutor()

    assert engine.use_executor(buffered) is firewall
    assert engine.executor is buffered


def test_immediate_executor_runs_command():
    runner = FakeRunner()
    executor = ImmediateExecutor(wait_lock=True, runner=runner)
    command = FirewallCommand(6, DENY_IN, CommandAction.INSERT, ("-s", "2001:db8::1"), "DROP", position=1)

    assert executor.execute(command)

    cmd, kwargs = runner.calls[0]
    assert cmd == ["/sbin/ip6tables", "--wait", "-I", "DENYIN", "1", "-s", "2001:db8::1", "-j", "DROP"]
    assert kwargs["check"] is True
    assert kwargs["capture_output"] is True


def test_immediate_executor_failures_return_false():
    insert = FirewallCommand(4, DENY_IN, CommandAction.INSERT, ("-s", "192.0.2.1"), "DROP", position=1)
    delete = FirewallCommand(4, DENY_IN, CommandAction.DELETE, ("-s", "192.0.2.1"), "DROP")
    failure = subprocess.CalledProcessError(1, ["iptables"], stderr="Bad rule")

    assert ImmediateExecutor(runner=FakeRunner(failure)).execute(insert) is False
    assert ImmediateExecutor(runner=FakeRunner(failure)).execute(delete) is False
    assert ImmediateExecutor(runner=FakeRunner(subprocess.TimeoutExpired("iptables", 10))).execute(insert) is False
    assert ImmediateExecutor(runner=FakeRunner(FileNotFoundError())).execute(insert) is False


def test_buffered_executor_collapses_and_cancels():
    executor = BufferedExecutor()
    engine = FirewallRuleEngine(executor)

    engine.apply(FirewallIntent(Intent.BLOCK, "192.0.2.1", scope="in"))
    engine.apply(FirewallIntent(Intent.BLOCK, "192.0.2.1", scope="in"))
    engine.apply(FirewallIntent(Intent.BLOCK, "192.0.2.2", scope="in"))
    assert executor.pending(4) == 2

    engine.apply(FirewallIntent(Intent.UNBLOCK, "192.0.2.1", scope="in"))
    assert executor.pending(4) == 1
    assert executor.pending(6) == 0


def test_buffered_executor_renders_chain_declarations_first():
    executor = BufferedExecutor()
    executor.execute(FirewallCommand(4, DENY_IN, CommandAction.INSERT, ("-s", "192.0.2.1"), "DROP", position=1))
    executor.execute(FirewallCommand(4, DENY_IN, CommandAction.NEW_CHAIN))

    assert executor.render(4) == "*filter\n:DENYIN - [0:0]\n-I DENYIN 1 -s 192.0.2.1 -j DROP\nCOMMIT\n"
    assert executor.render(6) == ""


def test_buffered_flush_loads_each_family_once():
    runner = FakeRunner()
    executor = BufferedExecutor(wait_lock=True, runner=runner)
    engine = FirewallRuleEngine(executor)
    engine.apply(FirewallIntent(Intent.BLOCK, "192.0.2.1"))
    engine.apply(FirewallIntent(Intent.BLOCK, "2001:db8::1"))

    assert executor.flush()

    assert [call[0] for call in runner.calls] == [
        ["/sbin/iptables-restore", "--wait", "--noflush"],
        ["/sbin/ip6tables-restore", "--wait", "--noflush"],
    ]
    payload = runner.calls[0][1]["input"]
    assert payload.startswith("*filter\n")
    assert "-I DENYIN 1 -s 192.0.2.1 -j DROP" in payload
    assert payload.endswith("COMMIT\n")
    assert executor.pending(4) == 0


def test_buffered_flush_failure_clears_queue():
    runner = FakeRunner(subprocess.CalledProcessError(2, ["iptables-restore"], stderr="line 3 failed"))
    executor = BufferedExecutor(runner=runner)
    FirewallRuleEngine(executor).apply(FirewallIntent(Intent.BLOCK, "192.0.2.1"))

    assert executor.flush() is False
    assert executor.pending(4) == 0


def test_empty_flush_runs_nothing():
    runner = FakeRunner()

    assert BufferedExecutor(runner=runner).flush()
    assert runner.calls == []


def test_apply_rejects_out_of_range_prefixes(engine, firewall):
    assert engine.apply(FirewallIntent(Intent.BLOCK, "10.0.0.0/0")) is False
    assert engine.apply(FirewallIntent(Intent.BLOCK, "192.0.2.0/99")) is False
    assert engine.apply(FirewallIntent(Intent.ALLOW, "2001:db8::/0")) is False
    assert firewall.commands == []


def test_normalize_ports():
    assert normalize_ports("") == ""
    assert normalize_ports("22, 80:90;443") == "22,80:90,443"
    for bad in ("22|80", "0", "65536", "90:80", "http", "22\n23"):
        with pytest.raises(ValueError):
            normalize_ports(bad)
    with pytest.raises(ValueError):
        normalize_ports(22)
