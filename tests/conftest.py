"""Shared fixtures: simulated packet filter, fixed clock and temp store paths."""

import sys
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from logwarden.modules.config import DaemonConfig, Trigger
from logwarden.modules.firewall import CommandAction, Executor, FirewallRuleEngine
from logwarden.modules.rule_store import ALLOW, DENY, PermanentList, TempRuleStore


class FakeFirewall(Executor):
    """In-memory rule table standing in for iptables/ip6tables."""

    def __init__(self):
        self.commands = []
        self.chains = {}

    def execute(self, command):
        self.commands.append(command)
        key = (command.family, command.chain)
        rule = (command.match, command.target)

        if command.action is CommandAction.NEW_CHAIN:
            if key in self.chains:
                return False
            self.chains[key] = []
            return True

        rules = self.chains.setdefault(key, [])
        if command.action is CommandAction.DELETE:
            if rule in rules:
                rules.remove(rule)
                return True
            return False
        if command.action is CommandAction.INSERT:
            rules.insert((command.position or 1) - 1, rule)
        else:
            rules.append(rule)
        return True

    def rules(self, chain, family=4):
        return list(self.chains.get((family, chain), []))

    def has_rule(self, chain, address, family=4):
        return any(address in match for match, _ in self.rules(chain, family))

    def rule_count(self, address):
        return sum(
            1 for rules in self.chains.values() for match, _ in rules if address in match
        )


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeRunner:
    """Stands in for subprocess.run and records every call."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        if self.error is not None:
            raise self.error
        return None


@pytest.fixture
def firewall():
    return FakeFirewall()


@pytest.fixture
def engine(firewall):
    return FirewallRuleEngine(firewall)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def temp_deny(tmp_path, engine, clock):
    return TempRuleStore(str(tmp_path / "tempban"), DENY, engine, clock=clock)


@pytest.fixture
def temp_allow(tmp_path, engine, clock):
    return TempRuleStore(str(tmp_path / "tempallow"), ALLOW, engine, clock=clock)


@pytest.fixture
def allow_list(tmp_path):
    return PermanentList(str(tmp_path / "allow"), ALLOW)


@pytest.fixture
def deny_list(tmp_path):
    return PermanentList(str(tmp_path / "deny"), DENY)


@pytest.fixture
def auth_log(tmp_path):
    path = tmp_path / "secure"
    path.write_text("")
    return path


@pytest.fixture
def daemon_config(tmp_path, auth_log):
    return DaemonConfig(
        faststart=False,
        deny_file=str(tmp_path / "deny"),
        allow_file=str(tmp_path / "allow"),
        ignore_file=str(tmp_path / "ignore"),
        tempban_file=str(tmp_path / "tempban"),
        tempallow_file=str(tmp_path / "tempallow"),
        relay_hosts_file=str(tmp_path / "relayhosts"),
        own_addresses=("10.0.0.5",),
        log_sources={str(auth_log): ("ssh", "ssh-login", "su", "sudo")},
        triggers={"sshd": Trigger(3, 300)},
        permblock=False,
        log_file=None,
    )


@pytest.fixture
def deny_open(monkeypatch):
    """Paths added to the returned set raise PermissionError when a log source opens them."""
    import builtins

    from logwarden.modules import log_source

    denied = set()

    def guarded_open(path, *args, **kwargs):
        if str(path) in denied:
            raise PermissionError(13, "Permission denied", str(path))
        return builtins.open(path, *args, **kwargs)

    monkeypatch.setattr(log_source, "open", guarded_open, raising=False)
    return denied
