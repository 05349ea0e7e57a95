"""End-to-end daemon cycles against a temporary log file and the simulated packet filter."""

import pytest

from conftest import FakeFirewall, FakeRunner

from logwarden.logwarden_daemon import LogWardenDaemon, OffenseTracker, load_ignore_file
from logwarden.modules.config import DistTrigger, Trigger
from logwarden.modules.firewall import DENY_IN, BufferedExecutor
from logwarden.modules.line_classifier import ClassifiedEvent
from logwarden.modules.mqtt_client import ClusterEvent
from logwarden.modules.rule_store import TempEntry

FAILED = "Oct 17 10:00:00 web1 sshd[1234]: Failed password for {account} from {address} port 22 ssh2\n"


def write_failures(path, address, count=3, account="root"):
    with open(path, "a") as handle:
        for _ in range(count):
            handle.write(FAILED.format(account=account, address=address))


class FakePublisher:
    def __init__(self, reachable=True):
        self.reachable = reachable
        self.entries = []
        self.events = []
        self.handler = None
        self.stopped = 0

    def start(self):
        return self.reachable

    def listen(self, handler):
        self.handler = handler
        return True

    def publish_entry(self, entry, removed=False):
        self.entries.append((entry.address, entry.kind, removed))
        return True

    def publish(self, event):
        self.events.append(event)
        return True

    def stop(self):
        self.stopped += 1


@pytest.fixture
def make_daemon(daemon_config, firewall, clock):
    def build(config=None, **kwargs):
        daemon = LogWardenDaemon(config or daemon_config, executor=firewall, clock=clock, **kwargs)
        daemon.start()
        return daemon
    return build


def test_offense_tracker_window(clock):
    tracker = OffenseTracker(60, clock)

    assert tracker.record("192.0.2.1", "sshd") == 1
    clock.advance(30)
    assert tracker.record("192.0.2.1", "sshd") == 2
    clock.advance(31)
    assert tracker.record("192.0.2.1", "sshd") == 2
    assert tracker.count("192.0.2.1", "ftpd") == 0

    clock.advance(120)
    tracker.prune()
    assert len(tracker) == 0


def test_ignore_file_account_entries(tmp_path):
    path = tmp_path / "ignore"
    path.write_text("# trusted\n192.0.2.0/24\nalice@203.0.113.50 # vpn\n")

    global_set, accounts = load_ignore_file(str(path))

    assert "192.0.2.9" in global_set
    assert "203.0.113.50" in accounts["alice"]
    assert "203.0.113.50" not in global_set


def test_repeated_failures_block_address(make_daemon, auth_log, firewall):
    daemon = make_daemon()

    write_failures(auth_log, "203.0.113.5", count=2)
    daemon.run_cycle()
    assert daemon.temp_deny.get("203.0.113.5") is None

    write_failures(auth_log, "203.0.113.5", count=1)
    daemon.run_cycle()

    entry = daemon.temp_deny.get("203.0.113.5")
    assert entry is not None
    assert entry.duration == 300
    assert entry.comment.startswith("(sshd) Failed SSH login from 203.0.113.5: 3 in the last")
    assert firewall.has_rule(DENY_IN, "203.0.113.5")
    assert daemon.stats["blocks"] == 1


def test_existing_lines_are_not_replayed(daemon_config, auth_log, firewall, clock):
    write_failures(auth_log, "203.0.113.5", count=5)
    daemon = LogWardenDaemon(daemon_config, executor=firewall, clock=clock)
    daemon.start()

    daemon.run_cycle()

    assert daemon.temp_deny.get("203.0.113.5") is None


def test_own_address_is_never_blocked(make_daemon, auth_log, firewall):
    daemon = make_daemon()

    write_failures(auth_log, "10.0.0.5", count=10)
    daemon.run_cycle()

    assert daemon.temp_deny.addresses() == []
    assert firewall.rule_count("10.0.0.5") == 0


def test_allow_listed_address_is_exempt(daemon_config, make_daemon, auth_log):
    with open(daemon_config.allow_file, "w") as handle:
        handle.write("198.51.100.0/24 # office\n")
    daemon = make_daemon()

    write_failures(auth_log, "198.51.100.8", count=5)
    daemon.run_cycle()

    assert daemon.temp_deny.addresses() == []


def test_account_specific_ignore(daemon_config, make_daemon, auth_log):
    with open(daemon_config.ignore_file, "w") as handle:
        handle.write("alice@203.0.113.50\n")
    daemon = make_daemon()

    write_failures(auth_log, "203.0.113.50", count=3, account="alice")
    daemon.run_cycle()
    assert daemon.temp_deny.addresses() == []

    write_failures(auth_log, "203.0.113.50", count=3, account="mallory")
    daemon.run_cycle()
    assert daemon.temp_deny.addresses() == ["203.0.113.50"]


def test_expired_block_is_swept(make_daemon, auth_log, firewall, clock):
    daemon = make_daemon()
    write_failures(auth_log, "203.0.113.5")
    daemon.run_cycle()

    clock.advance(301)
    daemon.run_cycle()

    assert daemon.temp_deny.get("203.0.113.5") is None
    assert firewall.rule_count("203.0.113.5") == 0


def test_permanent_trigger_writes_deny_list(daemon_config, make_daemon, auth_log, firewall):
    daemon = make_daemon(daemon_config.with_overrides(triggers={"sshd": Trigger(3, 0)}))

    write_failures(auth_log, "203.0.113.5")
    daemon.run_cycle()

    assert daemon.deny_list.contains("203.0.113.5")
    assert daemon.temp_deny.addresses() == []
    assert firewall.has_rule(DENY_IN, "203.0.113.5")


def test_repeat_offender_is_escalated_to_permanent(daemon_config, make_daemon, auth_log, firewall, clock):
    daemon = make_daemon(daemon_config.with_overrides(permblock=True, permblock_count=2))

    write_failures(auth_log, "203.0.113.5")
    daemon.run_cycle()
    assert daemon.temp_deny.get("203.0.113.5") is not None

    clock.advance(301)
    daemon.run_cycle()
    write_failures(auth_log, "203.0.113.5")
    daemon.run_cycle()

    assert daemon.temp_deny.get("203.0.113.5") is None
    assert daemon.deny_list.get("203.0.113.5").comment.startswith("(permblock)")
    assert firewall.has_rule(DENY_IN, "203.0.113.5")


def test_ssh_sessions_killed_on_block(daemon_config, make_daemon, auth_log):
    killed = []

    def killer(address, ports):
        killed.append((address, ports))
        return [4242]

    daemon = make_daemon(daemon_config.with_overrides(ssh_kill=True), ssh_killer=killer)
    write_failures(auth_log, "203.0.113.5")
    daemon.run_cycle()

    assert killed == [("203.0.113.5", (22,))]


def test_su_session_only_alerts(make_daemon, auth_log):
    daemon = make_daemon()
    with open(auth_log, "a") as handle:
        handle.write("Oct 17 10:00:00 web1 su[9]: pam_unix(su-l:session): session opened for user root by "
                     "alice(uid=1000)\n")

    daemon.run_cycle()

    assert daemon.stats["alerts"] == 1
    assert daemon.stats["blocks"] == 0


def test_log_created_after_start_is_read_from_beginning(make_daemon, auth_log):
    auth_log.unlink()
    daemon = make_daemon()
    assert str(auth_log) in daemon._missing

    daemon.run_cycle()
    write_failures(auth_log, "203.0.113.5")
    daemon.run_cycle()

    assert str(auth_log) not in daemon._missing
    assert daemon.temp_deny.get("203.0.113.5") is not None


def test_log_flood_skips_backlog(daemon_config, make_daemon, auth_log):
    daemon = make_daemon(daemon_config.with_overrides(log_flood_threshold=2))

    write_failures(auth_log, "203.0.113.5", count=5)
    daemon.run_cycle()

    assert daemon.temp_deny.addresses() == []
    assert daemon.sources[str(auth_log)].is_open


def test_fast_start_loads_rules_in_one_transaction(daemon_config, firewall, clock):
    with open(daemon_config.deny_file, "w") as handle:
        handle.write("192.0.2.66 # static\n")
    runner = FakeRunner()
    daemon = LogWardenDaemon(daemon_config.with_overrides(faststart=True), executor=firewall, clock=clock,
                             buffered_factory=lambda: BufferedExecutor(runner=runner))

    daemon.start()

    cmd, kwargs = runner.calls[0]
    assert cmd == ["/sbin/iptables-restore", "--noflush"]
    assert ":DENYIN - [0:0]" in kwargs["input"]
    assert "-I DENYIN 1 -s 192.0.2.66 -j DROP" in kwargs["input"]
    assert daemon.engine.executor is firewall
    assert firewall.commands == []


def test_restart_restores_persisted_rules(daemon_config, make_daemon, auth_log, firewall, clock):
    daemon = make_daemon()
    write_failures(auth_log, "203.0.113.5")
    daemon.run_cycle()
    daemon.stop()

    firewall.chains.clear()
    make_daemon()

    assert firewall.has_rule(DENY_IN, "203.0.113.5")


def test_blocks_are_published_and_peer_events_applied(make_daemon, auth_log, clock):
    publisher = FakePublisher()
    daemon = make_daemon(publisher=publisher)

    write_failures(auth_log, "203.0.113.5")
    daemon.run_cycle()
    assert publisher.entries == [("203.0.113.5", "deny", False)]

    publisher.handler(ClusterEvent("block", "198.51.100.99", duration=600, comment="sshd", origin="peer"))
    publisher.handler(ClusterEvent("block", "10.0.0.5", duration=600, origin="peer"))
    daemon.run_cycle()

    entry = daemon.temp_deny.get("198.51.100.99")
    assert entry.comment == "Cluster: sshd"
    assert daemon.temp_deny.get("10.0.0.5") is None
    assert len(publisher.entries) == 1

    publisher.handler(ClusterEvent("unblock", "198.51.100.99", origin="peer"))
    daemon.run_cycle()
    assert daemon.temp_deny.get("198.51.100.99") is None


def test_unreachable_broker_does_not_stop_startup(make_daemon):
    publisher = FakePublisher(reachable=False)
    daemon = make_daemon(publisher=publisher)

    assert daemon.running
    assert publisher.handler is None


def test_stop_is_idempotent(make_daemon):
    publisher = FakePublisher()
    daemon = make_daemon(publisher=publisher)

    daemon.running = False
    daemon.stop()
    daemon.stop()

    assert publisher.stopped == 1
    assert not daemon.sources[next(iter(daemon.sources))].is_open


def test_loopback_relay_is_alert_only(make_daemon):
    daemon = make_daemon()
    event = ClassifiedEvent("Email relay (RELAY) from", "127.0.0.1", service="relay", detail="RELAY")

    assert daemon.handle_event(event) is False
    assert daemon.stats["alerts"] == 1


def test_relay_hosts_are_not_exempt_from_ssh_triggers(daemon_config, make_daemon, auth_log):
    with open(daemon_config.relay_hosts_file, "w") as handle:
        handle.write("203.0.113.7\n")
    daemon = make_daemon()

    write_failures(auth_log, "203.0.113.7")
    daemon.run_cycle()

    assert daemon.temp_deny.get("203.0.113.7") is not None


def test_unreadable_log_is_retried(make_daemon, auth_log, deny_open):
    deny_open.add(str(auth_log))
    daemon = make_daemon()
    assert str(auth_log) in daemon._unreadable

    write_failures(auth_log, "203.0.113.5")
    daemon.run_cycle()
    assert daemon.temp_deny.get("203.0.113.5") is None

    deny_open.clear()
    daemon.run_cycle()

    assert str(auth_log) not in daemon._unreadable
    assert daemon.temp_deny.get("203.0.113.5") is not None


def test_run_continues_after_a_failed_cycle(make_daemon, monkeypatch):
    daemon = make_daemon()
    cycles = []

    def cycle():
        cycles.append(1)
        if len(cycles) == 1:
            raise OSError("Input/output error")
        daemon.running = False

    monkeypatch.setattr(daemon, "run_cycle", cycle)
    monkeypatch.setattr("logwarden.logwarden_daemon.time.sleep", lambda seconds: None)
    daemon.run()

    assert len(cycles) == 2
    assert daemon._stopped


class StopDuringStartFirewall(FakeFirewall):
    """Delivers a shutdown signal while the first packet filter command runs."""

    daemon = None

    def execute(self, command):
        if self.daemon is not None:
            self.daemon.running = False
        return super().execute(command)


def test_shutdown_signal_during_start_is_kept(daemon_config, clock):
    firewall = StopDuringStartFirewall()
    daemon = LogWardenDaemon(daemon_config, executor=firewall, clock=clock)
    firewall.daemon = daemon

    assert daemon.start() is True
    assert daemon.running is False

    daemon.run()
    assert daemon._stopped


def test_invalid_deny_ranges_are_not_restored(daemon_config, make_daemon, firewall):
    with open(daemon_config.deny_file, "w") as handle:
        handle.write("10.0.0.0/0 # everything\n192.0.2.0/99 # bad prefix\n198.51.100.0/24 # scanners\n")

    make_daemon()

    assert firewall.rules(DENY_IN) == [(("-s", "198.51.100.0/24"), "DROP")]


def test_peer_events_with_bad_scope_or_duration_are_dropped(make_daemon, firewall):
    publisher = FakePublisher()
    daemon = make_daemon(publisher=publisher)

    publisher.handler(ClusterEvent("block", "198.51.100.97", scope="sideways", duration=600, origin="peer"))
    publisher.handler(ClusterEvent("block", "198.51.100.98", duration=-1, origin="peer"))
    daemon.run_cycle()

    assert daemon.temp_deny.addresses() == []
    assert firewall.rule_count("198.51.100.97") == 0
    assert firewall.rule_count("198.51.100.98") == 0


FTP_LOGIN = "Oct 17 10:00:00 ftp1 pure-ftpd[321]: (?@{address}) [INFO] {account} is now logged in\n"


def write_ftp_logins(path, account, addresses):
    with open(path, "a") as handle:
        for address in addresses:
            handle.write(FTP_LOGIN.format(account=account, address=address))


@pytest.fixture
def dist_config(daemon_config, auth_log):
    return daemon_config.with_overrides(
        log_sources={str(auth_log): ("ftp", "dist-ftp")},
        dist_triggers={"distftp": DistTrigger(3, 3, 600)},
    )


def test_distributed_logins_block_every_address(dist_config, make_daemon, auth_log, firewall):
    daemon = make_daemon(dist_config)

    write_ftp_logins(auth_log, "alice", ["203.0.113.1", "203.0.113.2"])
    write_ftp_logins(auth_log, "bob", ["203.0.113.9"])
    daemon.run_cycle()
    assert daemon.temp_deny.addresses() == []

    write_ftp_logins(auth_log, "alice", ["203.0.113.3"])
    daemon.run_cycle()

    assert sorted(daemon.temp_deny.addresses()) == ["203.0.113.1", "203.0.113.2", "203.0.113.3"]
    entry = daemon.temp_deny.get("203.0.113.1")
    assert entry.duration == 600
    assert entry.comment.startswith("(distftp) Distributed FTP logins to alice from 203.0.113.1: 3 logins from 3")
    assert firewall.has_rule(DENY_IN, "203.0.113.3")
    assert daemon.stats["blocks"] == 3


def test_distributed_logins_need_distinct_addresses(dist_config, make_daemon, auth_log):
    daemon = make_daemon(dist_config)

    write_ftp_logins(auth_log, "alice", ["203.0.113.1", "203.0.113.1", "203.0.113.2", "203.0.113.2"])
    daemon.run_cycle()

    assert daemon.temp_deny.addresses() == []


def test_distributed_logins_skip_exempt_and_block_permanently(dist_config, make_daemon, auth_log, firewall):
    config = dist_config.with_overrides(dist_triggers={"distftp": DistTrigger(3, 3, 0)})
    daemon = make_daemon(config)

    write_ftp_logins(auth_log, "alice", ["10.0.0.5", "203.0.113.1", "203.0.113.2"])
    daemon.run_cycle()

    assert daemon.deny_list.contains("203.0.113.1")
    assert daemon.deny_list.contains("203.0.113.2")
    assert not daemon.deny_list.contains("10.0.0.5")
    assert firewall.rule_count("10.0.0.5") == 0


SYSLOG_LINE = "Oct 17 10:00:00 web1 logwarden[42]: {message}\n"


def test_syslog_check_code_round_trip(daemon_config, make_daemon, auth_log, clock):
    sent = []
    config = daemon_config.with_overrides(
        log_sources={str(auth_log): ("ssh", "syslog-check")},
        syslog_check=300,
    )
    daemon = make_daemon(config, syslog_writer=sent.append)

    daemon.run_cycle()
    assert len(sent) == 1
    assert sent[0].startswith("SYSLOG check [")

    with open(auth_log, "a") as handle:
        handle.write(SYSLOG_LINE.format(message=sent[0]))
    daemon.run_cycle()
    assert daemon._syslog_code is None

    clock.advance(300)
    daemon.run_cycle()
    assert len(sent) == 2
    assert daemon.stats["alerts"] == 0


def test_missing_syslog_check_line_raises_alert(daemon_config, make_daemon, clock):
    sent = []
    daemon = make_daemon(daemon_config.with_overrides(syslog_check=300), syslog_writer=sent.append)

    daemon.run_cycle()
    clock.advance(300)
    daemon.run_cycle()

    assert daemon.stats["alerts"] == 1
    assert len(sent) == 2
    assert sent[0] != sent[1]


def test_syslog_check_disabled_sends_nothing(make_daemon):
    sent = []
    daemon = make_daemon(syslog_writer=sent.append)

    daemon.run_cycle()

    assert sent == []


def test_temp_view_is_refreshed_each_cycle(make_daemon, auth_log, firewall):
    daemon = make_daemon()
    daemon.temp_allow.add(TempEntry("203.0.113.5", duration=600))

    write_failures(auth_log, "203.0.113.5")
    daemon.run_cycle()
    assert daemon.temp_deny.get("203.0.113.5") is None

    daemon.temp_allow.remove("203.0.113.5")
    write_failures(auth_log, "203.0.113.5")
    daemon.run_cycle()

    assert daemon.temp_deny.get("203.0.113.5") is not None
    assert daemon.stats["blocks"] == 1
