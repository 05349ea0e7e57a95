#!/usr/bin/env python3

"""
LogWarden Daemon

Host-based intrusion prevention: tails authentication and service logs,
classifies security-relevant lines, counts failures per address and
service, and blocks offenders in the packet filter for a configured
duration (fail2ban/lfd-style behavior).

Cycle:
- Read new lines from every watched log
- Classify each line for the categories its log carries
- Skip exempt addresses (own, allow, ignore, relay)
- Count hits and block addresses that reach their service trigger
- Remove expired temporary entries

Usage:
    sudo logwarden
    sudo LOGWARDEN_CONFIG=/etc/logwarden/logwarden.conf python3 -m logwarden.logwarden_daemon

Note: Requires root privileges for iptables commands
"""

import os
import queue
import secrets
import signal
import sys
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from logwarden.modules.address_set import AddressSet, normalize_ip
from logwarden.modules.config import DaemonConfig, DistTrigger, Trigger, load_config
from logwarden.modules.errors import ConfigError, EntryProtectedError, FloodDetected, LogNotFound, LogUnreadable
from logwarden.modules.exemption import ExemptionResolver
from logwarden.modules.firewall import (
    BufferedExecutor,
    Executor,
    FirewallIntent,
    FirewallRuleEngine,
    ImmediateExecutor,
    Intent,
)
from logwarden.modules.line_classifier import ClassifiedEvent, LineClassifier
from logwarden.modules.log_source import LogSource
from logwarden.modules.logging_utils import configure_logging, get_logger, write_syslog
from logwarden.modules.mqtt_client import ClusterEvent, ClusterPublisher
from logwarden.modules.ports import kill_ssh_connections
from logwarden.modules.rule_store import ALLOW, DENY, PermanentList, TempEntry, TempRuleStore

logger = get_logger("daemon")


class OffenseTracker:
    """Hit timestamps per (address, service) inside a sliding window."""

    def __init__(self, interval: int, clock: Callable[[], float] = time.time):
        self.interval = interval
        self.clock = clock
        self._hits: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)

    def record(self, address: str, service: str, now: Optional[float] = None) -> int:
        """Record one hit and return the number of hits inside the window."""
        now = self.clock() if now is None else now
        hits = self._hits[(address, service)]
        hits.append(now)
        while hits and hits[0] <= now - self.interval:
            hits.popleft()
        return len(hits)

    def count(self, address: str, service: str) -> int:
        return len(self._hits.get((address, service), ()))

    def reset(self, address: str, service: str):
        self._hits.pop((address, service), None)

    def prune(self, now: Optional[float] = None):
        now = self.clock() if now is None else now
        cutoff = now - self.interval
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if not hits:
                del self._hits[key]

    def __len__(self) -> int:
        return len(self._hits)


class DistributedLoginTracker:
    """Successful logins per (service, account) inside a sliding window, with the address of each."""

    def __init__(self, interval: int, clock: Callable[[], float] = time.time):
        self.interval = interval
        self.clock = clock
        self._logins: Dict[Tuple[str, str], Deque[Tuple[float, str]]] = defaultdict(deque)

    def record(self, service: str, account: str, address: str, now: Optional[float] = None) -> Tuple[int, Set[str]]:
        """Record one login; return the logins inside the window and their distinct addresses."""
        now = self.clock() if now is None else now
        logins = self._logins[(service, account)]
        logins.append((now, address))
        while logins and logins[0][0] <= now - self.interval:
            logins.popleft()
        return len(logins), {login_address for _, login_address in logins}

    def reset(self, service: str, account: str):
        self._logins.pop((service, account), None)

    def prune(self, now: Optional[float] = None):
        now = self.clock() if now is None else now
        cutoff = now - self.interval
        for key in list(self._logins):
            logins = self._logins[key]
            while logins and logins[0][0] <= cutoff:
                logins.popleft()
            if not logins:
                del self._logins[key]

    def __len__(self) -> int:
        return len(self._logins)


def load_address_file(path: str, name: str) -> AddressSet:
    """One address or CIDR per line; ``#`` starts a comment."""
    entries = []
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                entry = line.split("#", 1)[0].strip()
                if entry:
                    entries.append(entry)
    except FileNotFoundError:
        pass
    return AddressSet(name, entries)


def load_ignore_file(path: str) -> Tuple[AddressSet, Dict[str, AddressSet]]:
    """
    Global entries are plain addresses; ``account@address`` entries only
    exempt that address for events naming the account.
    """
    global_entries: List[str] = []
    per_account: Dict[str, List[str]] = defaultdict(list)
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                entry = line.split("#", 1)[0].strip()
                if not entry:
                    continue
                if "@" in entry:
                    account, _, address = entry.partition("@")
                    per_account[account.strip()].append(address.strip())
                else:
                    global_entries.append(entry)
    except FileNotFoundError:
        pass
    accounts = {account: AddressSet(f"ignore:{account}", addresses) for account, addresses in per_account.items()}
    return AddressSet("ignore", global_entries), accounts


class LogWardenDaemon:
    """
    Log watching and enforcement loop.

    All runtime state lives on the instance; collaborators are built from
    the injected configuration.
    """

    def __init__(
        self,
        config: DaemonConfig,
        executor: Optional[Executor] = None,
        publisher: Optional[ClusterPublisher] = None,
        clock: Callable[[], float] = time.time,
        buffered_factory: Optional[Callable[[], Executor]] = None,
        ssh_killer: Callable[..., List[int]] = kill_ssh_connections,
        syslog_writer: Callable[[str], None] = write_syslog
    ):
        self.config = config
        self.clock = clock
        self.publisher = publisher
        self.ssh_killer = ssh_killer
        self.syslog_writer = syslog_writer
        self.running = False
        self._stopped = False

        self.executor = executor or ImmediateExecutor(
            config.iptables, config.ip6tables, config.wait_lock, config.command_timeout
        )
        self.buffered_factory = buffered_factory or (lambda: BufferedExecutor(
            config.iptables_restore, config.ip6tables_restore, config.wait_lock, config.command_timeout * 3
        ))
        self.engine = FirewallRuleEngine.from_config(config, self.executor)
        self.classifier = LineClassifier.from_config(config)

        self.allow_list = PermanentList(config.allow_file, ALLOW)
        self.deny_list = PermanentList(config.deny_file, DENY, limit=config.deny_ip_limit)
        self.temp_deny = TempRuleStore(config.tempban_file, DENY, self.engine,
                                       limit=config.deny_temp_ip_limit, publisher=publisher, clock=clock)
        self.temp_allow = TempRuleStore(config.tempallow_file, ALLOW, self.engine, publisher=publisher, clock=clock)
        # Changes received from peers are applied without being published again
        self.remote_stores = {
            DENY: TempRuleStore(config.tempban_file, DENY, self.engine, limit=config.deny_temp_ip_limit, clock=clock),
            ALLOW: TempRuleStore(config.tempallow_file, ALLOW, self.engine, clock=clock),
        }

        self.resolver = ExemptionResolver(own=AddressSet("own", config.own_addresses))
        self._mtimes: Dict[str, Optional[float]] = {}
        self.reload_lists(force=True)

        self.offenses = OffenseTracker(config.trigger_interval, clock)
        self.permblocks = OffenseTracker(config.permblock_interval, clock)
        self.dist_logins = DistributedLoginTracker(config.dist_interval, clock)

        self.sources: Dict[str, LogSource] = {
            path: LogSource(path, config.log_flood_threshold, config.log_flood_interval, clock)
            for path in config.log_sources
        }
        self._missing: Set[str] = set()
        self._unreadable: Set[str] = set()
        self.cluster_events: "queue.Queue[ClusterEvent]" = queue.Queue()

        # Temporary entries as of the start of the cycle
        self._temp_allowed: Optional[AddressSet] = None
        self._temp_denied: Optional[Set[str]] = None

        self._syslog_code: Optional[str] = None
        self._syslog_sent_at = 0.0
        self._syslog_next = 0.0

        self.stats = {"lines": 0, "events": 0, "blocks": 0, "alerts": 0}

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def _changed(self, path: str) -> bool:
        try:
            mtime = os.stat(path).st_mtime
        except FileNotFoundError:
            mtime = None
        if path in self._mtimes and self._mtimes[path] == mtime:
            return False
        self._mtimes[path] = mtime
        return True

    def reload_lists(self, force: bool = False):
        """Rebuild the exemption sets whose backing file changed."""
        config = self.config
        if self._changed(config.allow_file) or force:
            self.resolver.replace_allow(self.allow_list.address_set())
        if self._changed(config.ignore_file) or force:
            self.resolver.ignore, self.resolver.account_ignore = load_ignore_file(config.ignore_file)
        if self._changed(config.relay_hosts_file) or force:
            relay = load_address_file(config.relay_hosts_file, "relay")
            self.resolver.replace_relay(relay)
            if not force:
                logger.info("Relay hosts reloaded", path=config.relay_hosts_file, entries=len(relay))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """
        Prepare chains, restore persisted rules and open the logs.

        A shutdown signal during startup clears ``running``; ``run`` then
        returns at once.
        """
        logger.info("Starting LogWarden...")
        self.running = True

        buffered = None
        if self.config.faststart:
            buffered = self.buffered_factory()
            self.engine.use_executor(buffered)

        self.engine.setup_chains()
        restored = self.restore_rules()

        if buffered is not None:
            if not self.engine.flush():
                logger.error("Fast start rule load failed")
            self.engine.use_executor(self.executor)
        logger.info("Persisted rules restored", rules=restored, faststart=self.config.faststart)

        for path, source in self.sources.items():
            try:
                source.open(from_start=False)
                logger.info(f"Monitoring log file: {path}", categories=list(self.config.log_sources[path]))
            except LogNotFound:
                logger.warning(f"Log file not found: {path}")
                self._missing.add(path)
            except LogUnreadable as e:
                logger.warning(f"Log file unreadable, will retry: {path}", error=str(e.reason))
                self._unreadable.add(path)

        if self.publisher is not None:
            if self.publisher.start():
                self.publisher.listen(self.cluster_events.put)
            else:
                logger.warning("Cluster broker unreachable, continuing without propagation")

        if not self.running:
            logger.info("Shutdown requested during startup")
            return True
        logger.info("LogWarden is now running")
        return True

    def restore_rules(self) -> int:
        count = 0
        for entry in self.allow_list.entries():
            self.engine.apply(FirewallIntent(Intent.ALLOW, entry.address))
            count += 1
        for entry in self.deny_list.entries():
            self.engine.apply(FirewallIntent(Intent.BLOCK, entry.address))
            count += 1
        count += self.temp_allow.reapply()
        count += self.temp_deny.reapply()
        return count

    def run(self):
        """Main monitoring loop."""
        try:
            logger.info("Monitoring log files for security events...")
            while self.running:
                try:
                    self.run_cycle()
                except Exception:
                    logger.exception("Error during monitoring cycle")
                time.sleep(self.config.poll_interval)
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received")
        finally:
            self.stop()

    def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        logger.info("Stopping LogWarden...")

        self.engine.flush()
        for source in self.sources.values():
            source.close()
        if self.publisher is not None:
            self.publisher.stop()

        logger.info("LogWarden stopped", **self.stats)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self):
        self.reload_lists()
        self._refresh_temp_view()
        for path, source in self.sources.items():
            self._process_source(path, source)
        self._drain_cluster_events()
        self.sweep()
        self.check_syslog()

    def _refresh_temp_view(self):
        self._temp_allowed = AddressSet("adhoc", self.temp_allow.addresses())
        self._temp_denied = set(self.temp_deny.addresses())

    def _temp_view(self) -> Tuple[AddressSet, Set[str]]:
        if self._temp_allowed is None or self._temp_denied is None:
            self._refresh_temp_view()
        return self._temp_allowed, self._temp_denied

    def _process_source(self, path: str, source: LogSource):
        try:
            lines = source.read_new()
        except LogNotFound:
            self._unreadable.discard(path)
            if path not in self._missing:
                logger.warning(f"Log file not found: {path}")
                self._missing.add(path)
            return
        except LogUnreadable as e:
            if path not in self._unreadable:
                logger.warning(f"Log file unreadable, will retry: {path}", error=str(e.reason))
                self._unreadable.add(path)
            return
        except FloodDetected as e:
            logger.security_event("LOG_FLOOD", "WARN", {
                "path": path,
                "lines": e.line_count,
                "threshold": e.threshold,
                "interval": e.interval,
            })
            try:
                source.recover_from_flood()
            except LogNotFound:
                self._missing.add(path)
            except LogUnreadable:
                self._unreadable.add(path)
            return

        if path in self._missing:
            logger.info(f"Log file available again: {path}")
            self._missing.discard(path)
        if path in self._unreadable:
            logger.info(f"Log file readable again: {path}")
            self._unreadable.discard(path)

        for line in lines:
            self.stats["lines"] += 1
            try:
                self.process_line(line, path)
            except Exception:
                logger.exception("Error processing log line", path=path)

    def process_line(self, line: str, path: str) -> Optional[ClassifiedEvent]:
        categories = self.config.log_sources.get(path, ())
        event = self.classifier.classify_any(line, categories, source=path)
        if event is None:
            return None
        self.stats["events"] += 1
        if event.service in self.config.dist_triggers:
            self.handle_distributed_login(event)
        elif event.service == "syslogcheck":
            self.handle_syslog_check(event)
        else:
            self.handle_event(event)
        return event

    def handle_event(self, event: ClassifiedEvent) -> bool:
        """
        Apply exemption and trigger logic to one event.

        Returns:
            bool: True if the event caused a block
        """
        # Local relays carry a loopback address, which is reported but never blocked
        if not event.actionable or not normalize_ip(event.address):
            self.stats["alerts"] += 1
            logger.security_event("ALERT", "INFO", {
                "reason": event.reason,
                "service": event.service,
                "address": event.address,
                "account": event.account,
                "detail": event.detail,
                "source": event.source,
            })
            return False

        temp_allowed, temp_denied = self._temp_view()
        # Relay clients are only exempt from relay limits
        decision = self.resolver.is_exempt(
            event.address,
            skip_relay=event.service != "relay",
            account=event.account,
            extra=temp_allowed,
        )
        if decision:
            logger.debug("Ignoring event from exempt address", address=event.address,
                         service=event.service, exempt_list=decision.matched_set)
            return False

        trigger = self.config.triggers.get(event.service)
        if trigger is None or trigger.count <= 0:
            return False

        if event.address in temp_denied:
            return False

        hits = self.offenses.record(event.address, event.service)
        logger.info(f"{event.reason} {event.address}", service=event.service, account=event.account,
                    hits=hits, trigger=trigger.count)
        if hits < trigger.count:
            return False

        self.offenses.reset(event.address, event.service)
        self.block(event, hits, trigger)
        return True

    def handle_distributed_login(self, event: ClassifiedEvent) -> bool:
        """
        Count a successful login towards its account and block every source
        address once the account is used from too many places.

        Returns:
            bool: True if any address was blocked
        """
        dist: Optional[DistTrigger] = self.config.dist_triggers.get(event.service)
        if dist is None or dist.count <= 0 or not event.account or not normalize_ip(event.address):
            return False

        logins, addresses = self.dist_logins.record(event.service, event.account, event.address)
        if logins < dist.count or len(addresses) < dist.unique:
            return False
        self.dist_logins.reset(event.service, event.account)

        temp_allowed, temp_denied = self._temp_view()
        blocked = []
        for address in sorted(addresses):
            if self.resolver.is_exempt(address, skip_relay=True, account=event.account, extra=temp_allowed):
                continue
            comment = (f"({event.service}) {event.reason} {event.account} from {address}: {logins} logins from "
                       f"{len(addresses)} addresses in the last {self.config.dist_interval} secs")
            if dist.duration == 0:
                self._block_permanently(address, comment)
            elif address not in temp_denied:
                self.temp_deny.add(TempEntry(address, DENY, "inout", "", self.clock(), dist.duration, comment))
                temp_denied.add(address)
            blocked.append(address)

        self.stats["blocks"] += len(blocked)
        logger.security_event("DISTRIBUTED_LOGIN", "CRITICAL", {
            "service": event.service,
            "account": event.account,
            "logins": logins,
            "addresses": sorted(addresses),
            "blocked": blocked,
            "duration": dist.duration,
        })
        return bool(blocked)

    # ------------------------------------------------------------------
    # Syslog check
    # ------------------------------------------------------------------

    def check_syslog(self, now: Optional[float] = None):
        """
        Every SYSLOG_CHECK seconds, send a random code through syslog and
        alert when the previous code never showed up in SYSLOG_LOG.
        """
        interval = self.config.syslog_check
        if interval <= 0:
            return
        now = self.clock() if now is None else now

        if self._syslog_code is not None and now - self._syslog_sent_at >= interval:
            self.stats["alerts"] += 1
            logger.security_event("SYSLOG_CHECK_FAILED", "CRITICAL", {
                "code": self._syslog_code,
                "waited": int(now - self._syslog_sent_at),
            })
            self._syslog_code = None

        if self._syslog_code is None and now >= self._syslog_next:
            self._syslog_code = secrets.token_hex(8)
            self._syslog_sent_at = now
            self._syslog_next = now + interval
            try:
                self.syslog_writer(f"SYSLOG check [{self._syslog_code}]")
            except OSError as e:
                logger.error("Could not write syslog check", error=str(e))

    def handle_syslog_check(self, event: ClassifiedEvent) -> bool:
        if self._syslog_code is None or event.detail != self._syslog_code:
            return False
        logger.debug("Syslog check passed", code=self._syslog_code,
                     delay=round(self.clock() - self._syslog_sent_at, 1))
        self._syslog_code = None
        return True

    def block(self, event: ClassifiedEvent, hits: int, trigger: Trigger):
        address = event.address
        comment = f"({event.service}) {event.reason} {address}: {hits} in the last {self.config.trigger_interval} secs"

        if trigger.duration == 0:
            self._block_permanently(address, comment)
        else:
            self.temp_deny.add(TempEntry(address, DENY, "inout", "", self.clock(), trigger.duration, comment))
            if self._temp_denied is not None:
                self._temp_denied.add(address)
            if self.config.permblock:
                blocks = self.permblocks.record(address, "permblock")
                if blocks >= self.config.permblock_count:
                    self.permblocks.reset(address, "permblock")
                    try:
                        self.temp_deny.remove(address)
                    except EntryProtectedError as e:
                        logger.info("Temporary entry kept alongside permanent block", address=address, error=str(e))
                    self._block_permanently(
                        address, f"(permblock) {address} has had {blocks} temporary blocks in the last "
                                 f"{self.config.permblock_interval} secs")

        self.stats["blocks"] += 1
        logger.security_event("IP_BLOCKED", "CRITICAL", {
            "address": address,
            "service": event.service,
            "reason": event.reason,
            "hits": hits,
            "duration": trigger.duration,
        })

        if self.config.ssh_kill and event.service == "sshd":
            killed = self.ssh_killer(address, self.config.ssh_ports)
            if killed:
                logger.info("Killed sshd sessions of blocked address", address=address, pids=killed)

    def _block_permanently(self, address: str, comment: str):
        for old in self.deny_list.add(address, comment):
            self.engine.apply(FirewallIntent(Intent.UNBLOCK, old.address))
        self.engine.apply(FirewallIntent(Intent.BLOCK, address))
        if self.publisher is not None:
            self.publisher.publish(ClusterEvent("block", address, "inout", 0, comment))
        logger.security_event("IP_DENIED_PERMANENTLY", "CRITICAL", {"address": address, "comment": comment})

    def sweep(self, now: Optional[float] = None) -> List[TempEntry]:
        now = self.clock() if now is None else now
        expired = self.temp_deny.sweep(now) + self.temp_allow.sweep(now)
        self.offenses.prune(now)
        self.permblocks.prune(now)
        self.dist_logins.prune(now)
        return expired

    def _drain_cluster_events(self):
        while True:
            try:
                event = self.cluster_events.get_nowait()
            except queue.Empty:
                return
            try:
                self.apply_cluster_event(event)
            except (EntryProtectedError, ValueError) as e:
                logger.warning("Cluster event not applied", kind=event.kind, address=event.address, error=str(e))

    def apply_cluster_event(self, event: ClusterEvent):
        logger.info("Cluster event received", kind=event.kind, address=event.address, origin=event.origin)
        if event.kind == "block":
            if self.resolver.is_exempt(event.address):
                logger.info("Ignoring cluster block of exempt address", address=event.address)
                return
            self.remote_stores[DENY].add(TempEntry(event.address, DENY, event.scope, "", self.clock(),
                                                   event.duration, f"Cluster: {event.comment}"))
        elif event.kind == "allow":
            self.remote_stores[ALLOW].add(TempEntry(event.address, ALLOW, event.scope, "", self.clock(),
                                                    event.duration, f"Cluster: {event.comment}"))
        elif event.kind == "unblock":
            self.remote_stores[DENY].remove(event.address)
        elif event.kind == "unallow":
            self.remote_stores[ALLOW].remove(event.address)


def main():
    """Main entry point."""
    try:
        config = load_config()
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(log_file=config.log_file)

    if os.geteuid() != 0:
        print("ERROR: LogWarden must be run as root to manage iptables", file=sys.stderr)
        sys.exit(1)

    publisher = ClusterPublisher.from_config(config) if config.cluster_enabled else None
    daemon = LogWardenDaemon(config, publisher=publisher)

    def handle_signal(signum, frame):
        """Handle SIGTERM/SIGINT for clean shutdown."""
        logger.info("Shutdown signal received", signal=signum)
        daemon.running = False

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    if daemon.start():
        daemon.run()
    else:
        print("Failed to start LogWarden", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
