"""
LogWarden Rule Stores

TempRuleStore keeps the temporary deny or allow entries of one kind in a
pipe-delimited file and mirrors every change into the packet filter.
PermanentList keeps the static ``address # comment`` allow and deny files.

Both hold an exclusive flock on a sidecar ``.lock`` file for the whole
read-modify-write sequence and replace the data file atomically.
"""

import fcntl
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional

from logwarden.modules.address_set import AddressSet, normalize_ip
from logwarden.modules.errors import EntryProtectedError
from logwarden.modules.firewall import SCOPES, FirewallIntent, FirewallRuleEngine, Intent, normalize_ports
from logwarden.modules.logging_utils import get_logger

logger = get_logger("rule_store")

DENY = "deny"
ALLOW = "allow"
PROTECTED_MARKER = "do not delete"


def is_protected(comment: str) -> bool:
    return PROTECTED_MARKER in (comment or "").lower()


@contextmanager
def locked(path: str):
    """Hold an exclusive advisory lock for ``path`` via ``path.lock``."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(f"{path}.lock", "a") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write(path: str, lines: Iterable[str]):
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as handle:
        for line in lines:
            handle.write(line + "\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _read_lines(path: str) -> List[str]:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            return handle.read().splitlines()
    except FileNotFoundError:
        return []


@dataclass(frozen=True)
class TempEntry:
    address: str
    kind: str = DENY
    scope: str = "inout"
    ports: str = ""
    created_at: float = 0.0
    duration: int = 0
    comment: str = ""

    @property
    def protected(self) -> bool:
        return is_protected(self.comment)

    @property
    def expires_at(self) -> Optional[float]:
        if self.duration <= 0:
            return None
        return self.created_at + self.duration

    def expired(self, now: float) -> bool:
        return self.duration > 0 and self.created_at + self.duration <= now

    def to_line(self) -> str:
        comment = self.comment.replace("|", "/").replace("\n", " ")
        return f"{int(self.created_at)}|{self.address}|{self.ports}|{self.scope}|{self.duration}|{comment}"

    @classmethod
    def from_line(cls, line: str, kind: str) -> "TempEntry":
        """
        Parse one persisted line.

        Raises:
            ValueError: if the line is malformed
        """
        parts = line.split("|", 5)
        if len(parts) != 6:
            raise ValueError(f"expected 6 fields, got {len(parts)}")
        created_at, address, ports, scope, duration, comment = parts
        normalized = normalize_ip(address)
        if not normalized:
            raise ValueError(f"invalid address [{address}]")
        if scope not in SCOPES:
            raise ValueError(f"invalid scope [{scope}]")
        if int(duration) < 0:
            raise ValueError(f"negative duration [{duration}]")
        return cls(
            address=normalized,
            kind=kind,
            scope=scope,
            ports=normalize_ports(ports),
            created_at=float(created_at),
            duration=int(duration),
            comment=comment,
        )

    def intent(self, remove: bool = False) -> FirewallIntent:
        if self.kind == DENY:
            action = Intent.UNBLOCK if remove else Intent.BLOCK
        else:
            action = Intent.UNALLOW if remove else Intent.ALLOW
        return FirewallIntent(action, self.address, self.scope, self.ports)


class TempRuleStore:
    """
    Temporary entries of one kind, at most one per address.

    Args:
        path: Persisted store file
        kind: "deny" or "allow"
        engine: Firewall engine the rules are applied through
        limit: Ceiling on expiring deny entries (0 disables)
        publisher: Optional cluster publisher notified of every change
        clock: Time source
    """

    def __init__(
        self,
        path: str,
        kind: str,
        engine: FirewallRuleEngine,
        limit: int = 0,
        publisher=None,
        clock: Callable[[], float] = time.time
    ):
        if kind not in (DENY, ALLOW):
            raise ValueError(f"unknown store kind {kind!r}")
        self.path = path
        self.kind = kind
        self.engine = engine
        self.limit = limit
        self.publisher = publisher
        self.clock = clock

    def _load(self) -> Dict[str, TempEntry]:
        entries: Dict[str, TempEntry] = {}
        for number, raw in enumerate(_read_lines(self.path), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            try:
                entry = TempEntry.from_line(line, self.kind)
            except ValueError as e:
                logger.warning("Skipping unparseable store line", path=self.path, line=number, error=str(e))
                continue
            entries[entry.address] = entry
        return entries

    def _save(self, entries: Dict[str, TempEntry]):
        atomic_write(self.path, (entry.to_line() for entry in entries.values()))

    def _install(self, entry: TempEntry):
        self.engine.apply(entry.intent())
        self._publish(entry, removed=False)

    def _uninstall(self, entry: TempEntry):
        self.engine.apply(entry.intent(remove=True))
        self._publish(entry, removed=True)

    def _publish(self, entry: TempEntry, removed: bool):
        if self.publisher is None:
            return
        self.publisher.publish_entry(entry, removed=removed)

    def _validated(self, entry: TempEntry) -> TempEntry:
        normalized = normalize_ip(entry.address)
        if not normalized:
            raise ValueError(f"invalid address [{entry.address}]")
        if entry.scope not in SCOPES:
            raise ValueError(f"invalid scope [{entry.scope}]")
        if not isinstance(entry.duration, int) or entry.duration < 0:
            raise ValueError(f"invalid duration [{entry.duration}]")
        if not isinstance(entry.comment, str):
            raise ValueError(f"comment must be a string, got {type(entry.comment).__name__}")
        return replace(entry, address=normalized, kind=self.kind, ports=normalize_ports(entry.ports),
                       created_at=entry.created_at or self.clock())

    def add(self, entry: TempEntry) -> TempEntry:
        """
        Install ``entry``, replacing any existing entry for its address.

        The store is written before the packet filter is touched.

        Raises:
            ValueError: if the address, scope, duration, ports or comment is invalid
        """
        entry = self._validated(entry)

        with locked(self.path):
            entries = self._load()
            existing = entries.pop(entry.address, None)

            evicted: List[TempEntry] = []
            if self.kind == DENY and self.limit > 0:
                expiring = sorted((e for e in entries.values() if e.duration > 0),
                                  key=lambda e: e.created_at)
                while expiring and len(expiring) >= self.limit:
                    oldest = expiring.pop(0)
                    del entries[oldest.address]
                    evicted.append(oldest)

            entries[entry.address] = entry
            self._save(entries)

            if existing is not None:
                self._uninstall(existing)
            for oldest in evicted:
                self._uninstall(oldest)
                logger.info("Temporary deny limit reached, evicted oldest entry",
                            address=oldest.address, limit=self.limit)
            self._install(entry)

        logger.security_event(f"TEMP_{self.kind.upper()}_ADDED", "WARN" if self.kind == DENY else "INFO", {
            "address": entry.address,
            "duration": entry.duration,
            "scope": entry.scope,
            "ports": entry.ports,
            "comment": entry.comment,
        })
        return entry

    def remove(self, address: str) -> Optional[TempEntry]:
        """
        Remove the entry for ``address`` and its rule.

        Raises:
            EntryProtectedError: if the entry is marked "do not delete"
        """
        address = normalize_ip(address) or address
        with locked(self.path):
            entries = self._load()
            entry = entries.get(address)
            if entry is None:
                return None
            if entry.protected:
                raise EntryProtectedError(address, f"temporary {self.kind}")
            del entries[address]
            self._uninstall(entry)
            self._save(entries)
        logger.info("Temporary entry removed", address=address, kind=self.kind)
        return entry

    def sweep(self, now: Optional[float] = None) -> List[TempEntry]:
        """Remove every expired entry and its rule."""
        now = self.clock() if now is None else now
        with locked(self.path):
            entries = self._load()
            expired = [entry for entry in entries.values() if entry.expired(now)]
            if not expired:
                return []
            for entry in expired:
                del entries[entry.address]
                self._uninstall(entry)
            self._save(entries)

        for entry in expired:
            logger.info("Temporary entry expired", address=entry.address, kind=self.kind,
                        duration=entry.duration)
        return expired

    def flush(self) -> List[TempEntry]:
        """Remove all entries except protected ones."""
        with locked(self.path):
            entries = self._load()
            removed = [entry for entry in entries.values() if not entry.protected]
            for entry in removed:
                del entries[entry.address]
                self._uninstall(entry)
            self._save(entries)
        logger.info("Temporary entries flushed", kind=self.kind, removed=len(removed))
        return removed

    def reapply(self) -> int:
        """Install the rules for every persisted entry without rewriting the file."""
        with locked(self.path):
            entries = self._load()
        for entry in entries.values():
            self.engine.apply(entry.intent())
        return len(entries)

    def entries(self) -> List[TempEntry]:
        with locked(self.path):
            return list(self._load().values())

    def get(self, address: str) -> Optional[TempEntry]:
        address = normalize_ip(address) or address
        with locked(self.path):
            return self._load().get(address)

    def addresses(self) -> List[str]:
        return [entry.address for entry in self.entries()]

    def __len__(self) -> int:
        return len(self.entries())


@dataclass(frozen=True)
class PermanentEntry:
    address: str
    comment: str = ""

    @property
    def protected(self) -> bool:
        return is_protected(self.comment)

    def to_line(self) -> str:
        if self.comment:
            return f"{self.address} # {self.comment}"
        return self.address


class PermanentList:
    """
    Static allow or deny file of ``address # comment`` lines.

    Lines that are not a plain address or CIDR range are preserved on
    rewrite but otherwise ignored.
    """

    def __init__(self, path: str, kind: str, limit: int = 0):
        self.path = path
        self.kind = kind
        self.limit = limit

    @staticmethod
    def _parse(line: str) -> Optional[PermanentEntry]:
        body, _, comment = line.partition("#")
        address = body.strip()
        if not address or " " in address:
            return None
        # Prefix lengths outside 1-32 / 1-128 are rejected along with loopback
        address = normalize_ip(address)
        if not address:
            return None
        return PermanentEntry(address, comment.strip())

    def entries(self) -> List[PermanentEntry]:
        with locked(self.path):
            return self._entries(_read_lines(self.path))

    def _entries(self, lines: List[str]) -> List[PermanentEntry]:
        entries = []
        for line in lines:
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            entry = self._parse(stripped)
            if entry is None:
                logger.debug("Ignoring unsupported permanent list line", path=self.path, line=stripped)
                continue
            entries.append(entry)
        return entries

    def contains(self, address: str) -> bool:
        return address in self.address_set()

    def get(self, address: str) -> Optional[PermanentEntry]:
        address = normalize_ip(address) or address
        for entry in self.entries():
            if entry.address == address:
                return entry
        return None

    def address_set(self) -> AddressSet:
        return AddressSet(self.kind, (entry.address for entry in self.entries()))

    def add(self, address: str, comment: str = "") -> List[PermanentEntry]:
        """
        Append ``address`` unless already listed.

        Returns:
            The entries evicted to stay under the list ceiling
        """
        if not isinstance(comment, str):
            raise ValueError(f"comment must be a string, got {type(comment).__name__}")
        comment = " ".join(comment.split())
        entry = self._parse(f"{address} # {comment}" if comment else address)
        if entry is None:
            raise ValueError(f"invalid address [{address}]")

        evicted: List[PermanentEntry] = []
        with locked(self.path):
            lines = _read_lines(self.path)
            current = self._entries(lines)
            if any(existing.address == entry.address for existing in current):
                return []

            if self.limit > 0:
                removable = [existing for existing in current if not existing.protected]
                while removable and len(current) - len(evicted) >= self.limit:
                    evicted.append(removable.pop(0))
                if evicted:
                    lines = self._without(lines, {e.address for e in evicted})

            lines.append(entry.to_line())
            atomic_write(self.path, lines)

        for old in evicted:
            logger.info("Permanent list limit reached, evicted oldest entry",
                        path=self.path, address=old.address, limit=self.limit)
        return evicted

    def _without(self, lines: List[str], addresses) -> List[str]:
        kept = []
        for line in lines:
            entry = self._parse(line.strip()) if line.strip() and not line.strip().startswith("#") else None
            if entry is not None and entry.address in addresses:
                continue
            kept.append(line)
        return kept

    def remove(self, address: str) -> Optional[PermanentEntry]:
        """
        Raises:
            EntryProtectedError: if the entry is marked "do not delete"
        """
        address = normalize_ip(address) or address
        with locked(self.path):
            lines = _read_lines(self.path)
            match = next((entry for entry in self._entries(lines) if entry.address == address), None)
            if match is None:
                return None
            if match.protected:
                raise EntryProtectedError(address, f"permanent {self.kind}")
            atomic_write(self.path, self._without(lines, {address}))
        return match
