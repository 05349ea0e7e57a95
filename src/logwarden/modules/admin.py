"""
LogWarden Administrative Operations

Manual management of the permanent allow/deny lists and of temporary
entries. Every change is written to the persisted files and applied to
the packet filter immediately.
"""

import time
from typing import Callable, Dict, List, Optional

from logwarden.modules.address_set import normalize_ip
from logwarden.modules.errors import (
    EntryProtectedError,
    ExemptAddressError,
    InvalidAddressError,
    ProtectedEntryError,
)
from logwarden.modules.exemption import ExemptionResolver
from logwarden.modules.firewall import (
    FirewallIntent,
    FirewallRuleEngine,
    ImmediateExecutor,
    Intent,
    normalize_ports,
)
from logwarden.modules.logging_utils import get_logger
from logwarden.modules.rule_store import (
    ALLOW,
    DENY,
    PermanentList,
    TempEntry,
    TempRuleStore,
)

logger = get_logger("admin")


def _check_address(address: str) -> str:
    normalized = normalize_ip(address or "")
    if not normalized:
        raise InvalidAddressError(address)
    return normalized


def _check_comment(comment) -> str:
    if not isinstance(comment, str):
        raise ValueError(f"comment must be a string, got {type(comment).__name__}")
    return comment


class AdminService:
    """Administrative operations over the stores and the firewall engine."""

    def __init__(
        self,
        engine: FirewallRuleEngine,
        allow_list: PermanentList,
        deny_list: PermanentList,
        temp_deny: TempRuleStore,
        temp_allow: TempRuleStore,
        resolver: Optional[ExemptionResolver] = None,
        clock: Callable[[], float] = time.time
    ):
        self.engine = engine
        self.allow_list = allow_list
        self.deny_list = deny_list
        self.temp_stores = {DENY: temp_deny, ALLOW: temp_allow}
        self.resolver = resolver or ExemptionResolver()
        self.clock = clock

    @classmethod
    def from_config(cls, config, resolver: Optional[ExemptionResolver] = None, publisher=None) -> "AdminService":
        executor = ImmediateExecutor(config.iptables, config.ip6tables, config.wait_lock, config.command_timeout)
        engine = FirewallRuleEngine.from_config(config, executor)
        return cls(
            engine=engine,
            allow_list=PermanentList(config.allow_file, ALLOW),
            deny_list=PermanentList(config.deny_file, DENY, limit=config.deny_ip_limit),
            temp_deny=TempRuleStore(config.tempban_file, DENY, engine, limit=config.deny_temp_ip_limit,
                                    publisher=publisher),
            temp_allow=TempRuleStore(config.tempallow_file, ALLOW, engine, publisher=publisher),
            resolver=resolver,
        )

    def _temp_store(self, kind: str) -> TempRuleStore:
        store = self.temp_stores.get(kind)
        if store is None:
            raise ValueError(f"unknown temporary entry kind {kind!r}")
        return store

    # Permanent allow

    def allow_add(self, address: str, comment: str = "") -> bool:
        address = _check_address(address)
        comment = _check_comment(comment)
        # An allowed address must not stay denied
        try:
            denied = self.deny_list.remove(address)
        except EntryProtectedError as e:
            raise ProtectedEntryError(str(e))
        if self._drop_deny(address) or denied is not None:
            self.engine.apply(FirewallIntent(Intent.UNBLOCK, address))
        self.allow_list.add(address, comment)
        applied = self.engine.apply(FirewallIntent(Intent.ALLOW, address))
        logger.security_event("ALLOW_ADDED", "INFO", {"address": address, "comment": comment})
        return applied

    def allow_remove(self, address: str) -> bool:
        address = _check_address(address)
        try:
            removed = self.allow_list.remove(address)
        except EntryProtectedError as e:
            raise ProtectedEntryError(str(e))
        if removed is None:
            return False
        self.engine.apply(FirewallIntent(Intent.UNALLOW, address))
        logger.info("Permanent allow removed", address=address)
        return True

    # Permanent deny

    def deny_add(self, address: str, comment: str = "") -> bool:
        address = _check_address(address)
        comment = _check_comment(comment)
        decision = self.resolver.is_exempt(address)
        if decision:
            raise ExemptAddressError(address, decision.matched_set)
        if self.allow_list.contains(address):
            raise ExemptAddressError(address, "allow")

        evicted = self.deny_list.add(address, comment)
        for old in evicted:
            self.engine.apply(FirewallIntent(Intent.UNBLOCK, old.address))
        applied = self.engine.apply(FirewallIntent(Intent.BLOCK, address))
        logger.security_event("DENY_ADDED", "WARN", {"address": address, "comment": comment})
        return applied

    def deny_remove(self, address: str) -> bool:
        address = _check_address(address)
        try:
            removed = self.deny_list.remove(address)
        except EntryProtectedError as e:
            raise ProtectedEntryError(str(e))
        removed_temp = self._drop_deny(address)
        if removed is None and not removed_temp:
            return False
        self.engine.apply(FirewallIntent(Intent.UNBLOCK, address))
        logger.info("Deny removed", address=address)
        return True

    def _drop_deny(self, address: str) -> bool:
        try:
            return self.temp_stores[DENY].remove(address) is not None
        except EntryProtectedError as e:
            raise ProtectedEntryError(str(e))

    # Temporary entries

    def temp_add(
        self,
        kind: str,
        address: str,
        duration: int,
        scope: str = "inout",
        ports: str = "",
        comment: str = ""
    ) -> TempEntry:
        address = _check_address(address)
        comment = _check_comment(comment)
        ports = normalize_ports(ports)
        if duration < 0:
            raise ValueError("duration must not be negative")
        if scope not in ("in", "out", "inout"):
            raise ValueError(f"unknown scope {scope!r}")
        if kind == DENY:
            decision = self.resolver.is_exempt(address)
            if decision:
                raise ExemptAddressError(address, decision.matched_set)
        entry = TempEntry(address, kind, scope, ports, self.clock(), duration, comment)
        return self._temp_store(kind).add(entry)

    def temp_remove(self, kind: str, address: str) -> Optional[TempEntry]:
        address = _check_address(address)
        try:
            return self._temp_store(kind).remove(address)
        except EntryProtectedError as e:
            raise ProtectedEntryError(str(e))

    def temp_list(self, kind: str) -> List[TempEntry]:
        return self._temp_store(kind).entries()

    def temp_flush(self, kind: Optional[str] = None) -> int:
        kinds = [kind] if kind else [DENY, ALLOW]
        return sum(len(self._temp_store(name).flush()) for name in kinds)

    # Queries

    def status(self, address: str) -> Dict:
        """Everything known about ``address``."""
        address = _check_address(address)
        now = self.clock()
        temp = {}
        for kind, store in self.temp_stores.items():
            entry = store.get(address)
            if entry is not None:
                temp[kind] = {
                    "scope": entry.scope,
                    "ports": entry.ports,
                    "duration": entry.duration,
                    "remaining": max(0, int(entry.expires_at - now)) if entry.expires_at else None,
                    "comment": entry.comment,
                }
        decision = self.resolver.is_exempt(address)
        return {
            "address": address,
            "allowed": self.allow_list.contains(address),
            "denied": self.deny_list.contains(address),
            "temporary": temp,
            "exempt": decision.exempt,
            "exempt_list": decision.matched_set,
        }
