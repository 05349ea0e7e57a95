"""
LogWarden Exemption Resolver

Decides whether an address must never be blocked. The checks run in a
fixed order and stop at the first matching set: own addresses, the allow
list, the ignore lists (per account, then global), relay clients and
finally any ad-hoc ranges supplied by the caller.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from logwarden.modules.address_set import AddressSet, ip_family


@dataclass(frozen=True)
class ExemptionDecision:
    exempt: bool
    matched_set: str = ""

    def __bool__(self) -> bool:
        return self.exempt


NOT_EXEMPT = ExemptionDecision(False, "")


class ExemptionResolver:

    def __init__(
        self,
        own: Optional[AddressSet] = None,
        allow: Optional[AddressSet] = None,
        ignore: Optional[AddressSet] = None,
        relay: Optional[AddressSet] = None,
        account_ignore: Optional[Mapping[str, AddressSet]] = None
    ):
        self.own = own or AddressSet("own")
        self.allow = allow or AddressSet("allow")
        self.ignore = ignore or AddressSet("ignore")
        self.relay = relay or AddressSet("relay")
        self.account_ignore = dict(account_ignore or {})

    def replace_relay(self, relay: AddressSet):
        self.relay = relay

    def replace_allow(self, allow: AddressSet):
        self.allow = allow

    def is_exempt(
        self,
        address: str,
        skip_relay: bool = False,
        account: str = "",
        extra: Iterable[str] = ()
    ) -> ExemptionDecision:
        if not address or not ip_family(address):
            return NOT_EXEMPT

        if address in self.own:
            return ExemptionDecision(True, "own")
        if address in self.allow:
            return ExemptionDecision(True, "allow")

        if account:
            account_set = self.account_ignore.get(account)
            if account_set is not None and address in account_set:
                return ExemptionDecision(True, "ignore")
        if address in self.ignore:
            return ExemptionDecision(True, "ignore")

        if not skip_relay and address in self.relay:
            return ExemptionDecision(True, "relay")

        if not isinstance(extra, AddressSet):
            extra = AddressSet("adhoc", tuple(extra))
        if len(extra) and address in extra:
            return ExemptionDecision(True, "adhoc")

        return NOT_EXEMPT
