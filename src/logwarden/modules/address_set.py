"""
LogWarden Address Sets

Named collections of IPv4/IPv6 networks and exact addresses with
transparent cross-family membership tests, plus the address validation
helpers shared by the classifier, stores and firewall engine.
"""

import ipaddress
from typing import Iterable, Iterator, List, Optional, Set, Union

from logwarden.modules.logging_utils import get_logger

logger = get_logger("address_set")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

MAPPED_PREFIX = "::ffff:"


def _split_entry(text: str):
    text = text.strip()
    if "/" in text:
        address, prefix = text.split("/", 1)
        return address, prefix
    return text, None


def check_ip(text: str) -> int:
    """
    Validate an address (optionally with a prefix length).

    Returns 4 or 6 for a valid address of that family, 0 for anything
    invalid, for loopback addresses and for out-of-range prefixes.
    """
    if not text:
        return 0
    address, prefix = _split_entry(text)
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError:
        return 0
    if parsed.is_loopback:
        return 0
    if prefix is not None:
        if not prefix.isdigit():
            return 0
        if not 1 <= int(prefix) <= parsed.max_prefixlen:
            return 0
    return parsed.version


def ip_family(text: str) -> int:
    """Return 4 or 6 for a parseable address or network, 0 otherwise."""
    address, _ = _split_entry(text or "")
    try:
        return ipaddress.ip_address(address).version
    except ValueError:
        return 0


def unwrap_mapped(text: str) -> str:
    """Strip an IPv4-in-IPv6 ``::ffff:`` prefix."""
    if text.lower().startswith(MAPPED_PREFIX) and "." in text:
        return text[len(MAPPED_PREFIX):]
    return text


def normalize_ip(text: str) -> Optional[str]:
    """
    Normalize an address taken from a log line.

    The IPv4-mapped prefix is removed and IPv6 addresses are compressed.
    Returns None for invalid or loopback addresses.
    """
    if not text:
        return None
    candidate = unwrap_mapped(text.strip())
    if not check_ip(candidate):
        return None
    address, prefix = _split_entry(candidate)
    compressed = ipaddress.ip_address(address).compressed
    if prefix is not None:
        return f"{compressed}/{int(prefix)}"
    return compressed


def parse_network(text: str) -> Optional[IPNetwork]:
    """
    Parse a CIDR entry with strict prefix validation.

    The prefix length must be 1-32 for IPv4 and 1-128 for IPv6. Host bits
    are masked off. Returns None when the entry is rejected.
    """
    address, prefix = _split_entry(text)
    if prefix is None or not prefix.isdigit():
        return None
    try:
        parsed = ipaddress.ip_address(unwrap_mapped(address))
    except ValueError:
        return None
    length = int(prefix)
    if not 1 <= length <= parsed.max_prefixlen:
        return None
    return ipaddress.ip_network(f"{parsed}/{length}", strict=False)


class AddressSet:
    """
    Named set of networks and exact addresses.

    Membership accepts either family; an address of one family never
    matches a network of the other.
    """

    def __init__(self, name: str, entries: Iterable[str] = ()):
        self.name = name
        self._networks: List[IPNetwork] = []
        self._exact: Set[IPAddress] = set()
        for entry in entries:
            self.add(entry)

    def add(self, entry: str) -> bool:
        """Add an address or CIDR range. Returns False for rejected entries."""
        entry = (entry or "").strip()
        if not entry:
            return False

        if "/" in entry:
            network = parse_network(entry)
            if network is None:
                logger.warning("Rejected invalid CIDR entry", set=self.name, entry=entry)
                return False
            if network.num_addresses == 1:
                self._exact.add(network.network_address)
            elif network not in self._networks:
                self._networks.append(network)
            return True

        try:
            self._exact.add(ipaddress.ip_address(unwrap_mapped(entry)))
        except ValueError:
            logger.warning("Rejected invalid address entry", set=self.name, entry=entry)
            return False
        return True

    def contains(self, address: str) -> bool:
        try:
            parsed = ipaddress.ip_address(unwrap_mapped((address or "").strip()))
        except ValueError:
            return False

        if parsed in self._exact:
            return True

        for network in self._networks:
            if network.version == parsed.version and parsed in network:
                return True
        return False

    def __contains__(self, address: str) -> bool:
        return self.contains(address)

    def __len__(self) -> int:
        return len(self._exact) + len(self._networks)

    def __iter__(self) -> Iterator[str]:
        for network in self._networks:
            yield str(network)
        for address in sorted(self._exact, key=lambda a: (a.version, int(a))):
            yield str(address)

    def __repr__(self) -> str:
        return f"AddressSet({self.name!r}, {len(self)} entries)"
