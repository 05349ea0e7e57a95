"""LogWarden exception hierarchy."""


class LogWardenError(Exception):
    """Base class for all LogWarden errors."""


class ConfigError(LogWardenError):
    """A configuration value is missing or malformed. Fatal at startup."""


class LogNotFound(LogWardenError):
    """A watched log path does not exist (yet). Retried on a later cycle."""

    def __init__(self, path: str):
        super().__init__(f"Log file not found: {path}")
        self.path = path


class LogUnreadable(LogWardenError):
    """A watched log path exists but cannot be read (permissions, I/O). Retried on a later cycle."""

    def __init__(self, path: str, reason: OSError):
        super().__init__(f"Log file unreadable: {path}: {reason}")
        self.path = path
        self.reason = reason


class FloodDetected(LogWardenError):
    """More lines than the flood threshold arrived within one check interval."""

    def __init__(self, path: str, line_count: int, threshold: int, interval: int):
        super().__init__(
            f"Log flood on {path}: {line_count} lines in {interval}s (threshold {threshold})"
        )
        self.path = path
        self.line_count = line_count
        self.threshold = threshold
        self.interval = interval


class EntryProtectedError(LogWardenError):
    """Refusal to remove an entry whose comment carries the "do not delete" marker."""

    def __init__(self, address: str, kind: str):
        super().__init__(f"{address} not removed: {kind} entry is marked \"do not delete\"")
        self.address = address
        self.kind = kind


class AdminError(LogWardenError):
    """An administrative request was refused."""


class InvalidAddressError(AdminError):
    """The address is not a valid, non-loopback IPv4/IPv6 address or range."""

    def __init__(self, address: str):
        super().__init__(f"{address} is not a valid IP address")
        self.address = address


class ExemptAddressError(AdminError):
    """A deny was requested for an address that is exempt from blocking."""

    def __init__(self, address: str, matched_set: str):
        super().__init__(f"{address} is exempt from blocking ({matched_set} list)")
        self.address = address
        self.matched_set = matched_set


class ProtectedEntryError(AdminError):
    """An administrative removal hit an entry marked "do not delete"."""
