"""
LogWarden Configuration

A single immutable configuration value, built once at startup and injected
into every component. ``load_config`` reads a csf.conf style file of
``KEY = "value"`` lines and overlays it on the defaults.
"""

import os
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Tuple

from logwarden.modules.errors import ConfigError

DEFAULT_CONFIG_PATH = os.environ.get("LOGWARDEN_CONFIG", "/etc/logwarden/logwarden.conf")

TRIGGER_KEYS = {
    "sshd": "LF_SSHD",
    "ftpd": "LF_FTPD",
    "smtpauth": "LF_SMTPAUTH",
    "eximsyntax": "LF_EXIMSYNTAX",
    "pop3d": "LF_POP3D",
    "imapd": "LF_IMAPD",
    "htpasswd": "LF_HTACCESS",
    "mod_security": "LF_MODSEC",
    "cxs": "LF_CXS",
    "mod_qos": "LF_QOS",
    "symlink": "LF_SYMLINK",
    "bind": "LF_BIND",
    "suhosin": "LF_SUHOSIN",
    "cpanel": "LF_CPANEL",
    "apache401": "LF_APACHE_401",
    "apache403": "LF_APACHE_403",
    "apache404": "LF_APACHE_404",
    "portscan": "PS_LIMIT",
    "relay": "RT_RELAY_LIMIT",
}

# One account logged into from many addresses
DIST_KEYS = {
    "distftp": "LF_DISTFTP",
    "distsmtp": "LF_DISTSMTP",
}

# Log path keys and the classifier categories read from each
LOG_KEYS = {
    "SSHD_LOG": ("ssh", "ssh-login"),
    "SU_LOG": ("su", "console"),
    "SUDO_LOG": ("sudo",),
    "FTPD_LOG": ("ftp", "dist-ftp"),
    "SMTPAUTH_LOG": ("smtp-auth", "dist-smtp"),
    "SMTPRELAY_LOG": ("relay",),
    "POP3D_LOG": ("mail-auth", "mail-login"),
    "IMAPD_LOG": ("mail-auth", "mail-login"),
    "HTACCESS_LOG": ("web-auth", "web-401", "web-403", "web-404"),
    "MODSEC_LOG": ("modsec",),
    "BIND_LOG": ("bind",),
    "SUHOSIN_LOG": ("suhosin",),
    "CPANEL_LOG": ("cpanel",),
    "IPTABLES_LOG": ("port-scan", "port-knock", "uid"),
    "SCRIPT_LOG": ("script",),
    "SYSLOG_LOG": ("syslog-check",),
}

DEFAULT_LOG_PATHS = {
    "SSHD_LOG": "/var/log/secure",
    "SU_LOG": "/var/log/secure",
    "SUDO_LOG": "/var/log/secure",
    "FTPD_LOG": "/var/log/messages",
    "SMTPAUTH_LOG": "/var/log/exim_mainlog",
    "SMTPRELAY_LOG": "/var/log/exim_mainlog",
    "POP3D_LOG": "/var/log/maillog",
    "IMAPD_LOG": "/var/log/maillog",
    "HTACCESS_LOG": "/var/log/httpd/error_log",
    "MODSEC_LOG": "/var/log/httpd/error_log",
    "BIND_LOG": "/var/log/messages",
    "SUHOSIN_LOG": "/var/log/messages",
    "CPANEL_LOG": "/usr/local/cpanel/logs/login_log",
    "IPTABLES_LOG": "/var/log/messages",
    "SCRIPT_LOG": "/var/log/exim_mainlog",
    "SYSLOG_LOG": "/var/log/messages",
}

DEFAULT_TRIGGER_COUNTS = {
    "sshd": 5,
    "ftpd": 10,
    "smtpauth": 5,
    "eximsyntax": 10,
    "pop3d": 10,
    "imapd": 10,
    "htpasswd": 5,
    "mod_security": 5,
    "cxs": 1,
    "mod_qos": 0,
    "symlink": 0,
    "bind": 0,
    "suhosin": 0,
    "cpanel": 5,
    "apache401": 0,
    "apache403": 0,
    "apache404": 0,
    "portscan": 10,
    "relay": 100,
}

CONFIG_LINE = re.compile(r'^\s*([A-Za-z0-9_]+)\s*=\s*"(.*)"\s*$')


@dataclass(frozen=True)
class Trigger:
    """How many hits inside the trigger interval cause a block, and for how long (0 = permanent)."""
    count: int
    duration: int


@dataclass(frozen=True)
class DistTrigger:
    """
    Logins to one account inside LF_DIST_INTERVAL from at least ``unique``
    addresses block every one of them.
    """
    count: int
    unique: int
    duration: int


def log_sources_from_paths(paths: Mapping[str, str]) -> Dict[str, Tuple[str, ...]]:
    """Merge log path keys into ``{path: categories}`` keeping category order."""
    sources: Dict[str, Tuple[str, ...]] = {}
    for key, categories in LOG_KEYS.items():
        path = (paths.get(key) or "").strip()
        if not path:
            continue
        merged = list(sources.get(path, ()))
        for category in categories:
            if category not in merged:
                merged.append(category)
        sources[path] = tuple(merged)
    return sources


def _default_triggers() -> Dict[str, Trigger]:
    return {service: Trigger(count, 3600) for service, count in DEFAULT_TRIGGER_COUNTS.items()}


def _default_dist_triggers() -> Dict[str, DistTrigger]:
    return {service: DistTrigger(0, 3, 3600) for service in DIST_KEYS}


@dataclass(frozen=True)
class DaemonConfig:
    # Packet filter binaries
    iptables: str = "/sbin/iptables"
    ip6tables: str = "/sbin/ip6tables"
    iptables_restore: str = "/sbin/iptables-restore"
    ip6tables_restore: str = "/sbin/ip6tables-restore"
    ipv6: bool = True
    wait_lock: bool = False
    command_timeout: float = 10.0
    drop: str = "DROP"
    drop_out: str = "DROP"
    rule_position: int = 1
    faststart: bool = True

    # Persisted state
    deny_file: str = "/etc/logwarden/logwarden.deny"
    allow_file: str = "/etc/logwarden/logwarden.allow"
    ignore_file: str = "/etc/logwarden/logwarden.ignore"
    tempban_file: str = "/var/lib/logwarden/logwarden.tempban"
    tempallow_file: str = "/var/lib/logwarden/logwarden.tempallow"
    relay_hosts_file: str = "/etc/relayhosts"
    deny_ip_limit: int = 200
    deny_temp_ip_limit: int = 100

    own_addresses: Tuple[str, ...] = ()
    broadcast_addresses: Tuple[str, ...] = ()

    # Daemon loop
    poll_interval: float = 5.0
    log_flood_threshold: int = 5000
    log_flood_interval: int = 60
    log_sources: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: log_sources_from_paths(DEFAULT_LOG_PATHS)
    )

    # Enforcement
    trigger_interval: int = 3600
    triggers: Dict[str, Trigger] = field(default_factory=_default_triggers)
    permblock: bool = True
    permblock_count: int = 4
    permblock_interval: int = 86400
    ssh_kill: bool = False
    ssh_ports: Tuple[int, ...] = (22,)
    dist_interval: int = 300
    dist_triggers: Dict[str, DistTrigger] = field(default_factory=_default_dist_triggers)
    syslog_check: int = 0

    # Classifier options
    apache_errport: int = 2
    ps_ports: str = ""
    tcp_in: str = "20,21,22,25,53,80,110,143,443,465,587,993,995"
    udp_in: str = "20,21,53"
    home_dirs: Tuple[str, ...] = ("/home",)
    home_match: str = ""

    # Logging
    log_file: Optional[str] = "/var/log/logwarden.log"

    # Cluster propagation over MQTT
    cluster_enabled: bool = False
    cluster_broker_host: str = "localhost"
    cluster_broker_port: int = 1883
    cluster_username: Optional[str] = None
    cluster_password: Optional[str] = None
    cluster_ca_cert: Optional[str] = None
    cluster_topic_prefix: str = "logwarden/cluster"

    # Administrative HTTP surface
    admin_host: str = "127.0.0.1"
    admin_port: int = 9000

    @property
    def enabled_services(self) -> frozenset:
        enabled = {service for service, trigger in self.triggers.items() if trigger.count > 0}
        enabled.update(service for service, dist in self.dist_triggers.items() if dist.count > 0)
        return frozenset(enabled)

    def with_overrides(self, **changes) -> "DaemonConfig":
        return replace(self, **changes)


def _as_bool(value: str) -> bool:
    return value.strip() not in ("", "0", "false", "False", "no")


def _as_int(key: str, value: str) -> int:
    try:
        return int(value.strip() or "0")
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got [{value}]")


def _as_list(value: str) -> Tuple[str, ...]:
    return tuple(part for part in re.split(r"[\s,]+", value.strip()) if part)


def _as_ports(value: str) -> Tuple[int, ...]:
    ports = _as_list(value)
    if not all(port.isdigit() for port in ports):
        raise ConfigError(f"PORTS_sshd must be a comma separated list of ports, got [{value}]")
    return tuple(int(port) for port in ports)


SIMPLE_KEYS = {
    "IPTABLES": ("iptables", str),
    "IP6TABLES": ("ip6tables", str),
    "IPTABLES_RESTORE": ("iptables_restore", str),
    "IP6TABLES_RESTORE": ("ip6tables_restore", str),
    "IPV6": ("ipv6", _as_bool),
    "WAITLOCK": ("wait_lock", _as_bool),
    "DROP": ("drop", str),
    "DROP_OUT": ("drop_out", str),
    "FASTSTART": ("faststart", _as_bool),
    "DENY_IP_LIMIT": ("deny_ip_limit", int),
    "DENY_TEMP_IP_LIMIT": ("deny_temp_ip_limit", int),
    "DENY_FILE": ("deny_file", str),
    "ALLOW_FILE": ("allow_file", str),
    "IGNORE_FILE": ("ignore_file", str),
    "TEMPBAN_FILE": ("tempban_file", str),
    "TEMPALLOW_FILE": ("tempallow_file", str),
    "RELAYHOSTS_FILE": ("relay_hosts_file", str),
    "OWN_IPS": ("own_addresses", _as_list),
    "BROADCAST_IPS": ("broadcast_addresses", _as_list),
    "LF_PARSE": ("poll_interval", float),
    "LOGFLOOD_LIMIT": ("log_flood_threshold", int),
    "LOGFLOOD_INTERVAL": ("log_flood_interval", int),
    "LF_INTERVAL": ("trigger_interval", int),
    "LF_PERMBLOCK": ("permblock", _as_bool),
    "LF_PERMBLOCK_COUNT": ("permblock_count", int),
    "LF_PERMBLOCK_INTERVAL": ("permblock_interval", int),
    "PT_SSHDKILL": ("ssh_kill", _as_bool),
    "PORTS_sshd": ("ssh_ports", _as_ports),
    "LF_DIST_INTERVAL": ("dist_interval", int),
    "SYSLOG_CHECK": ("syslog_check", int),
    "LF_APACHE_ERRPORT": ("apache_errport", int),
    "PS_PORTS": ("ps_ports", str),
    "TCP_IN": ("tcp_in", str),
    "UDP_IN": ("udp_in", str),
    "HOMEDIRS": ("home_dirs", _as_list),
    "HOMEMATCH": ("home_match", str),
    "LOGWARDEN_LOG": ("log_file", str),
    "CLUSTER_ENABLED": ("cluster_enabled", _as_bool),
    "CLUSTER_BROKER": ("cluster_broker_host", str),
    "CLUSTER_PORT": ("cluster_broker_port", int),
    "CLUSTER_USER": ("cluster_username", str),
    "CLUSTER_PASS": ("cluster_password", str),
    "CLUSTER_CA_CERT": ("cluster_ca_cert", str),
    "CLUSTER_TOPIC": ("cluster_topic_prefix", str),
    "ADMIN_HOST": ("admin_host", str),
    "ADMIN_PORT": ("admin_port", int),
}


def parse_config_lines(lines, source: str = "<config>") -> Dict[str, str]:
    """Parse ``KEY = "value"`` lines. Duplicate or malformed settings are fatal."""
    settings: Dict[str, str] = {}
    for number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        match = CONFIG_LINE.match(line)
        if not match:
            raise ConfigError(f"Invalid configuration line {number} [{line}] in {source}")
        key, value = match.groups()
        if key in settings:
            raise ConfigError(f"Setting {key} is repeated in {source}")
        settings[key] = value
    return settings


def config_from_settings(settings: Mapping[str, str], base: Optional[DaemonConfig] = None) -> DaemonConfig:
    """Overlay parsed settings on ``base`` (or the defaults) and validate."""
    base = base or DaemonConfig()
    changes = {}

    for key, (attribute, convert) in SIMPLE_KEYS.items():
        if key not in settings:
            continue
        value = settings[key]
        if convert is int:
            changes[attribute] = _as_int(key, value)
        elif convert is float:
            try:
                changes[attribute] = float(value)
            except ValueError:
                raise ConfigError(f"{key} must be a number, got [{value}]")
        else:
            changes[attribute] = convert(value)

    triggers = dict(base.triggers)
    for service, key in TRIGGER_KEYS.items():
        current = triggers.get(service, Trigger(0, base.trigger_interval))
        count, duration = current.count, current.duration
        if key in settings:
            count = _as_int(key, settings[key])
        perm_key = f"{key}_PERM"
        if perm_key in settings:
            perm = _as_int(perm_key, settings[perm_key])
            # 1 means permanent, larger values are a temporary block length
            duration = 0 if perm == 1 else (perm if perm > 1 else duration)
        triggers[service] = Trigger(count, duration)
    changes["triggers"] = triggers

    dist_triggers = dict(base.dist_triggers)
    for service, key in DIST_KEYS.items():
        current = dist_triggers.get(service, DistTrigger(0, 3, 3600))
        count, unique, duration = current.count, current.unique, current.duration
        if key in settings:
            count = _as_int(key, settings[key])
        if f"{key}_UNIQ" in settings:
            unique = _as_int(f"{key}_UNIQ", settings[f"{key}_UNIQ"])
        if f"{key}_PERM" in settings:
            perm = _as_int(f"{key}_PERM", settings[f"{key}_PERM"])
            duration = 0 if perm == 1 else (perm if perm > 1 else duration)
        dist_triggers[service] = DistTrigger(count, unique, duration)
    changes["dist_triggers"] = dist_triggers

    if any(key in settings for key in LOG_KEYS):
        paths = dict(DEFAULT_LOG_PATHS)
        paths.update({key: settings[key] for key in LOG_KEYS if key in settings})
        changes["log_sources"] = log_sources_from_paths(paths)

    config = replace(base, **changes)
    validate_config(config)
    return config


def validate_config(config: DaemonConfig):
    """Fail fast where enforcement cannot be inferred safely."""
    if not config.iptables:
        raise ConfigError("The path to iptables is not set (IPTABLES)")
    if config.faststart and not config.iptables_restore:
        raise ConfigError("FASTSTART requires IPTABLES_RESTORE to be set")
    if config.poll_interval <= 0:
        raise ConfigError("LF_PARSE must be greater than zero")
    if config.log_flood_threshold < 0 or config.log_flood_interval <= 0:
        raise ConfigError("LOGFLOOD_LIMIT must be >= 0 and LOGFLOOD_INTERVAL > 0")
    if config.rule_position < 1:
        raise ConfigError("Rule insert position must be 1 or greater")
    if config.dist_interval <= 0 or any(dist.unique < 1 for dist in config.dist_triggers.values()):
        raise ConfigError("LF_DIST_INTERVAL and the LF_DIST*_UNIQ settings must be greater than zero")
    if config.syslog_check < 0:
        raise ConfigError("SYSLOG_CHECK must not be negative")


def load_config(path: Optional[str] = None) -> DaemonConfig:
    """Load the configuration file, falling back to defaults when it is absent."""
    path = path or DEFAULT_CONFIG_PATH
    if not os.path.exists(path):
        config = DaemonConfig()
        validate_config(config)
        return config

    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        settings = parse_config_lines(handle, source=path)
    return config_from_settings(settings)
