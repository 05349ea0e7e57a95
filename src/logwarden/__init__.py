"""LogWarden: log-driven intrusion prevention for iptables hosts."""

__version__ = "1.0.0"
