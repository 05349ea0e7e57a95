"""
LogWarden Logging Utilities

Structured logging for the daemon. Console output uses a plain readable
format, the optional log file receives one JSON object per line so blocks,
alerts and floods can be parsed by log analysis tools.
"""

import logging
import json
import sys
import syslog
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional

ROOT_LOGGER = "logwarden"


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    Outputs one JSON document per record.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Structured fields passed as keyword arguments
        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)

        return json.dumps(log_data, default=str)


def configure_logging(log_file: Optional[str] = None, console: bool = True, level: int = logging.INFO):
    """
    Attach handlers to the package root logger.

    Args:
        log_file: Path to JSON log file (None for no file logging)
        console: Whether to log to stdout
        level: Minimum level for the console handler
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    return root


class SecurityLogger:
    """
    Security-focused logger.

    Keyword arguments given to the level methods are attached to the record
    as structured fields.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")

    def _log_with_extra(self, level: int, message: str, extra_data: Optional[Dict[str, Any]] = None,
                        exc_info: bool = False):
        try:
            if extra_data:
                self.logger.log(level, message, extra={"extra_data": extra_data}, exc_info=exc_info)
            else:
                self.logger.log(level, message, exc_info=exc_info)
        except OSError:
            pass

    def info(self, message: str, **kwargs):
        """Log informational message."""
        self._log_with_extra(logging.INFO, message, kwargs or None)

    def warning(self, message: str, **kwargs):
        """Log warning message."""
        self._log_with_extra(logging.WARNING, message, kwargs or None)

    def error(self, message: str, **kwargs):
        self._log_with_extra(logging.ERROR, message, kwargs or None)

    def exception(self, message: str, **kwargs):
        """Log error message with the active traceback."""
        self._log_with_extra(logging.ERROR, message, kwargs or None, exc_info=True)

    def critical(self, message: str, **kwargs):
        self._log_with_extra(logging.CRITICAL, message, kwargs or None)

    def debug(self, message: str, **kwargs):
        self._log_with_extra(logging.DEBUG, message, kwargs or None)

    def security_event(self, event_type: str, severity: str, details: Dict[str, Any]):
        """
        Log a security event with structured data.

        Args:
            event_type: Type of event (e.g., "IP_BLOCKED", "LOG_FLOOD")
            severity: Severity level ("INFO", "WARN", "CRITICAL")
            details: Dictionary with event details
        """
        log_data = {
            "event_type": event_type,
            "severity": severity,
            **details
        }

        message = f"Security Event: {event_type}"

        if severity == "CRITICAL":
            self._log_with_extra(logging.CRITICAL, message, log_data)
        elif severity == "WARN":
            self._log_with_extra(logging.WARNING, message, log_data)
        else:
            self._log_with_extra(logging.INFO, message, log_data)


def get_logger(name: str) -> SecurityLogger:
    """
    Factory function to create a SecurityLogger for a component.

    Args:
        name: Component name, nested under the package root logger

    Returns:
        SecurityLogger instance
    """
    return SecurityLogger(name)


def write_syslog(message: str):
    """Send one notice through the local syslog daemon as ``logwarden[pid]``."""
    syslog.openlog("logwarden", syslog.LOG_PID, syslog.LOG_DAEMON)
    syslog.syslog(syslog.LOG_NOTICE, message)
