"""Structured logging configuration for mcfleet."""

import logging
import re
import sys
from datetime import UTC, datetime

# key=value secrets that can appear in rendered server.properties text or
# in error messages that echo a failed command line
_SECRET_ASSIGNMENT = re.compile(r"\b((?:rcon\.password|password|encryption_key)=)[^\s'\"]+", re.IGNORECASE)


def redact_secrets(text: str) -> str:
    return _SECRET_ASSIGNMENT.sub(r"\1***", text)


class McFleetFormatter(logging.Formatter):
    """Structured formatter with timestamp, level, module, and message.

    Secret assignments are masked in the message and in tracebacks.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        level = record.levelname.ljust(8)
        module = record.name
        message = redact_secrets(record.getMessage())

        base = f"{timestamp} | {level} | {module} | {message}"

        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + redact_secrets(self.formatException(record.exc_info))

        return base


def setup_logging(log_level: str = "INFO") -> None:
    """Configure process-wide logging."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates on reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(McFleetFormatter())
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger("mcfleet").setLevel(level)
