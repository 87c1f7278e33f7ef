"""Typed failures reported by the remote execution core.

Every failure a caller can recover from is a subclass of ``McFleetError`` with
a user-facing ``message`` and a stable ``kind``.  Internal detail (tracebacks,
raw stderr beyond what the message carries) stays in the server-side log.
"""

import logging
import traceback

logger = logging.getLogger(__name__)


class McFleetError(Exception):
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(McFleetError):
    """Startup-fatal: missing connection string or weak/missing master secret."""

    kind = "configuration_error"


class ConnectionFailed(McFleetError):
    """Authentication, network reachability or host identity problem."""

    kind = "connection_failed"


class CommandTimeout(McFleetError):
    kind = "command_timeout"

    def __init__(self, command: str, timeout: float):
        super().__init__(f"Command timed out after {timeout:g} seconds")
        self.command = command
        self.timeout = timeout


class CommandFailed(McFleetError):
    kind = "command_failed"

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = ""):
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class PathTraversalRejected(McFleetError):
    kind = "path_traversal_rejected"

    def __init__(self, requested: str):
        super().__init__("Access denied: cannot navigate outside the server directory")
        self.requested = requested


class QuotaExceeded(McFleetError):
    kind = "quota_exceeded"


class PortsExhausted(McFleetError):
    kind = "ports_exhausted"


class DownloadFailed(McFleetError):
    kind = "download_failed"


class DecryptionFailed(McFleetError):
    kind = "decryption_failed"


class NotFound(McFleetError):
    kind = "not_found"


class InvalidRequest(McFleetError):
    kind = "invalid_request"


class Conflict(McFleetError):
    kind = "conflict"


def error_payload(exc: BaseException) -> dict:
    """Convert any exception into the message-only shape shown to users."""
    if isinstance(exc, McFleetError):
        return {"detail": exc.message, "kind": exc.kind}
    # Catch-all: log full traceback, never leak it.
    logger.error(
        "Unhandled exception: %s\n%s",
        exc,
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    )
    return {"detail": "Internal server error", "kind": "internal_error"}


def describe_error(exc: BaseException) -> str:
    """Short message suitable for a persisted ``last_error`` field."""
    if isinstance(exc, McFleetError):
        return exc.message
    return str(exc) or exc.__class__.__name__
