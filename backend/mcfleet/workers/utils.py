"""Shared utilities for background jobs."""

import logging
import uuid


def new_task_id() -> str:
    return uuid.uuid4().hex


class TaskLogger:
    """Context-aware logger for background jobs.

    Prefixes all log messages with [task_id] and optional resource identifiers
    for easy correlation in logs.

    Usage:
        tlog = TaskLogger(task_id="abc123", server_id=5)
        tlog.info("Starting provisioning")
        tlog.error("Provisioning failed: %s", err)
    """

    def __init__(
        self,
        task_id: str,
        *,
        server_id: int | None = None,
        host_id: int | str | None = None,
    ):
        self.task_id = task_id
        self._logger = logging.getLogger("mcfleet.workers")

        parts = [f"task={task_id[:12]}"]
        if server_id is not None:
            parts.append(f"server={server_id}")
        if host_id is not None:
            parts.append(f"host={host_id}")
        self._prefix = "[" + " ".join(parts) + "]"

    def info(self, msg: str, *args) -> None:
        self._logger.info(f"{self._prefix} {msg}", *args)

    def warning(self, msg: str, *args) -> None:
        self._logger.warning(f"{self._prefix} {msg}", *args)

    def error(self, msg: str, *args) -> None:
        self._logger.error(f"{self._prefix} {msg}", *args)

    def debug(self, msg: str, *args) -> None:
        self._logger.debug(f"{self._prefix} {msg}", *args)
