"""Pooled SSH sessions, one per remote host id.

Per host id the entry moves ``absent -> connecting -> ready -> (stale|error)
-> absent``.  Establishment is serialised per host id with an ``asyncio.Lock``;
different host ids never wait on each other.  Blocking paramiko calls run in
worker threads so the event loop keeps serving unrelated requests.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import paramiko

from mcfleet.core.exceptions import CommandFailed, CommandTimeout, ConnectionFailed, NotFound
from mcfleet.schemas.host import HostTarget, SSHCredentials
from mcfleet.services.ssh_service import CommandResult, SSHService, friendly_ssh_error

logger = logging.getLogger(__name__)

SessionFactory = Callable[[SSHCredentials, float], SSHService]


@dataclass
class PooledConnection:
    host_id: str
    session: SSHService
    credentials_fingerprint: str
    last_used: float = field(default_factory=time.monotonic)


class ConnectionPool:
    def __init__(
        self,
        *,
        connect_timeout: float = 15.0,
        idle_timeout: float = 300.0,
        health_check_timeout: float = 5.0,
        command_timeout: float = 30.0,
        session_factory: SessionFactory = SSHService,
    ):
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.health_check_timeout = health_check_timeout
        self.command_timeout = command_timeout
        self._session_factory = session_factory
        self._entries: dict[str, PooledConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _host_lock(self, host_id: str) -> AsyncIterator[None]:
        """Hold the per-host lock; it is dropped once unused and no session remains."""
        # No await between lookup and insert, so this is atomic on the loop.
        lock = self._locks.get(host_id)
        if lock is None:
            lock = self._locks[host_id] = asyncio.Lock()
        self._lock_users[host_id] = self._lock_users.get(host_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[host_id] -= 1
            if self._lock_users[host_id] == 0:
                del self._lock_users[host_id]
                if host_id not in self._entries:
                    del self._locks[host_id]

    def has_session(self, host_id: str) -> bool:
        return host_id in self._entries

    async def acquire(self, host_id: str, credentials: SSHCredentials) -> SSHService:
        """Return a live session for ``host_id``, connecting if needed."""
        fingerprint = credentials.fingerprint()
        async with self._host_lock(host_id):
            entry = self._entries.get(host_id)
            now = time.monotonic()
            if entry is not None:
                fresh = now - entry.last_used < self.idle_timeout
                same_credentials = entry.credentials_fingerprint == fingerprint
                if fresh and same_credentials and await self._is_alive(entry.session):
                    entry.last_used = now
                    logger.debug("Reusing connection for host %s", host_id)
                    return entry.session
                logger.debug("Evicting stale connection for host %s", host_id)
                await self._evict(host_id)

            logger.debug("Creating new connection for host %s", host_id)
            session = self._session_factory(credentials, self.connect_timeout)
            try:
                await asyncio.to_thread(session.connect)
            except Exception as e:
                logger.error("SSH connection to host %s failed: %s", host_id, e)
                raise ConnectionFailed(friendly_ssh_error(e)) from e
            self._entries[host_id] = PooledConnection(host_id, session, fingerprint)
            return session

    async def _is_alive(self, session: SSHService) -> bool:
        if not session.is_active:
            return False
        try:
            result = await asyncio.to_thread(
                session.execute, 'echo "ping"', self.health_check_timeout
            )
        except Exception as e:
            logger.debug("Liveness probe failed: %s", e)
            return False
        return result.exit_code == 0

    async def _evict(self, host_id: str) -> None:
        entry = self._entries.pop(host_id, None)
        if entry is not None:
            await asyncio.to_thread(entry.session.close)

    async def close(self, host_id: str) -> None:
        """Forcibly terminate and evict the session for ``host_id``; idempotent."""
        async with self._host_lock(host_id):
            await self._evict(host_id)
        logger.debug("Closed connection for host %s", host_id)

    async def close_all(self) -> None:
        logger.info("Closing all SSH connections...")
        for host_id in list(self._entries):
            await self.close(host_id)

    async def run_command(
        self,
        session: SSHService,
        command: str,
        timeout: float | None = None,
        stdin: bytes | None = None,
    ) -> CommandResult:
        """Run one command line on an established session."""
        timeout = timeout or self.command_timeout
        try:
            return await asyncio.to_thread(session.execute, command, timeout, stdin)
        except CommandTimeout:
            logger.warning("Command timed out after %ss: %s", timeout, command[:120])
            raise
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise ConnectionFailed(friendly_ssh_error(e)) from e

    async def execute(
        self,
        target: HostTarget,
        command: str,
        timeout: float | None = None,
        stdin: bytes | None = None,
    ) -> CommandResult:
        """Acquire the host's session and run one command on it."""
        session = await self.acquire(target.host_id, target.credentials)
        result = await self.run_command(session, command, timeout, stdin)
        entry = self._entries.get(target.host_id)
        if entry is not None and entry.session is session:
            entry.last_used = time.monotonic()
        return result

    async def upload(self, target: HostTarget, local_path: str, remote_path: str) -> None:
        session = await self.acquire(target.host_id, target.credentials)
        await self._transfer(session.upload_file, local_path, remote_path)

    async def download(self, target: HostTarget, remote_path: str, local_path: str) -> None:
        session = await self.acquire(target.host_id, target.credentials)
        await self._transfer(session.download_file, remote_path, local_path)

    async def _transfer(self, fn, src: str, dst: str) -> None:
        try:
            await asyncio.to_thread(fn, src, dst)
        except FileNotFoundError as e:
            raise NotFound(f"Remote file not found: {src}") from e
        except PermissionError as e:
            raise CommandFailed("Permission denied", stderr=str(e)) from e
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise ConnectionFailed(friendly_ssh_error(e)) from e

