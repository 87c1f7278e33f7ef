"""Remote command façade: domain intents run against one host session.

Methods take a ``HostTarget`` plus structured arguments and return typed
results.  Nothing here touches persistence; callers record the outcome.
"""

import asyncio
import logging
import os
import posixpath
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass

from mcfleet.core.config import Settings, settings
from mcfleet.core.exceptions import CommandFailed, InvalidRequest, NotFound
from mcfleet.core.filesystem import (
    MAX_TEXT_FILE_BYTES,
    ensure_text_file,
    relative_to_root,
    resolve_within,
    validate_upload,
)
from mcfleet.schemas.files import DirectoryListing, FileContent
from mcfleet.schemas.host import HostTarget, SystemInfo
from mcfleet.schemas.metrics import HostMetrics, ProcessMetrics
from mcfleet.schemas.server import ServerLogs
from mcfleet.services import commands
from mcfleet.services.commands import ServiceAction
from mcfleet.services.connection_pool import ConnectionPool
from mcfleet.services.ssh_service import CommandResult

logger = logging.getLogger(__name__)


@dataclass
class _CacheEntry:
    listing: DirectoryListing
    expires_at: float


class DirectoryCache:
    """Short-lived directory listings keyed by ``(host_id, resolved path)``.

    Entries leave on TTL expiry or explicit invalidation after a write.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[str, str], _CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, host_id: str, path: str) -> DirectoryListing | None:
        self.purge_expired()
        entry = self._entries.get((host_id, path))
        return entry.listing if entry else None

    def put(self, host_id: str, path: str, listing: DirectoryListing) -> None:
        self._entries[(host_id, path)] = _CacheEntry(listing, self._clock() + self.ttl)

    def invalidate(self, host_id: str, path: str | None = None) -> None:
        """Drop ``path`` for a host, or every entry of that host when ``path`` is None."""
        for key in list(self._entries):
            if key[0] == host_id and (path is None or key[1] == path):
                del self._entries[key]

    def purge_expired(self) -> None:
        now = self._clock()
        for key, entry in list(self._entries.items()):
            if entry.expires_at <= now:
                del self._entries[key]


class RemoteOperations:
    def __init__(
        self,
        pool: ConnectionPool,
        config: Settings = settings,
        directory_cache: DirectoryCache | None = None,
    ):
        self.pool = pool
        self.config = config
        self.directory_cache = directory_cache or DirectoryCache(config.DIRECTORY_CACHE_TTL)

    async def run(
        self,
        target: HostTarget,
        command: str,
        timeout: float | None = None,
        stdin: bytes | None = None,
    ) -> CommandResult:
        return await self.pool.execute(target, command, timeout, stdin)

    async def run_checked(
        self,
        target: HostTarget,
        command: str,
        what: str,
        timeout: float | None = None,
        stdin: bytes | None = None,
    ) -> str:
        """Run ``command`` and return stdout; a non-zero exit raises CommandFailed."""
        result = await self.pool.execute(target, command, timeout, stdin)
        if result.exit_code != 0:
            raise CommandFailed(
                f"Failed to {what}", exit_code=result.exit_code, stderr=result.stderr
            )
        return result.stdout

    # --- System probe -----------------------------------------------------

    async def system_probe(self, target: HostTarget) -> SystemInfo:
        """Total memory, CPU cores, disk size and OS label; any sub-probe failing fails all."""
        ram, cpu, disk, os_label = await asyncio.gather(
            self.run_checked(target, commands.PROBE_TOTAL_RAM, "read total memory"),
            self.run_checked(target, commands.PROBE_CPU_CORES, "read CPU core count"),
            self.run_checked(target, commands.PROBE_DISK_GB, "read disk size"),
            self.run_checked(target, commands.PROBE_OS_LABEL, "read OS release"),
        )
        return commands.parse_system_info(ram, cpu, disk, os_label)

    async def check_connection(self, target: HostTarget) -> None:
        stdout = await self.run_checked(target, 'echo "ok"', "run connection test")
        if stdout.strip() != "ok":
            raise CommandFailed(f"Unexpected SSH response: {stdout[:80]!r}")

    # --- Files ------------------------------------------------------------

    async def write_text(self, target: HostTarget, path: str, content: str, what: str) -> None:
        """Write ``content`` to an absolute remote path; the body travels on stdin."""
        await self.run_checked(
            target, commands.write_file_command(path), what, stdin=commands.encode_payload(content)
        )

    async def list_directory(
        self, target: HostTarget, root: str, requested: str | None = None
    ) -> DirectoryListing:
        path = resolve_within(root, requested)
        cached = self.directory_cache.get(target.host_id, path)
        if cached is not None:
            return cached

        result = await self.run(target, commands.list_directory_command(path))
        if result.exit_code != 0:
            raise NotFound(f"Directory not found: {relative_to_root(root, path) or '/'}")
        listing = commands.parse_listing(result.stdout)
        listing.current_path = relative_to_root(root, path)
        self.directory_cache.put(target.host_id, path, listing)
        return listing

    async def read_file(self, target: HostTarget, root: str, requested: str) -> FileContent:
        path = resolve_within(root, requested)
        ensure_text_file(path)
        result = await self.run(target, commands.read_file_command(path))
        if result.exit_code != 0:
            raise NotFound(f"File not found: {relative_to_root(root, path)}")
        return FileContent(
            path=relative_to_root(root, path),
            content=commands.decode_file_content(result.stdout),
        )

    async def write_file(self, target: HostTarget, root: str, requested: str, content: str) -> None:
        path = resolve_within(root, requested)
        ensure_text_file(path)
        if len(content.encode("utf-8")) > MAX_TEXT_FILE_BYTES:
            raise InvalidRequest(f"File content exceeds {MAX_TEXT_FILE_BYTES // 1024} KB")
        await self.write_text(target, path, content, "write file")
        self.directory_cache.invalidate(target.host_id, posixpath.dirname(path))

    async def upload_file(
        self,
        target: HostTarget,
        root: str,
        destination: str | None,
        filename: str,
        content: bytes,
    ) -> str:
        """Validate and upload ``content``; returns the path relative to ``root``."""
        directory = resolve_within(root, destination)
        name = validate_upload(
            filename, content, relative_to_root(root, directory), self.config.MAX_UPLOAD_BYTES
        )
        remote_path = posixpath.join(directory, name)

        fd, local_path = tempfile.mkstemp(prefix="mcfleet-upload-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
            await self.run_checked(target, commands.mkdir_command(directory), "create directory")
            await self.pool.upload(target, local_path, remote_path)
        finally:
            os.unlink(local_path)

        self.directory_cache.invalidate(target.host_id, directory)
        logger.info("Uploaded %s (%d bytes) to host %s", remote_path, len(content), target.host_id)
        return relative_to_root(root, remote_path)

    async def download_file(self, target: HostTarget, root: str, requested: str) -> bytes:
        path = resolve_within(root, requested)
        if path == posixpath.normpath(root):
            raise InvalidRequest("Cannot download a directory")
        fd, local_path = tempfile.mkstemp(prefix="mcfleet-download-")
        os.close(fd)
        try:
            await self.pool.download(target, path, local_path)
            with open(local_path, "rb") as fh:
                return fh.read()
        finally:
            os.unlink(local_path)

    # --- Service lifecycle ------------------------------------------------

    async def service(self, target: HostTarget, internal_name: str, action: ServiceAction) -> None:
        await self.run_checked(
            target,
            commands.service_command(action, internal_name),
            f"{action.value} service {commands.unit_name(internal_name)}",
        )

    async def is_active(self, target: HostTarget, internal_name: str) -> bool:
        result = await self.run(
            target, commands.is_active_command(internal_name), self.config.SSH_STATUS_TIMEOUT
        )
        return commands.parse_is_active(result.stdout)

    async def install_unit(self, target: HostTarget, internal_name: str, unit_text: str) -> None:
        await self.run_checked(
            target,
            commands.install_unit_command(internal_name),
            "install service unit",
            stdin=commands.encode_payload(unit_text),
        )
        await self.run_checked(target, commands.daemon_reload_command(), "reload systemd")

    async def remove_unit(self, target: HostTarget, internal_name: str) -> None:
        await self.run_checked(target, commands.remove_unit_command(internal_name), "remove service unit")
        await self.run_checked(target, commands.daemon_reload_command(), "reload systemd")

    # --- Metrics ----------------------------------------------------------

    async def process_metrics(
        self,
        target: HostTarget,
        internal_name: str,
        memory_allocated_mb: int,
        max_players: int,
        host_ram_mb: int | None = None,
        active_players: int = 0,
    ) -> ProcessMetrics:
        """Sample the server's java process; no matching process means not running."""
        result = await self.run(
            target, commands.process_stats_command(internal_name), self.config.SSH_STATUS_TIMEOUT
        )
        stats = commands.parse_process_stats(result.stdout)
        if stats is None:
            return ProcessMetrics(
                running=False,
                memory_allocated_mb=memory_allocated_mb,
                max_players=max_players,
            )
        cpu, mem_pct, uptime = stats
        used_mb = round(mem_pct / 100 * host_ram_mb) if host_ram_mb else 0
        return ProcessMetrics(
            running=True,
            cpu_percent=cpu,
            memory_percent=mem_pct,
            memory_used_mb=used_mb,
            memory_allocated_mb=memory_allocated_mb,
            memory_usage_percent=round(used_mb / memory_allocated_mb * 100) if memory_allocated_mb else 0,
            uptime_seconds=uptime,
            active_players=active_players,
            max_players=max_players,
        )

    async def host_metrics(self, target: HostTarget) -> HostMetrics:
        cpu, memory, disk, uptime, load = await asyncio.gather(
            self.run(target, commands.HOST_CPU_COMMAND),
            self.run(target, commands.HOST_MEMORY_COMMAND),
            self.run(target, commands.HOST_DISK_COMMAND),
            self.run(target, commands.HOST_UPTIME_COMMAND),
            self.run(target, commands.HOST_LOAD_COMMAND),
        )
        return commands.parse_host_metrics(
            cpu.stdout, memory.stdout, disk.stdout, uptime.stdout, load.stdout
        )

    # --- Logs -------------------------------------------------------------

    async def server_logs(self, target: HostTarget, internal_name: str, server_path: str) -> ServerLogs:
        latest = posixpath.join(server_path, "logs", "latest.log")
        status, journal, listing, game = await asyncio.gather(
            self.run(target, commands.service_status_command(internal_name)),
            self.run(target, commands.journal_command(internal_name, 50)),
            self.run(target, commands.list_tree_command(server_path)),
            self.run(target, commands.tail_command(latest, 50, "Server logs not available yet")),
        )
        return ServerLogs(
            supervisor_status=status.stdout,
            supervisor_logs=journal.stdout,
            directory_listing=listing.stdout,
            server_logs=game.stdout,
        )

    async def console_tail(self, target: HostTarget, server_path: str, lines: int = 100) -> list[str]:
        lines = max(1, min(lines, 1000))
        latest = posixpath.join(server_path, "logs", "latest.log")
        result = await self.run(target, commands.tail_command(latest, lines, ""))
        return [line for line in result.stdout.splitlines() if line]
