"""Periodic reconciliation of recorded server status with the supervisor.

The supervisor on the host is the source of truth; each tick probes every
server not in ``error`` and moves the record towards what it reports.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime

from mcfleet.core.config import Settings, settings
from mcfleet.core.encryption import CredentialVault
from mcfleet.core.exceptions import ConnectionFailed, NotFound, describe_error
from mcfleet.models.base import utcnow
from mcfleet.models.managed_server import ManagedServer
from mcfleet.schemas.host import HostStatus, HostTarget
from mcfleet.schemas.server import ServerStatus
from mcfleet.services.host_service import host_target
from mcfleet.services.remote_ops import RemoteOperations
from mcfleet.services.store import ServerStore

logger = logging.getLogger(__name__)


def reconcile_status(
    recorded: str, active: bool, now: datetime, *, manual: bool = False
) -> dict | None:
    """Field changes implied by a probe result, or None when nothing changes.

    ``starting`` with an inactive probe and ``stopping`` with an active one are
    left alone while they converge. A manual refresh that finds the service
    active also settles ``stopping`` and ``error`` as ``running``.
    """
    status = ServerStatus(recorded)
    if active:
        if status in (ServerStatus.STOPPED, ServerStatus.STARTING):
            return {"status": ServerStatus.RUNNING, "last_started_at": now}
        if status is ServerStatus.ERROR and manual:
            return {"status": ServerStatus.RUNNING, "last_started_at": now, "last_error": None}
        if status is ServerStatus.STOPPING and manual:
            return {"status": ServerStatus.RUNNING, "last_error": None}
        return None
    if status in (ServerStatus.STOPPING, ServerStatus.RUNNING):
        return {"status": ServerStatus.STOPPED, "last_stopped_at": now, "current_players": None}
    return None


class ReconciliationLoop:
    def __init__(
        self,
        store: ServerStore,
        remote: RemoteOperations,
        vault: CredentialVault,
        config: Settings = settings,
    ):
        self.store = store
        self.remote = remote
        self.vault = vault
        self.interval = config.RECONCILE_INTERVAL_SECONDS
        self._task: asyncio.Task | None = None

    async def check_server(
        self, server: ManagedServer, target: HostTarget, *, manual: bool = False
    ) -> bool:
        """Probe one server and apply the transition; True if the record changed."""
        active = await self.remote.is_active(target, server.internal_name)
        changes = reconcile_status(server.status, active, utcnow(), manual=manual)
        if changes is None:
            return False
        new_status = changes.pop("status")
        changed = await self.store.transition_status(server.id, [server.status], new_status, **changes)
        if changed:
            logger.info(
                "Server %s (%s) status changed: %s -> %s",
                server.name, server.id, server.status, new_status,
            )
        return changed

    async def refresh(self, server_id: int) -> ManagedServer:
        """Run one check for a single server right now."""
        server = await self.store.get_server(server_id)
        if server is None:
            raise NotFound("Server not found")
        host = await self.store.get_host(server.host_id)
        if host is None:
            raise NotFound("Host not found")
        await self.check_server(server, host_target(host, self.vault), manual=True)
        return await self.store.get_server(server_id)

    async def _check_isolated(self, server: ManagedServer, target: HostTarget) -> bool:
        try:
            return await self.check_server(server, target)
        except ConnectionFailed:
            raise
        except Exception as e:
            logger.error("Failed to check server %s status: %s", server.id, e)
            return False

    async def _check_host(self, host_id: int, servers: list[ManagedServer]) -> int:
        host = await self.store.get_host(host_id)
        if host is None or host.status != HostStatus.CONNECTED:
            logger.warning("Skipping %d server(s) on host %s - host not connected", len(servers), host_id)
            return 0
        try:
            target = host_target(host, self.vault)
        except Exception as e:
            logger.error("Cannot build connection for host %s: %s", host_id, e)
            return 0

        results = await asyncio.gather(
            *(self._check_isolated(s, target) for s in servers), return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.error("Host %s unreachable during reconciliation: %s", host_id, failures[0])
            await self.store.update_host(
                host_id,
                status=HostStatus.ERROR.value,
                last_error=describe_error(failures[0]),
                last_check_at=utcnow(),
            )
        return sum(1 for r in results if r is True)

    async def tick(self) -> int:
        """One sweep over every server not in ``error``; returns the number of transitions."""
        servers = await self.store.list_servers_to_reconcile()
        logger.info("Monitoring %d servers", len(servers))
        by_host: dict[int, list[ManagedServer]] = defaultdict(list)
        for server in servers:
            by_host[server.host_id].append(server)

        results = await asyncio.gather(
            *(self._check_host(host_id, group) for host_id, group in by_host.items()),
            return_exceptions=True,
        )
        changed = 0
        for host_id, result in zip(by_host, results):
            if isinstance(result, BaseException):
                logger.error("Reconciliation of host %s failed: %s", host_id, result)
            else:
                changed += result
        logger.info("Server monitoring completed, %d transition(s)", changed)
        return changed

    async def run_forever(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error("Server monitoring failed: %s", e)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="reconciliation-loop")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
