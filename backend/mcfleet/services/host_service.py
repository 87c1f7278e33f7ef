import base64
import binascii
import logging

from mcfleet.core.encryption import CredentialVault
from mcfleet.core.exceptions import Conflict, NotFound, describe_error
from mcfleet.models.base import utcnow
from mcfleet.models.remote_host import RemoteHost
from mcfleet.schemas.host import HostCreate, HostStatus, HostTarget, HostUpdate, SSHCredentials
from mcfleet.services.connection_pool import ConnectionPool
from mcfleet.services.remote_ops import RemoteOperations
from mcfleet.services.store import ServerStore
from mcfleet.workers.tasks import BackgroundTasks
from mcfleet.workers.utils import TaskLogger, new_task_id

logger = logging.getLogger(__name__)


def decode_private_key(value: str) -> str:
    """Accept a PEM key as-is, or the base64 encoding of one."""
    if "BEGIN" in value:
        return value
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return value
    return decoded if "BEGIN" in decoded else value


def host_target(host: RemoteHost, vault: CredentialVault) -> HostTarget:
    """Decrypt the stored credentials of ``host`` into a ``HostTarget``."""
    credentials = SSHCredentials(
        host=host.address,
        port=host.ssh_port,
        username=host.ssh_user,
        private_key=vault.decrypt(host.ssh_key_encrypted) if host.ssh_key_encrypted else None,
        password=vault.decrypt(host.ssh_password_encrypted) if host.ssh_password_encrypted else None,
    )
    return HostTarget(host_id=str(host.id), credentials=credentials)


class HostService:
    """Registration and health of the one remote host each account owns."""

    def __init__(
        self,
        store: ServerStore,
        pool: ConnectionPool,
        remote: RemoteOperations,
        vault: CredentialVault,
        tasks: BackgroundTasks,
    ):
        self.store = store
        self.pool = pool
        self.remote = remote
        self.vault = vault
        self.tasks = tasks

    async def get_host(self, account_id: int) -> RemoteHost:
        host = await self.store.get_host_for_account(account_id)
        if host is None:
            raise NotFound("Host not found")
        return host

    async def register_host(self, account_id: int, data: HostCreate) -> RemoteHost:
        if await self.store.get_host_for_account(account_id) is not None:
            raise Conflict("Account already has a remote host. Delete the existing one first.")

        host = RemoteHost(
            account_id=account_id,
            name=data.name,
            address=data.address,
            ssh_port=data.ssh_port,
            ssh_user=data.ssh_user,
            ssh_key_encrypted=(
                self.vault.encrypt(decode_private_key(data.ssh_key)) if data.ssh_key else None
            ),
            ssh_password_encrypted=(
                self.vault.encrypt(data.ssh_password) if data.ssh_password else None
            ),
            status=HostStatus.PENDING.value,
        )
        host = await self.store.add_host(host)
        logger.info("Host %s registered for account %s", host.id, account_id)
        self.tasks.spawn(f"host-check-{host.id}", self.check_host(host.id))
        return host

    async def update_host(self, account_id: int, data: HostUpdate) -> RemoteHost:
        host = await self.get_host(account_id)
        fields = data.model_dump(exclude_unset=True, exclude_none=True)
        changes: dict = {}
        for key in ("name", "address", "ssh_port", "ssh_user"):
            if key in fields:
                changes[key] = fields[key]
        if "ssh_key" in fields:
            changes["ssh_key_encrypted"] = self.vault.encrypt(decode_private_key(fields["ssh_key"]))
        if "ssh_password" in fields:
            changes["ssh_password_encrypted"] = self.vault.encrypt(fields["ssh_password"])
        if not changes:
            return host
        if changes.keys() == {"name"}:
            await self.store.update_host(host.id, **changes)
            return await self.get_host(account_id)

        changes["status"] = HostStatus.PENDING.value
        await self.store.update_host(host.id, **changes)
        # Cached sessions and listings belong to the old connection details
        await self.pool.close(str(host.id))
        self.remote.directory_cache.invalidate(str(host.id))
        self.tasks.spawn(f"host-check-{host.id}", self.check_host(host.id))
        return await self.get_host(account_id)

    async def recheck_host(self, account_id: int) -> RemoteHost:
        host = await self.get_host(account_id)
        await self.check_host(host.id)
        return await self.get_host(account_id)

    async def check_host(self, host_id: int) -> None:
        """Connection test plus system probe; the outcome is always written back."""
        tlog = TaskLogger(new_task_id(), host_id=host_id)
        host = await self.store.get_host(host_id)
        if host is None:
            tlog.warning("Host no longer exists, skipping check")
            return
        try:
            target = host_target(host, self.vault)
            await self.remote.check_connection(target)
            info = await self.remote.system_probe(target)
        except Exception as e:
            tlog.error("Host check failed: %s", e)
            await self.store.update_host(
                host_id,
                status=HostStatus.ERROR.value,
                last_error=describe_error(e),
                last_check_at=utcnow(),
            )
            return

        await self.store.update_host(
            host_id,
            status=HostStatus.CONNECTED.value,
            total_ram_mb=info.total_ram_mb,
            cpu_cores=info.cpu_cores,
            disk_gb=info.disk_gb,
            os_label=info.os_label[:100],
            last_error=None,
            last_check_at=utcnow(),
        )
        tlog.info("Host connected (%d MB RAM, %d cores)", info.total_ram_mb, info.cpu_cores)

    async def remove_host(self, account_id: int) -> None:
        host = await self.get_host(account_id)
        count = await self.store.count_servers_on_host(host.id)
        if count > 0:
            raise Conflict(f"Cannot delete host with {count} server(s). Delete all servers first.")
        await self.pool.close(str(host.id))
        self.remote.directory_cache.invalidate(str(host.id))
        await self.store.delete_host(host.id)
        logger.info("Host %s deleted for account %s", host.id, account_id)
