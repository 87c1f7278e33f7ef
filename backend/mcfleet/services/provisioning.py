"""Server lifecycle: create, start, stop, update, delete, and inspection.

Requests return as soon as the record reflects the user's intent; remote work
runs as background jobs that always finish by writing a status or a
``last_error`` back to the record.
"""

import asyncio
import logging
import posixpath
from collections.abc import Awaitable, Callable
from typing import assert_never

from mcfleet.core.config import Settings, settings
from mcfleet.core.encryption import CredentialVault, generate_secret
from mcfleet.core.exceptions import (
    CommandFailed,
    Conflict,
    DownloadFailed,
    InvalidRequest,
    NotFound,
    describe_error,
)
from mcfleet.core.filesystem import resolve_within
from mcfleet.models.base import utcnow
from mcfleet.models.managed_server import ManagedServer
from mcfleet.models.remote_host import RemoteHost
from mcfleet.schemas.files import DirectoryListing, FileContent
from mcfleet.schemas.host import HostStatus, HostTarget
from mcfleet.schemas.metrics import HostMetrics, ProcessMetrics
from mcfleet.schemas.plan import AccountLimits
from mcfleet.schemas.server import ServerCreate, ServerLogs, ServerStatus, ServerUpdate, ServerVariant
from mcfleet.services import commands
from mcfleet.services.commands import ServiceAction
from mcfleet.services.host_service import host_target
from mcfleet.services.plan_limits import PlanLimiter
from mcfleet.services.port_allocation import PortAllocator, PortPair
from mcfleet.services.reconciler import ReconciliationLoop
from mcfleet.services.remote_ops import RemoteOperations
from mcfleet.services.server_files import (
    generate_internal_name,
    minecraft_root,
    render_server_properties,
    render_unit,
    server_path,
)
from mcfleet.services.store import ServerStore
from mcfleet.services.variants import (
    SERVER_JAR,
    AcquisitionStrategy,
    DirectDownload,
    InstallerRun,
    LaunchMode,
    ManifestLookup,
    ManifestResolver,
    acquisition_strategy,
)
from mcfleet.workers.tasks import BackgroundTasks
from mcfleet.workers.utils import TaskLogger, new_task_id

logger = logging.getLogger(__name__)

# Attempts at inserting a record when automatically allocated ports collide
_ALLOCATION_ATTEMPTS = 3


class ProvisioningWorkflow:
    def __init__(
        self,
        store: ServerStore,
        remote: RemoteOperations,
        vault: CredentialVault,
        tasks: BackgroundTasks,
        *,
        ports: PortAllocator,
        plans: PlanLimiter,
        manifest: ManifestResolver,
        reconciler: ReconciliationLoop,
        config: Settings = settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.remote = remote
        self.vault = vault
        self.tasks = tasks
        self.ports = ports
        self.plans = plans
        self.manifest = manifest
        self.reconciler = reconciler
        self.config = config
        self._sleep = sleep

    # --- Lookups ----------------------------------------------------------

    async def get_server(self, account_id: int, server_id: int) -> ManagedServer:
        server = await self.store.get_server(server_id)
        if server is None or server.account_id != account_id:
            raise NotFound("Server not found")
        return server

    async def list_servers(self, account_id: int) -> list[ManagedServer]:
        return await self.store.list_servers(account_id)

    async def _host_of(self, server: ManagedServer) -> RemoteHost:
        host = await self.store.get_host(server.host_id)
        if host is None:
            raise NotFound("Host not found")
        return host

    async def _target_of(self, server: ManagedServer) -> tuple[RemoteHost, HostTarget]:
        host = await self._host_of(server)
        return host, host_target(host, self.vault)

    async def _connected_host(self, account_id: int) -> RemoteHost:
        host = await self.store.get_host_for_account(account_id)
        if host is None:
            raise InvalidRequest("You must add a remote host before creating servers")
        if host.status != HostStatus.CONNECTED:
            raise InvalidRequest(
                "Your remote host is not connected. Please check the connection first."
            )
        return host

    # --- Create -----------------------------------------------------------

    async def create_server(self, account_id: int, data: ServerCreate) -> ManagedServer:
        await self.plans.check_can_create(account_id)
        host = await self._connected_host(account_id)
        # Unsupported variant/version pairs are rejected before anything is stored
        strategy = acquisition_strategy(data.variant, data.version)

        console_secret = generate_secret(16)
        for attempt in range(1, _ALLOCATION_ATTEMPTS + 1):
            pair = await self._ports_for(host.id, data)
            internal_name = generate_internal_name(data.name)
            record = ManagedServer(
                account_id=account_id,
                host_id=host.id,
                name=data.name,
                internal_name=internal_name,
                description=data.description,
                variant=data.variant.value,
                version=data.version,
                memory_mb=data.memory_mb,
                max_players=data.max_players,
                game_port=pair.game_port,
                console_port=pair.console_port,
                console_secret_encrypted=self.vault.encrypt(console_secret),
                server_path=server_path(host.ssh_user, internal_name, self.config.MINECRAFT_ROOT_TEMPLATE),
                status=ServerStatus.STOPPED.value,
            )
            try:
                server = await self.store.add_server(record)
                break
            except Conflict:
                if data.game_port is not None or attempt == _ALLOCATION_ATTEMPTS:
                    raise
                logger.warning("Port allocation raced on host %s, retrying", host.id)

        logger.info("Server %s created for account %s", server.id, account_id)
        self.tasks.spawn(
            f"provision-{server.id}", self._provision(server, host, console_secret, strategy)
        )
        return server

    async def _ports_for(self, host_id: int, data: ServerCreate) -> PortPair:
        if data.game_port is not None and data.console_port is not None:
            return await self.ports.reserve(host_id, data.game_port, data.console_port)
        return await self.ports.allocate(host_id)

    async def _provision(
        self,
        server: ManagedServer,
        host: RemoteHost,
        console_secret: str,
        strategy: AcquisitionStrategy,
    ) -> None:
        tlog = TaskLogger(new_task_id(), server_id=server.id, host_id=host.id)
        try:
            target = host_target(host, self.vault)
            await self._install(target, server, host.ssh_user, console_secret, strategy, tlog)
        except Exception as e:
            tlog.error("Failed to set up server on remote: %s", e)
            await self.store.update_server(
                server.id, status=ServerStatus.ERROR.value, last_error=describe_error(e)
            )
            return
        tlog.info("Server setup completed on remote host")

    async def _install(
        self,
        target: HostTarget,
        server: ManagedServer,
        ssh_user: str,
        console_secret: str,
        strategy: AcquisitionStrategy,
        tlog: TaskLogger,
    ) -> None:
        path = server.server_path
        long_timeout = self.config.SSH_LONG_COMMAND_TIMEOUT

        await self.remote.run_checked(target, commands.mkdir_command(path), "create server directory")
        tlog.info("Created directory %s", path)

        match strategy:
            case DirectDownload(url=url):
                await self._download(target, path, url, SERVER_JAR, long_timeout, tlog)
                launch_mode = LaunchMode.JAR
            case ManifestLookup():
                url = await self.manifest.resolve(strategy)
                await self._download(target, path, url, SERVER_JAR, long_timeout, tlog)
                launch_mode = LaunchMode.JAR
            case InstallerRun():
                launch_mode = await self._run_installer(target, path, strategy, long_timeout, tlog)
            case _:
                assert_never(strategy)

        executable = posixpath.join(path, SERVER_JAR) if launch_mode is LaunchMode.JAR else None
        await self.remote.run_checked(
            target,
            commands.set_ownership_command(path, ssh_user, executable),
            "set permissions",
        )
        await self.remote.write_text(target, posixpath.join(path, "eula.txt"), commands.eula_text(), "accept EULA")
        await self._write_properties(target, server, console_secret)
        await self.remote.install_unit(
            target, server.internal_name, self._unit_for(server, ssh_user, launch_mode)
        )
        tlog.info("Installed service %s", commands.unit_name(server.internal_name))

    async def _download(
        self,
        target: HostTarget,
        directory: str,
        url: str,
        filename: str,
        timeout: float,
        tlog: TaskLogger,
    ) -> None:
        tlog.info("Downloading %s", url)
        try:
            await self.remote.run_checked(
                target, commands.download_command(url, directory, filename), "download", timeout
            )
        except CommandFailed as e:
            raise DownloadFailed(f"Download of {filename} failed: {e.message}") from e
        await self._verify_not_empty(target, posixpath.join(directory, filename))

    async def _verify_not_empty(self, target: HostTarget, file_path: str) -> None:
        name = posixpath.basename(file_path)
        result = await self.remote.run(target, commands.file_size_command(file_path))
        size = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        if result.exit_code != 0 or not size.isdigit():
            raise DownloadFailed(f"{name} is missing after download")
        if int(size) == 0:
            raise DownloadFailed(f"Downloaded {name} is empty (0 bytes). Download may have failed.")

    async def _run_installer(
        self,
        target: HostTarget,
        path: str,
        strategy: InstallerRun,
        timeout: float,
        tlog: TaskLogger,
    ) -> LaunchMode:
        await self._download(target, path, strategy.installer_url, strategy.installer_name, timeout, tlog)
        tlog.info("Running %s", strategy.installer_name)
        try:
            await self.remote.run_checked(
                target,
                commands.run_installer_command(path, strategy.installer_name, strategy.args),
                "run installer",
                timeout,
            )
            if strategy.script and await self._exists(target, posixpath.join(path, strategy.script)):
                await self.remote.run_checked(
                    target,
                    commands.make_executable_command(posixpath.join(path, strategy.script)),
                    "make launch script executable",
                )
                tlog.info("Server will start through %s", strategy.script)
                return LaunchMode.SCRIPT

            result = await self.remote.run(target, commands.find_jar_command(path, strategy.launcher_pattern))
            jar = result.stdout.strip()
            if not jar:
                raise DownloadFailed("Could not find server JAR after installation")
            if jar != SERVER_JAR:
                await self.remote.run_checked(
                    target, commands.copy_command(path, jar, SERVER_JAR), "copy server JAR"
                )
            await self._verify_not_empty(target, posixpath.join(path, SERVER_JAR))
            tlog.info("Using %s as %s", jar, SERVER_JAR)
            return LaunchMode.JAR
        finally:
            for leftover in (strategy.installer_name, f"{strategy.installer_name}.log"):
                try:
                    await self.remote.run(target, commands.remove_file_command(path, leftover))
                except Exception as e:
                    tlog.warning("Failed to remove %s: %s", leftover, e)

    async def _exists(self, target: HostTarget, file_path: str) -> bool:
        result = await self.remote.run(target, commands.file_exists_command(file_path))
        return result.stdout.strip() == "exists"

    async def _write_properties(self, target: HostTarget, server: ManagedServer, console_secret: str) -> None:
        properties = render_server_properties(
            game_port=server.game_port,
            console_port=server.console_port,
            console_secret=console_secret,
            max_players=server.max_players,
            motd=server.name,
        )
        await self.remote.write_text(
            target, posixpath.join(server.server_path, "server.properties"), properties, "write server.properties"
        )

    def _unit_for(self, server: ManagedServer, ssh_user: str, launch_mode: LaunchMode) -> str:
        return render_unit(
            display_name=server.name,
            ssh_user=ssh_user,
            path=server.server_path,
            memory_mb=server.memory_mb,
            launch_mode=launch_mode,
        )

    async def _launch_mode(self, target: HostTarget, server: ManagedServer) -> LaunchMode:
        strategy = acquisition_strategy(ServerVariant(server.variant), server.version)
        if isinstance(strategy, InstallerRun) and strategy.script:
            if await self._exists(target, posixpath.join(server.server_path, strategy.script)):
                return LaunchMode.SCRIPT
        return LaunchMode.JAR

    # --- Start / stop -----------------------------------------------------

    async def start_server(self, account_id: int, server_id: int) -> ManagedServer:
        server = await self.get_server(account_id, server_id)
        if server.status == ServerStatus.RUNNING:
            raise Conflict("Server is already running")
        if server.status == ServerStatus.STARTING:
            raise Conflict("Server is already starting")
        if server.status == ServerStatus.STOPPING:
            raise Conflict("Server is stopping. Wait for it to stop first.")
        await self.plans.check_can_start(account_id)

        if not await self.store.transition_status(
            server_id,
            [ServerStatus.STOPPED, ServerStatus.ERROR],
            ServerStatus.STARTING,
            last_error=None,
        ):
            raise Conflict("Server status changed, please retry")
        self.tasks.spawn(f"start-{server_id}", self._start_remote(server))
        return await self.store.get_server(server_id)

    async def _start_remote(self, server: ManagedServer) -> None:
        tlog = TaskLogger(new_task_id(), server_id=server.id, host_id=server.host_id)
        try:
            _, target = await self._target_of(server)
            await self.remote.service(target, server.internal_name, ServiceAction.START)
            await self._sleep(self.config.SERVICE_GRACE_SECONDS)
            active = await self.remote.is_active(target, server.internal_name)
        except Exception as e:
            tlog.error("Failed to start server: %s", e)
            await self.store.update_server(
                server.id, status=ServerStatus.ERROR.value, last_error=describe_error(e)
            )
            return

        if active:
            changed = await self.store.transition_status(
                server.id, [ServerStatus.STARTING], ServerStatus.RUNNING, last_started_at=utcnow()
            )
            tlog.info("Server started successfully")
        else:
            changed = await self.store.transition_status(
                server.id,
                [ServerStatus.STARTING],
                ServerStatus.STOPPED,
                last_error="Service was started but is not active. Check the server logs.",
            )
            tlog.warning("Service started but not active")
        if not changed:
            tlog.info("Status was changed by another operation; leaving it as is")

    async def stop_server(self, account_id: int, server_id: int) -> ManagedServer:
        server = await self.get_server(account_id, server_id)
        if server.status == ServerStatus.STOPPED:
            raise Conflict("Server is already stopped")
        expected = [ServerStatus.RUNNING, ServerStatus.STARTING, ServerStatus.ERROR]
        if server.status == ServerStatus.STOPPING:
            if not server.last_error:
                raise Conflict("Server is already stopping")
            # The previous stop finished with the service still active
            expected = [ServerStatus.STOPPING]

        if not await self.store.transition_status(
            server_id, expected, ServerStatus.STOPPING, last_error=None
        ):
            raise Conflict("Server status changed, please retry")
        self.tasks.spawn(f"stop-{server_id}", self._stop_remote(server))
        return await self.store.get_server(server_id)

    async def _stop_remote(self, server: ManagedServer) -> None:
        tlog = TaskLogger(new_task_id(), server_id=server.id, host_id=server.host_id)
        try:
            _, target = await self._target_of(server)
            await self.remote.service(target, server.internal_name, ServiceAction.STOP)
            await self._sleep(self.config.SERVICE_GRACE_SECONDS)
            active = await self.remote.is_active(target, server.internal_name)
        except Exception as e:
            tlog.error("Failed to stop server: %s", e)
            await self.store.update_server(
                server.id, status=ServerStatus.ERROR.value, last_error=describe_error(e)
            )
            return

        if not active:
            await self.store.transition_status(
                server.id,
                [ServerStatus.STOPPING],
                ServerStatus.STOPPED,
                last_stopped_at=utcnow(),
                current_players=None,
                last_error=None,
            )
            tlog.info("Server stopped successfully")
        else:
            # Left in stopping; a later stop or a manual refresh resolves it
            await self.store.update_server(
                server.id, last_error="Service is still active after the stop command"
            )
            tlog.warning("Service still active after stop")

    # --- Update / delete --------------------------------------------------

    async def update_server(self, account_id: int, server_id: int, data: ServerUpdate) -> ManagedServer:
        server = await self.get_server(account_id, server_id)
        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key == "description"
        }
        changes = {k: v for k, v in changes.items() if getattr(server, k) != v}
        if not changes:
            return server

        await self.store.update_server(server_id, **changes)
        updated = await self.store.get_server(server_id)
        if {"name", "memory_mb", "max_players"} & changes.keys() and server.status != ServerStatus.ERROR:
            self.tasks.spawn(f"rerender-{server_id}", self._rerender_remote(updated))
        return updated

    async def _rerender_remote(self, server: ManagedServer) -> None:
        """Rewrite server.properties and the unit; applies on the next start."""
        tlog = TaskLogger(new_task_id(), server_id=server.id, host_id=server.host_id)
        try:
            host, target = await self._target_of(server)
            console_secret = self.vault.decrypt(server.console_secret_encrypted)
            await self._write_properties(target, server, console_secret)
            launch_mode = await self._launch_mode(target, server)
            await self.remote.install_unit(
                target, server.internal_name, self._unit_for(server, host.ssh_user, launch_mode)
            )
        except Exception as e:
            tlog.error("Failed to update remote configuration: %s", e)
            await self.store.update_server(
                server.id, last_error=f"Configuration update failed: {describe_error(e)}"
            )
            return
        tlog.info("Remote configuration updated")

    async def delete_server(self, account_id: int, server_id: int) -> None:
        """Remove remote files and the service, then the record.

        Ports are released when the record is deleted, after remote cleanup
        has been attempted.
        """
        server = await self.get_server(account_id, server_id)
        if server.status in (ServerStatus.RUNNING, ServerStatus.STARTING, ServerStatus.STOPPING):
            raise Conflict("Cannot delete a running server. Stop it first.")

        host = await self.store.get_host(server.host_id)
        if host is not None:
            await self._cleanup_remote(server, host)
        await self.store.delete_server(server_id)
        logger.info("Server %s deleted for account %s", server_id, account_id)

    async def _cleanup_remote(self, server: ManagedServer, host: RemoteHost) -> None:
        tlog = TaskLogger(new_task_id(), server_id=server.id, host_id=host.id)
        try:
            target = host_target(host, self.vault)
            root = minecraft_root(host.ssh_user, self.config.MINECRAFT_ROOT_TEMPLATE)
            path = resolve_within(root, server.server_path)
            if path == posixpath.normpath(root):
                raise InvalidRequest("Refusing to remove the shared minecraft directory")
        except Exception as e:
            tlog.error("Skipping remote cleanup: %s", e)
            return

        steps = (
            ("disable service", commands.service_command(ServiceAction.DISABLE, server.internal_name)),
            ("remove service unit", commands.remove_unit_command(server.internal_name)),
            ("reload systemd", commands.daemon_reload_command()),
            ("remove server directory", commands.remove_tree_command(path)),
        )
        for what, command in steps:
            try:
                result = await self.remote.run(target, command)
            except Exception as e:
                tlog.error("Failed to %s: %s", what, e)
                continue
            if result.exit_code != 0:
                tlog.warning("Failed to %s: %s", what, result.stderr)
        self.remote.directory_cache.invalidate(target.host_id)
        tlog.info("Server files deleted from remote host")

    # --- Inspection -------------------------------------------------------

    async def refresh_status(self, account_id: int, server_id: int) -> ManagedServer:
        await self.get_server(account_id, server_id)
        return await self.reconciler.refresh(server_id)

    async def get_server_logs(self, account_id: int, server_id: int) -> ServerLogs:
        server = await self.get_server(account_id, server_id)
        _, target = await self._target_of(server)
        return await self.remote.server_logs(target, server.internal_name, server.server_path)

    async def get_console(self, account_id: int, server_id: int, lines: int = 100) -> list[str]:
        server = await self.get_server(account_id, server_id)
        _, target = await self._target_of(server)
        return await self.remote.console_tail(target, server.server_path, lines)

    async def get_metrics(self, account_id: int, server_id: int) -> ProcessMetrics:
        server = await self.get_server(account_id, server_id)
        host, target = await self._target_of(server)
        return await self.remote.process_metrics(
            target,
            server.internal_name,
            memory_allocated_mb=server.memory_mb,
            max_players=server.max_players,
            host_ram_mb=host.total_ram_mb,
            active_players=server.current_players or 0,
        )

    async def get_host_metrics(self, account_id: int) -> HostMetrics:
        host = await self.store.get_host_for_account(account_id)
        if host is None:
            raise NotFound("Host not found")
        return await self.remote.host_metrics(host_target(host, self.vault))

    async def get_limits(self, account_id: int) -> AccountLimits:
        return await self.plans.get_limits(account_id)

    # --- Files ------------------------------------------------------------

    async def list_files(self, account_id: int, server_id: int, path: str | None = None) -> DirectoryListing:
        server = await self.get_server(account_id, server_id)
        resolve_within(server.server_path, path)
        _, target = await self._target_of(server)
        return await self.remote.list_directory(target, server.server_path, path)

    async def read_file(self, account_id: int, server_id: int, path: str) -> FileContent:
        server = await self.get_server(account_id, server_id)
        resolve_within(server.server_path, path)
        _, target = await self._target_of(server)
        return await self.remote.read_file(target, server.server_path, path)

    async def write_file(self, account_id: int, server_id: int, path: str, content: str) -> None:
        server = await self.get_server(account_id, server_id)
        resolve_within(server.server_path, path)
        _, target = await self._target_of(server)
        await self.remote.write_file(target, server.server_path, path, content)

    async def upload_file(
        self, account_id: int, server_id: int, destination: str | None, filename: str, content: bytes
    ) -> str:
        server = await self.get_server(account_id, server_id)
        resolve_within(server.server_path, destination)
        _, target = await self._target_of(server)
        return await self.remote.upload_file(target, server.server_path, destination, filename, content)

    async def download_file(self, account_id: int, server_id: int, path: str) -> bytes:
        server = await self.get_server(account_id, server_id)
        resolve_within(server.server_path, path)
        _, target = await self._target_of(server)
        return await self.remote.download_file(target, server.server_path, path)
