import asyncio
import logging
import signal
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from mcfleet.core.config import Settings, settings
from mcfleet.core.database import create_engine, create_session_factory
from mcfleet.core.encryption import CredentialVault
from mcfleet.core.exceptions import ConfigurationError
from mcfleet.core.logging import setup_logging
from mcfleet.services.connection_pool import ConnectionPool
from mcfleet.services.console import ConsoleService
from mcfleet.services.host_service import HostService
from mcfleet.services.plan_limits import PlanLimiter
from mcfleet.services.port_allocation import PortAllocator
from mcfleet.services.provisioning import ProvisioningWorkflow
from mcfleet.services.reconciler import ReconciliationLoop
from mcfleet.services.remote_ops import RemoteOperations
from mcfleet.services.store import SqlServerStore
from mcfleet.services.variants import ManifestResolver
from mcfleet.workers.tasks import BackgroundTasks

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every long-lived collaborator of one mcfleet process."""

    config: Settings
    engine: AsyncEngine
    vault: CredentialVault
    pool: ConnectionPool
    store: SqlServerStore
    remote: RemoteOperations
    tasks: BackgroundTasks
    reconciler: ReconciliationLoop
    hosts: HostService
    console: ConsoleService
    workflow: ProvisioningWorkflow

    async def startup(self) -> None:
        self.config.check_required()
        if not self.vault.verify_configuration():
            raise ConfigurationError("Encryption configuration verification failed")
        self.reconciler.start()
        logger.info("mcfleet started, reconciling every %ss", self.config.RECONCILE_INTERVAL_SECONDS)

    async def shutdown(self, drain_timeout: float = 30.0) -> None:
        logger.info("mcfleet shutting down")
        await self.reconciler.stop()
        await self.tasks.drain(drain_timeout)
        await self.tasks.cancel_all()
        await self.pool.close_all()
        await self.engine.dispose()


def build_runtime(config: Settings = settings, engine: AsyncEngine | None = None) -> Runtime:
    engine = engine or create_engine(config.DATABASE_URL)
    vault = CredentialVault(config.ENCRYPTION_KEY)
    pool = ConnectionPool(
        connect_timeout=config.SSH_CONNECT_TIMEOUT,
        idle_timeout=config.SSH_IDLE_TIMEOUT,
        health_check_timeout=config.SSH_HEALTH_CHECK_TIMEOUT,
        command_timeout=config.SSH_COMMAND_TIMEOUT,
    )
    store = SqlServerStore(create_session_factory(engine))
    remote = RemoteOperations(pool, config)
    tasks = BackgroundTasks()
    reconciler = ReconciliationLoop(store, remote, vault, config)
    return Runtime(
        config=config,
        engine=engine,
        vault=vault,
        pool=pool,
        store=store,
        remote=remote,
        tasks=tasks,
        reconciler=reconciler,
        hosts=HostService(store, pool, remote, vault, tasks),
        console=ConsoleService(store, vault, config),
        workflow=ProvisioningWorkflow(
            store,
            remote,
            vault,
            tasks,
            ports=PortAllocator(store, config),
            plans=PlanLimiter(store),
            manifest=ManifestResolver(),
            reconciler=reconciler,
            config=config,
        ),
    )


async def run(config: Settings = settings) -> None:
    setup_logging(config.LOG_LEVEL)
    runtime = build_runtime(config)
    await runtime.startup()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        await runtime.shutdown()


def main() -> None:
    try:
        asyncio.run(run())
    except ConfigurationError as e:
        logging.getLogger(__name__).critical("Refusing to start: %s", e.message)
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()
