"""
Shared fixtures for the mcfleet test suite.

Each test gets its own SQLite database file (via aiosqlite) so concurrent
sessions see each other's commits, and a scripted fake host in place of a
live SSH server.
"""

import base64
import os

# Settings are read at import time; provide the required values first.
TEST_ENCRYPTION_KEY = "test-encryption-key-0123456789abcdef"
os.environ.setdefault("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from mcfleet.core.config import Settings
from mcfleet.core.database import create_session_factory
from mcfleet.core.encryption import CredentialVault
from mcfleet.models import Account, ManagedServer, RemoteHost
from mcfleet.models.base import Base
from mcfleet.services.ssh_service import CommandResult

HOST_USER = "steve"
HOST_PASSWORD = "hunter2-hunter2"


# ---------------------------------------------------------------------------
# Fake remote host
# ---------------------------------------------------------------------------

class FakeHost:
    """Scripted stand-in for a machine reached over SSH.

    Commands are answered by the most recently added rule whose fragment is a
    substring of the command line; unmatched commands succeed with no output.
    """

    def __init__(self):
        self.commands: list[str] = []
        self.inputs: list[bytes | None] = []
        self.files: dict[str, bytes] = {}
        self.rules: list[tuple[str, CommandResult | BaseException]] = []
        self.connect_error: BaseException | None = None
        self.connections = 0
        self.closed = 0

    def on(self, fragment: str, stdout: str = "", stderr: str = "", exit_code: int = 0) -> None:
        self.rules.append((fragment, CommandResult(stdout, stderr, exit_code)))

    def raise_on(self, fragment: str, exc: BaseException) -> None:
        self.rules.append((fragment, exc))

    def respond(self, command: str) -> CommandResult:
        for fragment, outcome in reversed(self.rules):
            if fragment in command:
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
        return CommandResult("", "", 0)

    def ran(self, fragment: str) -> list[str]:
        return [c for c in self.commands if fragment in c]

    def payload(self, fragment: str) -> str:
        """Decoded stdin of the first command containing ``fragment``."""
        for command, data in zip(self.commands, self.inputs):
            if fragment in command and data is not None:
                return base64.b64decode(data).decode("utf-8")
        raise AssertionError(f"no command with stdin matching {fragment!r}")

    def session_factory(self, credentials, connect_timeout: float) -> "FakeSSHSession":
        return FakeSSHSession(self, credentials)


class FakeSSHSession:
    def __init__(self, host: FakeHost, credentials):
        self.fake = host
        self.credentials = credentials
        self.connected = False

    def connect(self) -> None:
        if self.fake.connect_error is not None:
            raise self.fake.connect_error
        self.fake.connections += 1
        self.connected = True

    @property
    def is_active(self) -> bool:
        return self.connected

    def execute(self, command: str, timeout: float = 30, stdin: bytes | None = None) -> CommandResult:
        self.fake.commands.append(command)
        self.fake.inputs.append(stdin)
        return self.fake.respond(command)

    def upload_file(self, local_path: str, remote_path: str) -> None:
        with open(local_path, "rb") as fh:
            self.fake.files[remote_path] = fh.read()

    def download_file(self, remote_path: str, local_path: str) -> None:
        if remote_path not in self.fake.files:
            raise FileNotFoundError(remote_path)
        with open(local_path, "wb") as fh:
            fh.write(self.fake.files[remote_path])

    def close(self) -> None:
        if self.connected:
            self.fake.closed += 1
        self.connected = False


@pytest.fixture()
def fake_host() -> FakeHost:
    return FakeHost()


# ---------------------------------------------------------------------------
# Configuration and collaborators
# ---------------------------------------------------------------------------

@pytest.fixture()
def config() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        ENCRYPTION_KEY=TEST_ENCRYPTION_KEY,
        SERVICE_GRACE_SECONDS=0.0,
        RECONCILE_INTERVAL_SECONDS=0.01,
    )


@pytest.fixture()
def vault() -> CredentialVault:
    return CredentialVault(TEST_ENCRYPTION_KEY)


@pytest.fixture()
def pool(fake_host, config):
    from mcfleet.services.connection_pool import ConnectionPool

    return ConnectionPool(
        connect_timeout=config.SSH_CONNECT_TIMEOUT,
        idle_timeout=config.SSH_IDLE_TIMEOUT,
        health_check_timeout=config.SSH_HEALTH_CHECK_TIMEOUT,
        command_timeout=config.SSH_COMMAND_TIMEOUT,
        session_factory=fake_host.session_factory,
    )


@pytest.fixture()
def remote(pool, config):
    from mcfleet.services.remote_ops import RemoteOperations

    return RemoteOperations(pool, config)


@pytest_asyncio.fixture()
async def tasks():
    from mcfleet.workers.tasks import BackgroundTasks

    runner = BackgroundTasks()
    yield runner
    await runner.cancel_all()


# ---------------------------------------------------------------------------
# Database engine & store  (SQLite file per test)
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'mcfleet.db'}", echo=False, poolclass=NullPool
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture()
def store(engine):
    from mcfleet.services.store import SqlServerStore

    return SqlServerStore(create_session_factory(engine))


# ---------------------------------------------------------------------------
# Seed records
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def account(store) -> Account:
    return await store.add_account(Account(email="player@mcfleet.local", plan_tier="free"))


@pytest_asyncio.fixture()
async def host(store, account, vault) -> RemoteHost:
    return await store.add_host(RemoteHost(
        account_id=account.id,
        name="Home lab",
        address="192.0.2.10",
        ssh_port=22,
        ssh_user=HOST_USER,
        ssh_password_encrypted=vault.encrypt(HOST_PASSWORD),
        status="connected",
        total_ram_mb=8192,
        cpu_cores=4,
        disk_gb=80,
    ))


@pytest.fixture()
def target(host, vault):
    from mcfleet.services.host_service import host_target

    return host_target(host, vault)


@pytest_asyncio.fixture()
async def make_server(store, vault) -> Callable:
    """Insert a server record directly, bypassing provisioning."""
    secret = vault.encrypt("0123456789abcdef0123456789abcdef")
    counter = {"n": 0}

    async def _make(account: Account, host: RemoteHost, **overrides) -> ManagedServer:
        counter["n"] += 1
        n = counter["n"]
        fields = {
            "account_id": account.id,
            "host_id": host.id,
            "name": f"Server {n}",
            "internal_name": f"mc-server-{n}-{n:08x}",
            "variant": "paper",
            "version": "1.20.1",
            "memory_mb": 2048,
            "max_players": 20,
            "game_port": 25564 + n,
            "console_port": 25664 + n,
            "console_secret_encrypted": secret,
            "status": "stopped",
        }
        fields.update(overrides)
        fields.setdefault(
            "server_path", f"/home/{host.ssh_user}/minecraft/{fields['internal_name']}"
        )
        return await store.add_server(ManagedServer(**fields))

    return _make


# ---------------------------------------------------------------------------
# Workflow wiring
# ---------------------------------------------------------------------------

@pytest.fixture()
def reconciler(store, remote, vault, config):
    from mcfleet.services.reconciler import ReconciliationLoop

    return ReconciliationLoop(store, remote, vault, config)


@pytest.fixture()
def manifest():
    from mcfleet.services.variants import ManifestResolver

    return ManifestResolver()


@pytest.fixture()
def workflow(store, remote, vault, tasks, reconciler, manifest, config):
    from mcfleet.services.plan_limits import PlanLimiter
    from mcfleet.services.port_allocation import PortAllocator
    from mcfleet.services.provisioning import ProvisioningWorkflow

    async def _no_sleep(_seconds: float) -> None:
        return None

    return ProvisioningWorkflow(
        store,
        remote,
        vault,
        tasks,
        ports=PortAllocator(store, config),
        plans=PlanLimiter(store),
        manifest=manifest,
        reconciler=reconciler,
        config=config,
        sleep=_no_sleep,
    )
