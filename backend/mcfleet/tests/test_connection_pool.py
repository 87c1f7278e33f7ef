"""Tests for pooled SSH sessions keyed by host id."""

import asyncio

import paramiko
import pytest

from mcfleet.core.exceptions import CommandTimeout, ConnectionFailed
from mcfleet.schemas.host import HostTarget, SSHCredentials


def _target(host_id: str = "1", password: str = "secret-password") -> HostTarget:
    credentials = SSHCredentials(host="192.0.2.10", username="steve", password=password)
    return HostTarget(host_id=host_id, credentials=credentials)


class TestConnectionPool:
    @pytest.mark.asyncio
    async def test_session_is_reused(self, pool, fake_host):
        fake_host.on("uptime", "up 3 days")
        first = await pool.execute(_target(), "uptime")
        second = await pool.execute(_target(), "uptime")

        assert first.stdout == second.stdout == "up 3 days"
        assert fake_host.connections == 1
        assert pool.has_session("1")

    @pytest.mark.asyncio
    async def test_hosts_get_separate_sessions(self, pool, fake_host):
        await pool.execute(_target("1"), "true")
        await pool.execute(_target("2"), "true")
        assert fake_host.connections == 2

    @pytest.mark.asyncio
    async def test_concurrent_first_use_connects_once(self, pool, fake_host):
        await asyncio.gather(*(pool.execute(_target(), f"echo {i}") for i in range(8)))
        assert fake_host.connections == 1
        assert len(fake_host.ran("echo ")) >= 8

    @pytest.mark.asyncio
    async def test_changed_credentials_replace_session(self, pool, fake_host):
        await pool.execute(_target(password="old-password"), "true")
        await pool.execute(_target(password="new-password"), "true")
        assert fake_host.connections == 2
        assert fake_host.closed == 1

    @pytest.mark.asyncio
    async def test_idle_session_is_replaced(self, fake_host):
        from mcfleet.services.connection_pool import ConnectionPool

        pool = ConnectionPool(idle_timeout=0, session_factory=fake_host.session_factory)
        await pool.execute(_target(), "true")
        await pool.execute(_target(), "true")
        assert fake_host.connections == 2

    @pytest.mark.asyncio
    async def test_dead_session_is_replaced(self, pool, fake_host):
        session = await pool.acquire("1", _target().credentials)
        session.connected = False
        replacement = await pool.acquire("1", _target().credentials)
        assert replacement is not session
        assert fake_host.connections == 2

    @pytest.mark.asyncio
    async def test_failed_health_check_replaces_session(self, pool, fake_host):
        await pool.execute(_target(), "true")
        fake_host.on('echo "ping"', exit_code=1)
        await pool.execute(_target(), "true")
        assert fake_host.connections == 2

    @pytest.mark.asyncio
    async def test_connect_failure_is_typed(self, pool, fake_host):
        fake_host.connect_error = paramiko.AuthenticationException("Authentication failed.")
        with pytest.raises(ConnectionFailed, match="SSH authentication failed"):
            await pool.execute(_target(), "true")
        assert not pool.has_session("1")

    @pytest.mark.asyncio
    async def test_timeout_keeps_session(self, pool, fake_host):
        fake_host.raise_on("sleep 60", CommandTimeout("sleep 60", 1))
        with pytest.raises(CommandTimeout):
            await pool.execute(_target(), "sleep 60", timeout=1)
        assert pool.has_session("1")
        await pool.execute(_target(), "true")
        assert fake_host.connections == 1

    @pytest.mark.asyncio
    async def test_transport_error_becomes_connection_failed(self, pool, fake_host):
        fake_host.raise_on("uptime", paramiko.SSHException("SSH transport is no longer active"))
        with pytest.raises(ConnectionFailed):
            await pool.execute(_target(), "uptime")

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, pool, fake_host):
        await pool.execute(_target(), "true")
        await pool.close("1")
        await pool.close("1")
        assert not pool.has_session("1")
        assert fake_host.closed == 1

    @pytest.mark.asyncio
    async def test_close_all(self, pool, fake_host):
        await pool.execute(_target("1"), "true")
        await pool.execute(_target("2"), "true")
        await pool.close_all()
        assert not pool.has_session("1")
        assert not pool.has_session("2")
        assert fake_host.closed == 2

    @pytest.mark.asyncio
    async def test_host_locks_do_not_accumulate(self, pool, fake_host):
        for i in range(5):
            await pool.execute(_target(str(i)), "true")
        assert len(pool._locks) == 5

        await pool.close_all()
        assert pool._locks == {}

        fake_host.connect_error = paramiko.SSHException("Connection refused")
        with pytest.raises(ConnectionFailed):
            await pool.execute(_target("9"), "true")
        assert pool._locks == {}

    @pytest.mark.asyncio
    async def test_upload_and_download(self, pool, fake_host, tmp_path):
        local = tmp_path / "world.txt"
        local.write_bytes(b"seed=42")
        await pool.upload(_target(), str(local), "/srv/world.txt")
        assert fake_host.files["/srv/world.txt"] == b"seed=42"

        copy = tmp_path / "copy.txt"
        await pool.download(_target(), "/srv/world.txt", str(copy))
        assert copy.read_bytes() == b"seed=42"

    @pytest.mark.asyncio
    async def test_download_missing_file(self, pool, tmp_path):
        from mcfleet.core.exceptions import NotFound

        with pytest.raises(NotFound):
            await pool.download(_target(), "/srv/missing.txt", str(tmp_path / "x"))


class TestFriendlySSHError:
    @pytest.mark.parametrize(
        "exc, expected",
        [
            (paramiko.AuthenticationException("bad"), "SSH authentication failed"),
            (OSError("[Errno 111] Connection refused"), "Connection refused"),
            (TimeoutError("timed out"), "Connection timed out"),
            (OSError("[Errno -2] Name or service not known"), "Hostname not found"),
            (OSError("[Errno 113] No route to host"), "Cannot reach the server"),
            (paramiko.SSHException("Unable to parse private key: bad"), "Invalid SSH private key"),
        ],
    )
    def test_messages(self, exc, expected):
        from mcfleet.services.ssh_service import friendly_ssh_error

        assert friendly_ssh_error(exc).startswith(expected)
