"""Tests for settings, error payloads and process wiring."""

import pytest

from mcfleet.core.config import Settings
from mcfleet.core.exceptions import (
    CommandFailed,
    ConfigurationError,
    PathTraversalRejected,
    QuotaExceeded,
    describe_error,
    error_payload,
)

STRONG_KEY = "k" * 32


class TestSettings:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("postgres://u:p@db/mcfleet", "postgresql+asyncpg://u:p@db/mcfleet"),
            ("postgresql://u:p@db/mcfleet", "postgresql+asyncpg://u:p@db/mcfleet"),
            ("postgresql+asyncpg://u:p@db/mcfleet", "postgresql+asyncpg://u:p@db/mcfleet"),
            ("sqlite+aiosqlite:///mcfleet.db", "sqlite+aiosqlite:///mcfleet.db"),
        ],
    )
    def test_database_url_normalised(self, url, expected):
        assert Settings(DATABASE_URL=url, ENCRYPTION_KEY=STRONG_KEY).DATABASE_URL == expected

    def test_defaults(self):
        s = Settings(DATABASE_URL="sqlite+aiosqlite://", ENCRYPTION_KEY=STRONG_KEY)
        assert s.GAME_PORT_START == 25565
        assert s.CONSOLE_PORT_END == 25764
        assert s.RECONCILE_INTERVAL_SECONDS == 120
        assert s.SERVICE_GRACE_SECONDS == 5

    def test_check_required_passes(self):
        Settings(DATABASE_URL="sqlite+aiosqlite://", ENCRYPTION_KEY=STRONG_KEY).check_required()

    @pytest.mark.parametrize(
        "url, key, message",
        [
            ("", STRONG_KEY, "DATABASE_URL"),
            ("sqlite+aiosqlite://", "", "ENCRYPTION_KEY is required"),
            ("sqlite+aiosqlite://", "short", "at least 32"),
        ],
    )
    def test_check_required_fails(self, url, key, message):
        with pytest.raises(ConfigurationError, match=message):
            Settings(DATABASE_URL=url, ENCRYPTION_KEY=key).check_required()


class TestLogging:
    def test_formatter_masks_secrets(self):
        import logging

        from mcfleet.core.logging import McFleetFormatter

        record = logging.LogRecord(
            "mcfleet.services.provisioning", logging.ERROR, __file__, 1,
            "Rendered %s", ("rcon.password=0123abcd\nserver-port=25565",), None,
        )
        line = McFleetFormatter().format(record)
        assert "0123abcd" not in line
        assert "rcon.password=***" in line
        assert "server-port=25565" in line
        assert "| ERROR    | mcfleet.services.provisioning |" in line

    def test_redact_leaves_plain_text(self):
        from mcfleet.core.logging import redact_secrets

        assert redact_secrets("Server 3 started") == "Server 3 started"
        assert redact_secrets("PASSWORD=hunter2 done") == "PASSWORD=*** done"


class TestErrorPayload:
    def test_typed_error(self):
        assert error_payload(QuotaExceeded("Server limit reached")) == {
            "detail": "Server limit reached",
            "kind": "quota_exceeded",
        }

    def test_unknown_error_is_hidden(self, caplog):
        payload = error_payload(RuntimeError("secret internals"))
        assert payload == {"detail": "Internal server error", "kind": "internal_error"}
        assert "secret internals" in caplog.text

    def test_command_failed_carries_stderr(self):
        exc = CommandFailed("Failed to write file", exit_code=1, stderr="Permission denied")
        assert exc.message == "Failed to write file: Permission denied"
        assert exc.exit_code == 1

    def test_describe_error(self):
        assert describe_error(PathTraversalRejected("../x")).startswith("Access denied")
        assert describe_error(ValueError("bad value")) == "bad value"
        assert describe_error(KeyError()) == "KeyError"


class TestBackgroundTasks:
    @pytest.mark.asyncio
    async def test_drain_waits_for_spawned_work(self, tasks):
        import asyncio

        done = []

        async def job(n):
            await asyncio.sleep(0)
            done.append(n)
            if n == 1:
                tasks.spawn("follow-up", job(2))

        tasks.spawn("first", job(1))
        await tasks.drain()
        assert done == [1, 2]
        assert len(tasks) == 0

    @pytest.mark.asyncio
    async def test_failures_are_logged(self, tasks, caplog):
        async def boom():
            raise RuntimeError("kaboom")

        tasks.spawn("boom", boom())
        await tasks.drain()
        assert "Background task boom failed: kaboom" in caplog.text

    def test_task_logger_prefix(self, caplog):
        import logging

        from mcfleet.workers.utils import TaskLogger

        with caplog.at_level(logging.INFO, logger="mcfleet.workers"):
            TaskLogger("abcdef0123456789", server_id=5, host_id=2).info("Provisioning %s", "started")
        assert "[task=abcdef012345 server=5 host=2] Provisioning started" in caplog.text


class TestServerFiles:
    def test_internal_name(self):
        from mcfleet.services.server_files import generate_internal_name

        name = generate_internal_name("My Awesome  Survival World!!")
        prefix, _, suffix = name.rpartition("-")
        assert prefix == "mc-my-awesome-survival"
        assert len(suffix) == 8
        assert generate_internal_name("!!!").startswith("mc-server-")

    def test_server_properties_single_line_motd(self):
        from mcfleet.services.server_files import render_server_properties

        text = render_server_properties(
            game_port=25565, console_port=25665, console_secret="s3cret",
            max_players=20, motd="Hello\nenable-rcon=false",
        )
        assert "motd=Hello enable-rcon=false\n" in text
        assert text.count("enable-rcon=") == 2
        assert "\nenable-rcon=true\n" in text

    def test_unit_script_mode(self):
        from mcfleet.services.server_files import render_unit
        from mcfleet.services.variants import LaunchMode

        unit = render_unit(
            display_name="Modded", ssh_user="steve", path="/srv/mc", memory_mb=4096,
            launch_mode=LaunchMode.SCRIPT,
        )
        assert "ExecStart=/srv/mc/run.sh nogui" in unit
        assert "RestartSec=10" in unit


class TestRuntime:
    @pytest.mark.asyncio
    async def test_build_and_shutdown(self, config, engine):
        from mcfleet.main import build_runtime

        runtime = build_runtime(config, engine=engine)
        assert runtime.workflow.reconciler is runtime.reconciler
        assert runtime.hosts.pool is runtime.pool
        await runtime.startup()
        await runtime.shutdown(drain_timeout=1)

    @pytest.mark.asyncio
    async def test_startup_refuses_weak_key(self, config, engine):
        from mcfleet.main import build_runtime

        weak = config.model_copy(update={"ENCRYPTION_KEY": "short"})
        runtime = build_runtime(weak, engine=engine)
        with pytest.raises(ConfigurationError):
            await runtime.startup()
