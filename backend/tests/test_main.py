"""
Message Store Backend — CLI Entry Point Tests
===============================================

What:  Tests for the ``msgstore`` command: fail-fast startup and the
       migrate → serve sequence, with the server itself patched out.
"""

from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from msgstore.config import Settings
from msgstore.exceptions import MigrationError
from msgstore.main import cli, create_backend, run


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No DATABASE_URL and no stray .env in the working directory."""
    monkeypatch.chdir(tmp_path)
    for name in ("DATABASE_URL", "HOST", "PORT", "MIGRATIONS_LOCATION"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestCli:

    def test_missing_database_url_exits_1(self, cli_runner, clean_env):
        with patch("msgstore.main.setup_logging"), \
             patch("msgstore.main.run", new=AsyncMock()) as run_mock:
            result = cli_runner.invoke(cli, [])

        assert result.exit_code == 1
        assert "DATABASE_URL is not set" in result.output
        run_mock.assert_not_called()

    def test_starts_with_migrations(self, cli_runner, clean_env, database_url):
        clean_env.setenv("DATABASE_URL", database_url)

        with patch("msgstore.main.setup_logging"), \
             patch("msgstore.main.run", new=AsyncMock()) as run_mock:
            result = cli_runner.invoke(cli, ["--port", "8081", "--host", "127.0.0.1"])

        assert result.exit_code == 0, result.output
        run_mock.assert_awaited_once()
        backend = run_mock.await_args.args[0]
        assert run_mock.await_args.kwargs == {"migrate": True}
        assert backend.config.port == 8081
        assert backend.config.host == "127.0.0.1"
        assert [str(r) for r in backend.routes] == ["GET /health"]

    def test_skip_migrations(self, cli_runner, clean_env, database_url):
        clean_env.setenv("DATABASE_URL", database_url)

        with patch("msgstore.main.setup_logging"), \
             patch("msgstore.main.run", new=AsyncMock()) as run_mock:
            result = cli_runner.invoke(cli, ["--skip-migrations"])

        assert result.exit_code == 0, result.output
        assert run_mock.await_args.kwargs == {"migrate": False}

    def test_migration_failure_exits_1(self, cli_runner, clean_env, database_url):
        clean_env.setenv("DATABASE_URL", database_url)
        failing = AsyncMock(side_effect=MigrationError("Could not apply migrations: boom"))

        with patch("msgstore.main.setup_logging"), patch("msgstore.main.run", new=failing):
            result = cli_runner.invoke(cli, [])

        assert result.exit_code == 1
        assert "Could not apply migrations" in result.output

    def test_version(self, cli_runner):
        result = cli_runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "msgstore 1.0.0" in result.output


class TestRun:

    @pytest.mark.asyncio
    async def test_migrates_before_serving(self, clean_env, database_url):
        clean_env.setenv("DATABASE_URL", database_url)
        backend = create_backend(Settings(_env_file=None))
        order = []

        with patch.object(backend, "migrate", AsyncMock(side_effect=lambda: order.append("migrate"))), \
             patch.object(backend, "serve", AsyncMock(side_effect=lambda: order.append("serve"))):
            await run(backend)

        assert order == ["migrate", "serve"]
        await backend.db.dispose()

    @pytest.mark.asyncio
    async def test_migration_failure_prevents_serving(self, clean_env, database_url):
        clean_env.setenv("DATABASE_URL", database_url)
        backend = create_backend(Settings(_env_file=None))

        with patch.object(backend, "migrate", AsyncMock(side_effect=MigrationError("boom"))), \
             patch.object(backend, "serve", AsyncMock()) as serve:
            with pytest.raises(MigrationError):
                await run(backend)

        serve.assert_not_awaited()
        await backend.db.dispose()
