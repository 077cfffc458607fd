"""
Message Store Backend — Configuration & Database Handle Tests
===============================================================

What:  Tests for ServerConfig/Settings validation, URL normalization and the
       DatabaseHandle session contract.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import text

from msgstore.config import CorsPolicy, ServerConfig, Settings
from msgstore.database import create_database_handle, normalize_database_url
from msgstore.exceptions import ConfigurationError


class TestServerConfig:

    def test_defaults(self):
        config = ServerConfig(database_url="sqlite+aiosqlite://")
        assert config.port == 3000
        assert config.host == "0.0.0.0"
        assert config.body_limit == 100 * 1024
        assert config.cors_policy == CorsPolicy.permissive()
        assert config.middleware == ()

    @pytest.mark.parametrize("url", ["", "   "])
    def test_empty_database_url(self, url):
        with pytest.raises(ConfigurationError) as exc_info:
            ServerConfig(database_url=url)
        assert exc_info.value.field == "database_url"

    def test_database_url_required(self):
        with pytest.raises(ConfigurationError):
            ServerConfig()

    @pytest.mark.parametrize("port", [0, 70000])
    def test_port_range(self, port):
        with pytest.raises(ConfigurationError) as exc_info:
            ServerConfig(database_url="sqlite+aiosqlite://", port=port)
        assert exc_info.value.field == "port"

    def test_non_callable_global_middleware(self):
        with pytest.raises(ConfigurationError):
            ServerConfig(database_url="sqlite+aiosqlite://", middleware=("cors",))

    def test_immutable(self):
        config = ServerConfig(database_url="sqlite+aiosqlite://")
        with pytest.raises(PydanticValidationError):
            config.port = 8080


class TestSettings:

    def test_missing_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = Settings(_env_file=None)

        with pytest.raises(ConfigurationError) as exc_info:
            settings.to_server_config()
        assert "DATABASE_URL is not set" in exc_info.value.message

    def test_environment_and_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://app:pw@db:5432/messages")
        monkeypatch.setenv("PORT", "4000")
        monkeypatch.setenv("CORS_ORIGINS", "http://a.example, http://b.example")
        settings = Settings(_env_file=None)

        config = settings.to_server_config(host="127.0.0.1", port=None)

        assert config.port == 4000
        assert config.host == "127.0.0.1"
        assert config.cors_policy.allow_origins == ("http://a.example", "http://b.example")
        assert config.migrations_location is None

    def test_invalid_log_level(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "chatty")
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None)


class TestDatabaseUrl:

    @pytest.mark.parametrize(
        "raw, driver",
        [
            ("postgresql://u:p@localhost/messages", "postgresql+asyncpg"),
            ("postgres://u:p@localhost/messages", "postgresql+asyncpg"),
            ("postgresql+asyncpg://u:p@localhost/messages", "postgresql+asyncpg"),
            ("sqlite:///messages.db", "sqlite+aiosqlite"),
        ],
    )
    def test_async_driver_selected(self, raw, driver):
        assert normalize_database_url(raw).drivername == driver

    @pytest.mark.parametrize("raw", ["", "not a url", "://missing-scheme"])
    def test_malformed(self, raw):
        with pytest.raises(ConfigurationError):
            normalize_database_url(raw)


class TestDatabaseHandle:

    @pytest.mark.asyncio
    async def test_password_is_masked(self):
        handle = create_database_handle(
            ServerConfig(database_url="postgresql://app:hunter2@db:5432/messages")
        )
        assert "hunter2" not in handle.url
        assert handle.dialect == "postgresql"
        await handle.dispose()

    @pytest.mark.asyncio
    async def test_session_commits_and_rolls_back(self, server_config):
        handle = create_database_handle(server_config)
        async with handle.session() as session:
            await session.execute(text("CREATE TABLE kv (k TEXT PRIMARY KEY, v TEXT)"))
            await session.execute(text("INSERT INTO kv VALUES ('a', '1')"))

        with pytest.raises(RuntimeError):
            async with handle.session() as session:
                await session.execute(text("INSERT INTO kv VALUES ('b', '2')"))
                raise RuntimeError("abort")

        async with handle.session() as session:
            rows = (await session.execute(text("SELECT k FROM kv ORDER BY k"))).all()
        assert [row[0] for row in rows] == ["a"]
        await handle.dispose()

    @pytest.mark.asyncio
    async def test_ping(self, server_config, tmp_path):
        handle = create_database_handle(server_config)
        assert await handle.ping() is True
        await handle.dispose()

        unreachable = create_database_handle(
            ServerConfig(database_url=f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}")
        )
        assert await unreachable.ping() is False
        await unreachable.dispose()
