"""
Message Store Backend — Test Configuration (conftest.py)
==========================================================

What:  Shared pytest fixtures for the entire test suite.
How:   Every test gets its own SQLite file (aiosqlite driver) under tmp_path,
       so backends, migrations and sessions run against a real database
       without a PostgreSQL server.

Fixture Hierarchy (all function-scoped):
    database_url ──► server_config ──► backend ──► client
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from msgstore.backend import StoreBackend
from msgstore.config import ServerConfig, get_settings


# ══════════════════════════════════════════════════════════════════════════
# Environment Setup
# ══════════════════════════════════════════════════════════════════════════

os.environ["LOG_LEVEL"] = "WARNING"  # Reduce noise during tests


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are lru_cached; each test sees its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ══════════════════════════════════════════════════════════════════════════
# Database & Backend Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'msgstore.db'}"


@pytest.fixture
def server_config(database_url) -> ServerConfig:
    return ServerConfig(database_url=database_url, port=3999)


@pytest_asyncio.fixture
async def backend(server_config) -> AsyncGenerator[StoreBackend, None]:
    """
    A fresh backend per test. Routes are registered by the test itself.

    Usage:
        async def test_something(backend, client):
            backend.route("GET", "/x", handler)
            response = await client.get("/x")
    """
    instance = StoreBackend(server_config)
    yield instance
    await instance.db.dispose()


@pytest_asyncio.fixture
async def client(backend) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX AsyncClient wired to the backend's ASGI app (no server needed)."""
    transport = ASGITransport(app=backend.app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

