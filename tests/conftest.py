"""Pytest configuration and fixtures."""

from typing import AsyncGenerator
from unittest.mock import patch

import pytest

from authvault.config import Settings
from authvault.dialects.postgres import PostgresAdapter
from authvault.dialects.sqlite import SQLiteAdapter
from authvault.services import clock as clock_module
from authvault.services.auth_service import AuthVault

from tests.helpers import (
    TEST_ACCESS_SECRET,
    TEST_REFRESH_SECRET,
    FakeMailTransport,
    MockConnection,
    MockPool,
)


# ---------------------------------------------------------------------------
# Settings and clock
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for a throwaway SQLite file with cheap bcrypt rounds."""
    return Settings(
        _env_file=None,
        environment="test",
        db_type="sqlite",
        sqlite_path=str(tmp_path / "authvault.db"),
        pool_acquire_timeout=2.0,
        jwt_access_secret=TEST_ACCESS_SECRET,
        jwt_refresh_secret=TEST_REFRESH_SECRET,
        bcrypt_rounds=4,
    )

class FakeClock:
    """Controllable replacement for clock.now_ms()."""

    def __init__(self, start_ms: int):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, *, minutes: float = 0, hours: float = 0, days: float = 0) -> None:
        self.now += int((minutes * 60 + hours * 3600 + days * 86400) * 1000)

@pytest.fixture
def fake_clock():
    """Patch clock.now_ms with a clock that only moves when told to."""
    fake = FakeClock(clock_module.now_ms())
    with patch.object(clock_module, "now_ms", fake):
        yield fake

# ---------------------------------------------------------------------------
# SQLite-backed fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def sqlite_adapter(settings) -> AsyncGenerator[SQLiteAdapter, None]:
    """Connected SQLite adapter with the four tables created."""
    adapter = SQLiteAdapter(settings)
    await adapter.connect()
    await adapter.create_tables(settings.tables)
    await adapter.create_indexes(settings.tables)
    yield adapter
    await adapter.close()

@pytest.fixture
def mail() -> FakeMailTransport:
    return FakeMailTransport()

@pytest.fixture
async def vault(settings, mail) -> AsyncGenerator[AuthVault, None]:
    """Initialized AuthVault on SQLite with a recording mail transport."""
    auth = AuthVault(settings, mail_transport=mail)
    await auth.init()
    yield auth
    await auth.close()

# ---------------------------------------------------------------------------
# Mocked PostgreSQL
# ---------------------------------------------------------------------------

@pytest.fixture
def pg_settings(settings) -> Settings:
    return settings.model_copy(update={"db_type": "postgres"})

@pytest.fixture
def mock_pg(pg_settings):
    """Return (adapter, connection) with the adapter's pool replaced by a mock."""
    conn = MockConnection()
    adapter = PostgresAdapter(pg_settings)
    adapter._pool = MockPool(conn)
    return adapter, conn
