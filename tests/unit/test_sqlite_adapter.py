"""Unit tests for SQLiteAdapter against a temporary database file."""

import asyncio
import sqlite3

import pytest

from authvault.dialects.sqlite import SQLiteAdapter
from authvault.errors import ConfigurationError, ConflictError
from authvault.models.schema import Column, FieldDescriptor


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    """Tests for connect/close behaviour."""

    async def test_connect_is_idempotent(self, settings):
        adapter = SQLiteAdapter(settings)
        await adapter.connect()
        await adapter.connect()
        assert adapter.is_connected
        await adapter.close()
        assert not adapter.is_connected

    async def test_use_before_connect_fails(self, settings):
        with pytest.raises(ConfigurationError, match="not connected"):
            await SQLiteAdapter(settings).fetchval("SELECT 1")

    async def test_unopenable_path_is_configuration_error(self, settings, tmp_path):
        bad = settings.model_copy(update={"sqlite_path": str(tmp_path / "missing" / "x.db")})
        with pytest.raises(ConfigurationError, match="Cannot open SQLite database"):
            await SQLiteAdapter(bad).connect()

    async def test_health_check(self, sqlite_adapter):
        assert await sqlite_adapter.health_check() is True


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class TestSchema:
    """Tests for table creation and column management."""

    async def test_create_tables_idempotent(self, sqlite_adapter, settings):
        await sqlite_adapter.create_tables(settings.tables)
        await sqlite_adapter.create_indexes(settings.tables)

        rows = await sqlite_adapter.fetch(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        assert [r["name"] for r in rows] == sorted(
            [
                settings.tables.users,
                settings.tables.refresh_tokens,
                settings.tables.login_attempts,
                settings.tables.verification_tokens,
            ]
        )

    async def test_custom_fields_created_with_new_table(self, settings):
        adapter = SQLiteAdapter(settings)
        await adapter.connect()
        try:
            await adapter.create_tables(settings.tables, [FieldDescriptor(name="age", type="INTEGER")])
            assert await adapter.column_exists(settings.tables.users, "age") is True
            assert await adapter.column_exists(settings.tables.users, "shoe_size") is False
        finally:
            await adapter.close()

    async def test_table_has_rows(self, sqlite_adapter, settings):
        users = settings.tables.users
        assert await sqlite_adapter.table_has_rows(users) is False
        await sqlite_adapter.insert(
            f'INSERT INTO "{users}" (email, password_hash) VALUES (?, ?)', "a@b.com", "x"
        )
        assert await sqlite_adapter.table_has_rows(users) is True

    async def test_add_unique_column_enforced_by_index(self, sqlite_adapter, settings):
        users = settings.tables.users
        await sqlite_adapter.add_column(users, Column("handle", "VARCHAR(40)", unique=True))
        await sqlite_adapter.insert(
            f'INSERT INTO "{users}" (email, password_hash, handle) VALUES (?, ?, ?)', "a@b.com", "x", "neo"
        )

        with pytest.raises(ConflictError):
            await sqlite_adapter.insert(
                f'INSERT INTO "{users}" (email, password_hash, handle) VALUES (?, ?, ?)', "b@b.com", "x", "neo"
            )

    async def test_updated_at_trigger_bumps_timestamp(self, sqlite_adapter, settings):
        users = settings.tables.users
        user_id = await sqlite_adapter.insert(
            f'INSERT INTO "{users}" (email, password_hash, updated_at) VALUES (?, ?, ?)',
            "a@b.com",
            "x",
            "2000-01-01 00:00:00",
        )
        await sqlite_adapter.execute(f'UPDATE "{users}" SET first_name = ? WHERE id = ?', "Ada", user_id)

        updated_at = await sqlite_adapter.fetchval(f'SELECT updated_at FROM "{users}" WHERE id = ?', user_id)
        assert not str(updated_at).startswith("2000")


# ---------------------------------------------------------------------------
# Queries and transactions
# ---------------------------------------------------------------------------

class TestQueries:
    """Tests for query helpers, error mapping and transactions."""

    async def test_insert_returns_id_and_execute_counts(self, sqlite_adapter, settings):
        users = settings.tables.users
        first = await sqlite_adapter.insert(
            f'INSERT INTO "{users}" (email, password_hash) VALUES (?, ?)', "a@b.com", "x"
        )
        second = await sqlite_adapter.insert(
            f'INSERT INTO "{users}" (email, password_hash) VALUES (?, ?)', "b@b.com", "x"
        )
        assert second == first + 1

        affected = await sqlite_adapter.execute(f'UPDATE "{users}" SET is_active = ?', False)
        assert affected == 2

    async def test_duplicate_email_is_conflict(self, sqlite_adapter, settings):
        users = settings.tables.users
        query = f'INSERT INTO "{users}" (email, password_hash) VALUES (?, ?)'
        await sqlite_adapter.insert(query, "a@b.com", "x")

        with pytest.raises(ConflictError) as exc_info:
            await sqlite_adapter.insert(query, "a@b.com", "y")

        violated = sqlite_adapter.unique_violation_columns(exc_info.value.__cause__, users)
        assert violated == {"email"}

    def test_unique_violation_columns_match_whole_names(self, settings):
        adapter = SQLiteAdapter(settings)
        exc = sqlite3.IntegrityError("UNIQUE constraint failed: email_users.backup_email")

        assert adapter.unique_violation_columns(exc, "email_users") == {"backup_email"}
        assert adapter.unique_violation_columns(exc, "users") == set()

    async def test_transaction_rolls_back_on_error(self, sqlite_adapter, settings):
        users = settings.tables.users
        with pytest.raises(RuntimeError):
            async with sqlite_adapter.transaction() as conn:
                await conn.insert(f'INSERT INTO "{users}" (email, password_hash) VALUES (?, ?)', "a@b.com", "x")
                raise RuntimeError("boom")

        assert await sqlite_adapter.fetchval(f'SELECT COUNT(*) FROM "{users}"') == 0

    async def test_nested_transaction_uses_savepoint(self, sqlite_adapter, settings):
        users = settings.tables.users
        query = f'INSERT INTO "{users}" (email, password_hash) VALUES (?, ?)'
        async with sqlite_adapter.transaction() as conn:
            await conn.insert(query, "outer@b.com", "x")
            with pytest.raises(ConflictError):
                async with conn.transaction():
                    await conn.insert(query, "inner@b.com", "x")
                    await conn.insert(query, "inner@b.com", "x")

        rows = await sqlite_adapter.fetch(f'SELECT email FROM "{users}"')
        assert [r["email"] for r in rows] == ["outer@b.com"]

    async def test_acquire_times_out_while_held(self, sqlite_adapter, settings):
        sqlite_adapter.settings = settings.model_copy(update={"pool_acquire_timeout": 0.05})
        async with sqlite_adapter.acquire():
            with pytest.raises(asyncio.TimeoutError):
                await sqlite_adapter.fetchval("SELECT 1")

    async def test_question_mark_in_literal_is_not_a_parameter(self, sqlite_adapter):
        assert await sqlite_adapter.fetchval("SELECT 'why?' AS q") == "why?"
