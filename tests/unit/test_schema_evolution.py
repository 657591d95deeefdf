"""Unit tests for guarded schema changes."""

from unittest.mock import patch

import pytest
from structlog.testing import capture_logs

from authvault.errors import ConflictError, MigrationError, ValidationError
from authvault.models.schema import FieldDescriptor
from authvault.services.credential_store import CredentialStore
from authvault.services.schema_evolution import ATOMIC_UNAVAILABLE, SchemaEvolution


@pytest.fixture
def store(sqlite_adapter, settings):
    return CredentialStore(sqlite_adapter, settings.tables)


@pytest.fixture
def evolution(sqlite_adapter, settings, store):
    return SchemaEvolution(sqlite_adapter, settings.tables, store)


async def _seed_user(adapter, settings):
    await adapter.insert(
        f'INSERT INTO "{settings.tables.users}" (email, password_hash) VALUES (?, ?)', "a@b.com", "x"
    )


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

class TestGuards:
    """Tests for the checks that run before any DDL."""

    @pytest.mark.parametrize("confirmed", [False, None, "yes", 1])
    async def test_requires_explicit_confirmation(self, evolution, confirmed):
        with pytest.raises(MigrationError, match="CONFIRMATION REQUIRED"):
            await evolution.add_column({"name": "age", "type": "INTEGER"}, confirmed=confirmed)

    async def test_confirmation_checked_before_name(self, evolution):
        with pytest.raises(MigrationError, match="CONFIRMATION REQUIRED"):
            await evolution.add_column({"name": "bad name", "type": "NOPE"})

    async def test_reserved_name_rejected(self, evolution):
        with pytest.raises(MigrationError, match="reserved"):
            await evolution.add_column({"name": "password_hash", "type": "TEXT"}, confirmed=True)

    async def test_invalid_name_rejected(self, evolution, sqlite_adapter, settings):
        with pytest.raises(ValidationError):
            await evolution.add_column({"name": "age; DROP TABLE x", "type": "INTEGER"}, confirmed=True)
        assert await sqlite_adapter.column_exists(settings.tables.users, "age") is False

    async def test_invalid_type_rejected(self, evolution):
        with pytest.raises(ValidationError):
            await evolution.add_column({"name": "age", "type": "INTEGER); DROP"}, confirmed=True)

    async def test_required_without_default_rejected_on_sqlite(self, evolution, sqlite_adapter, settings):
        with pytest.raises(MigrationError, match="without a default"):
            await evolution.add_column(
                {"name": "tier", "type": "VARCHAR(10)", "required": True}, confirmed=True
            )
        assert await sqlite_adapter.column_exists(settings.tables.users, "tier") is False

    async def test_required_without_default_on_postgres_with_rows(self, mock_pg, pg_settings):
        adapter, conn = mock_pg
        # column_exists -> missing, table_has_rows -> has rows
        conn.fetchrow.side_effect = [None, {"present": 1}]
        evolution = SchemaEvolution(adapter, pg_settings.tables)

        with pytest.raises(MigrationError, match="already has rows"):
            await evolution.add_column(
                {"name": "tier", "type": "VARCHAR(10)", "required": True}, confirmed=True
            )
        assert not any(s.startswith("ALTER TABLE") for s in conn.executed_sql())

    async def test_required_without_default_on_empty_postgres_table(self, mock_pg, pg_settings):
        adapter, conn = mock_pg
        conn.fetchrow.side_effect = [None, None]
        evolution = SchemaEvolution(adapter, pg_settings.tables)

        result = await evolution.add_column(
            {"name": "tier", "type": "VARCHAR(10)", "required": True}, confirmed=True
        )

        assert result.success
        assert conn.executed_sql() == [
            f'ALTER TABLE "{pg_settings.users_table}" ADD COLUMN "tier" VARCHAR(10) NOT NULL'
        ]

    async def test_capacity_counts_existing_fields(self, evolution, store):
        for i in range(50):
            store.register_field(FieldDescriptor(name=f"f{i}", type="INTEGER"))
        with pytest.raises(ValidationError, match="At most 50"):
            await evolution.add_column({"name": "one_more", "type": "INTEGER"}, confirmed=True)


# ---------------------------------------------------------------------------
# add_column
# ---------------------------------------------------------------------------

class TestAddColumn:
    """Tests for adding one column."""

    async def test_adds_and_registers(self, evolution, store, sqlite_adapter, settings):
        await _seed_user(sqlite_adapter, settings)

        with capture_logs() as logs:
            result = await evolution.add_column(
                {"name": "plan", "type": "VARCHAR(10)", "required": True, "defaultValue": "free"},
                confirmed=True,
            )

        assert result.success and not result.skipped
        assert "plan" in store.custom_fields
        assert any(log["event"] == "dangerous_column_added" for log in logs)
        user = await store.find_user_by_email("a@b.com")
        assert user.custom_fields["plan"] == "free"

    async def test_existing_column_skipped(self, evolution):
        await evolution.add_column({"name": "age", "type": "INTEGER"}, confirmed=True)
        result = await evolution.add_column({"name": "age", "type": "INTEGER"}, confirmed=True)
        assert result.skipped is True
        assert result.reason == "Column already exists"

    async def test_existing_column_fails_without_skip(self, evolution):
        await evolution.add_column({"name": "age", "type": "INTEGER"}, confirmed=True)
        with pytest.raises(MigrationError, match="already exists"):
            await evolution.add_column({"name": "age", "type": "INTEGER"}, confirmed=True, skip_if_exists=False)


# ---------------------------------------------------------------------------
# migrate_schema
# ---------------------------------------------------------------------------

class TestMigrateSchema:
    """Tests for batch migrations."""

    async def test_atomic_batch(self, evolution, store):
        report = await evolution.migrate_schema(
            [{"name": "age", "type": "INTEGER"}, {"name": "bio", "type": "TEXT"}], confirmed=True
        )

        assert report.success and report.atomic
        assert report.fields_added == 2
        assert report.warnings == []
        assert {"age", "bio"} <= set(store.custom_fields)

    async def test_duplicates_rejected(self, evolution):
        with pytest.raises(ConflictError, match="Duplicate"):
            await evolution.migrate_schema(
                [{"name": "age", "type": "INTEGER"}, {"name": "Age", "type": "TEXT"}], confirmed=True
            )

    async def test_reports_skipped_in_order(self, evolution):
        await evolution.add_column({"name": "bio", "type": "TEXT"}, confirmed=True)
        report = await evolution.migrate_schema(
            [{"name": "age", "type": "INTEGER"}, {"name": "bio", "type": "TEXT"}], confirmed=True
        )
        assert [r.column for r in report.columns] == ["age", "bio"]
        assert report.fields_added == 1
        assert report.fields_skipped == 1

    async def test_atomic_failure_rolls_back(self, evolution, sqlite_adapter, settings):
        original = sqlite_adapter.add_column

        async def fail_on_second(table, column, conn=None):
            if column.name == "bio":
                raise RuntimeError("disk full")
            await original(table, column, conn=conn)

        with patch.object(sqlite_adapter, "add_column", side_effect=fail_on_second):
            with pytest.raises(RuntimeError):
                await evolution.migrate_schema(
                    [{"name": "age", "type": "INTEGER"}, {"name": "bio", "type": "TEXT"}], confirmed=True
                )

        assert await sqlite_adapter.column_exists(settings.tables.users, "age") is False

    async def test_non_atomic_failure_stops_batch(self, evolution, sqlite_adapter, settings, store):
        original = sqlite_adapter.add_column

        async def fail_on_second(table, column, conn=None):
            if column.name == "bio":
                raise RuntimeError("disk full")
            await original(table, column, conn=conn)

        with patch.object(sqlite_adapter, "add_column", side_effect=fail_on_second):
            report = await evolution.migrate_schema(
                [
                    {"name": "age", "type": "INTEGER"},
                    {"name": "bio", "type": "TEXT"},
                    {"name": "city", "type": "TEXT"},
                ],
                confirmed=True,
                use_transaction=False,
            )

        assert report.success is False
        assert report.atomic is False
        assert ATOMIC_UNAVAILABLE in report.warnings
        assert [(r.column, r.success) for r in report.columns] == [("age", True), ("bio", False)]
        assert await sqlite_adapter.column_exists(settings.tables.users, "age") is True
        assert await sqlite_adapter.column_exists(settings.tables.users, "city") is False
        assert "age" in store.custom_fields
        assert "bio" not in store.custom_fields

    async def test_empty_batch_rejected(self, evolution):
        with pytest.raises(ValidationError):
            await evolution.migrate_schema([], confirmed=True)
