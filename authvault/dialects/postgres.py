"""PostgreSQL backend on an asyncpg connection pool."""

import re
from contextlib import asynccontextmanager
from typing import Any, Optional

import asyncpg
import structlog

from authvault.dialects.base import AdapterConnection, SQLAdapter
from authvault.dialects.types import LogicalType
from authvault.errors import ConfigurationError

logger = structlog.get_logger(__name__)

# Errors that mean the settings are wrong rather than the server being unreachable
_CONFIG_ERRORS = (
    asyncpg.InvalidAuthorizationSpecificationError,
    asyncpg.InvalidPasswordError,
    asyncpg.InvalidCatalogNameError,
)

_KEY_DETAIL_RE = re.compile(r"Key \((?P<columns>[^)]*)\)=")


def affected_rows(status: str) -> int:
    """Parse the row count out of an asyncpg status string like 'UPDATE 2'."""
    parts = (status or "").split()
    if parts and parts[-1].isdigit():
        return int(parts[-1])
    return 0


class PostgresConnection(AdapterConnection):
    async def _execute(self, sql: str, args: list[Any]) -> int:
        status = await self.raw.execute(sql, *args)
        return affected_rows(status)

    async def _fetchrow(self, sql: str, args: list[Any]) -> Optional[dict[str, Any]]:
        row = await self.raw.fetchrow(sql, *args)
        return dict(row) if row is not None else None

    async def _fetch(self, sql: str, args: list[Any]) -> list[dict[str, Any]]:
        rows = await self.raw.fetch(sql, *args)
        return [dict(row) for row in rows]

    async def _insert(self, sql: str, args: list[Any]) -> int:
        return await self.raw.fetchval(f"{sql} RETURNING id", *args)

    async def _execute_ddl(self, statement: str) -> None:
        await self.raw.execute(statement)

    def transaction(self):
        # Nested calls become savepoints
        return self.raw.transaction()


class PostgresAdapter(SQLAdapter):
    """asyncpg-backed adapter. The pool belongs to this instance."""

    name = "postgres"
    supports_transactional_ddl = True
    add_column_requires_default_for_not_null = False
    add_column_supports_unique = True
    integrity_errors = (asyncpg.UniqueViolationError,)

    def __init__(self, settings):
        super().__init__(settings)
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        """Create the connection pool."""
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self.settings.postgres_url,
                min_size=self.settings.pool_min_size,
                max_size=self.settings.pool_max_size,
                command_timeout=self.settings.command_timeout,
            )
        except _CONFIG_ERRORS as e:
            logger.error("database_pool_failed", error=str(e))
            raise ConfigurationError(f"PostgreSQL rejected the connection settings: {e}") from e
        except ValueError as e:
            # asyncpg raises ValueError for malformed DSNs
            raise ConfigurationError(f"Invalid PostgreSQL DSN: {e}") from e

        logger.info(
            "database_pool_created",
            min_size=self.settings.pool_min_size,
            max_size=self.settings.pool_max_size,
        )

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        self._require_connected()
        async with self._pool.acquire(timeout=self.settings.pool_acquire_timeout) as conn:
            yield PostgresConnection(self, conn)

    def unique_violation_columns(self, exc: BaseException, table: str) -> set[str]:
        """Read the key columns from the error detail, e.g. 'Key (email)=(a@b.c) already exists.'"""
        table_name = getattr(exc, "table_name", None)
        if table_name is not None and table_name != table:
            return set()
        match = _KEY_DETAIL_RE.match(getattr(exc, "detail", None) or "")
        if match:
            return {part.strip().strip('"') for part in match.group("columns").split(",")}
        # Inline UNIQUE constraints are named <table>_<column>_key
        constraint = getattr(exc, "constraint_name", None) or ""
        prefix, suffix = f"{table}_", "_key"
        if constraint.startswith(prefix) and constraint.endswith(suffix):
            return {constraint[len(prefix):-len(suffix)]}
        return set()

    def render_placeholder(self, index: int) -> str:
        return f"${index}"

    def render_type(self, lt: LogicalType) -> str:
        kind = lt.kind
        if kind == "enum":
            return "VARCHAR(255)"
        if kind in ("varchar", "char"):
            return f"{kind.upper()}({lt.length or 255})"
        if kind == "decimal":
            if lt.length is None:
                return "NUMERIC"
            return f"NUMERIC({lt.length},{lt.scale or 0})"
        return {
            "boolean": "BOOLEAN",
            "bigint": "BIGINT",
            "smallint": "SMALLINT",
            "integer": "INTEGER",
            "text": "TEXT",
            "double": "DOUBLE PRECISION",
            "float": "REAL",
            "datetime": "TIMESTAMP",
            "date": "DATE",
            "time": "TIME",
            "json": "JSONB",
        }[kind]

    def boolean_literal(self, value: bool) -> str:
        return "TRUE" if value else "FALSE"

    def primary_key_definition(self) -> str:
        return '"id" SERIAL PRIMARY KEY'

    def column_exists_query(self) -> str:
        return (
            "SELECT 1 AS present FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = ? AND column_name = ?"
        )

    def updated_at_trigger_statements(self, table: str) -> list[str]:
        quoted = self.quote_identifier(table)
        function = self.quote_identifier(f"{table}_set_updated_at"[:63])
        trigger = self.quote_identifier(f"trg_{table}_updated_at"[:63])
        return [
            f"CREATE OR REPLACE FUNCTION {function}() RETURNS TRIGGER AS $$\n"
            "BEGIN\n"
            "    NEW.updated_at = CURRENT_TIMESTAMP;\n"
            "    RETURN NEW;\n"
            "END;\n"
            "$$ LANGUAGE plpgsql",
            f"DROP TRIGGER IF EXISTS {trigger} ON {quoted}",
            f"CREATE TRIGGER {trigger} BEFORE UPDATE ON {quoted} "
            f"FOR EACH ROW EXECUTE FUNCTION {function}()",
        ]
