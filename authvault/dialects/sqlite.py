"""SQLite backend on a single aiosqlite connection."""

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from decimal import Decimal
from itertools import count
from typing import Any, Optional

import aiosqlite
import structlog

from authvault.dialects.base import AdapterConnection, SQLAdapter
from authvault.dialects.types import LogicalType
from authvault.errors import ConfigurationError
from authvault.models.schema import Column

logger = structlog.get_logger(__name__)


class SQLiteConnection(AdapterConnection):
    _savepoints = count(1)

    async def _execute(self, sql: str, args: list[Any]) -> int:
        async with self.raw.execute(sql, args) as cursor:
            return cursor.rowcount

    async def _fetchrow(self, sql: str, args: list[Any]) -> Optional[dict[str, Any]]:
        async with self.raw.execute(sql, args) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def _fetch(self, sql: str, args: list[Any]) -> list[dict[str, Any]]:
        async with self.raw.execute(sql, args) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def _insert(self, sql: str, args: list[Any]) -> int:
        async with self.raw.execute(sql, args) as cursor:
            return cursor.lastrowid

    async def _execute_ddl(self, statement: str) -> None:
        await self.raw.execute(statement)

    @asynccontextmanager
    async def transaction(self):
        """BEGIN/COMMIT, or a savepoint when a transaction is already open."""
        if self.raw.in_transaction:
            name = f"sp_{next(self._savepoints)}"
            await self.raw.execute(f"SAVEPOINT {name}")
            try:
                yield self
            except BaseException:
                await self.raw.execute(f"ROLLBACK TO SAVEPOINT {name}")
                await self.raw.execute(f"RELEASE SAVEPOINT {name}")
                raise
            await self.raw.execute(f"RELEASE SAVEPOINT {name}")
            return

        await self.raw.execute("BEGIN")
        try:
            yield self
        except BaseException:
            await self.raw.execute("ROLLBACK")
            raise
        await self.raw.execute("COMMIT")


class SQLiteAdapter(SQLAdapter):
    """aiosqlite-backed adapter.

    SQLite allows one writer at a time, so the adapter holds one connection and
    hands it out behind an acquire gate. Waiting longer than
    ``pool_acquire_timeout`` raises TimeoutError, the same as pool exhaustion
    on PostgreSQL.
    """

    name = "sqlite"
    supports_transactional_ddl = True
    add_column_requires_default_for_not_null = True
    add_column_supports_unique = False
    integrity_errors = (sqlite3.IntegrityError,)

    def __init__(self, settings):
        super().__init__(settings)
        self._connection: Optional[aiosqlite.Connection] = None
        self._gate = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        if self._connection is not None:
            return
        try:
            # isolation_level=None: transactions are opened explicitly with BEGIN
            self._connection = await aiosqlite.connect(
                self.settings.sqlite_path, isolation_level=None
            )
        except sqlite3.OperationalError as e:
            raise ConfigurationError(
                f"Cannot open SQLite database at {self.settings.sqlite_path!r}: {e}"
            ) from e
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA foreign_keys = ON")
        logger.info("database_connected", dialect=self.name, path=self.settings.sqlite_path)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("database_closed", dialect=self.name)

    @asynccontextmanager
    async def acquire(self):
        self._require_connected()
        await asyncio.wait_for(self._gate.acquire(), timeout=self.settings.pool_acquire_timeout)
        try:
            yield SQLiteConnection(self, self._connection)
        finally:
            self._gate.release()

    def is_unique_violation(self, exc: BaseException) -> bool:
        return "UNIQUE constraint failed" in str(exc)

    def unique_violation_columns(self, exc: BaseException, table: str) -> set[str]:
        """Parse 'UNIQUE constraint failed: t.a, t.b' down to the columns of `table`."""
        message = str(exc)
        marker = "UNIQUE constraint failed:"
        if marker not in message:
            return set()
        columns = set()
        for qualified in message.split(marker, 1)[1].split(","):
            owner, _, column = qualified.strip().rpartition(".")
            if owner == table:
                columns.add(column)
        return columns

    def render_placeholder(self, index: int) -> str:
        return "?"

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
            "double": "DOUBLE",
            "float": "FLOAT",
            "datetime": "TEXT",
            "date": "TEXT",
            "time": "TEXT",
            "json": "TEXT",
        }[kind]

    def boolean_literal(self, value: bool) -> str:
        return "1" if value else "0"

    def primary_key_definition(self) -> str:
        return '"id" INTEGER PRIMARY KEY AUTOINCREMENT'

    def column_exists_query(self) -> str:
        return "SELECT 1 AS present FROM pragma_table_info(?) WHERE name = ?"

    def updated_at_trigger_statements(self, table: str) -> list[str]:
        quoted = self.quote_identifier(table)
        trigger = self.quote_identifier(f"trg_{table}_updated_at"[:63])
        return [
            f"CREATE TRIGGER IF NOT EXISTS {trigger} AFTER UPDATE ON {quoted} "
            "FOR EACH ROW WHEN NEW.updated_at = OLD.updated_at "
            f"BEGIN UPDATE {quoted} SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id; END"
        ]

    def add_column_statements(self, table: str, column: Column) -> list[str]:
        # SQLite cannot ADD COLUMN ... UNIQUE; a unique index gives the same guarantee
        quoted = self.quote_identifier(table)
        statements = [
            f"ALTER TABLE {quoted} ADD COLUMN "
            f"{self.column_definition(column, include_unique=False)}"
        ]
        if column.unique:
            index = self.quote_identifier(self.index_name(table, f"{column.name}_unique"))
            statements.append(
                f"CREATE UNIQUE INDEX IF NOT EXISTS {index} "
                f"ON {quoted} ({self.quote_identifier(column.name)})"
            )
        return statements

    def adapt_param(self, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat(sep=" ")
        if isinstance(value, (date, time)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return str(value)
        return super().adapt_param(value)
