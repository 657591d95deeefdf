"""Dialect adapter contract shared by the PostgreSQL and SQLite backends.

Services write queries once with canonical ``?`` placeholders and quote every
dynamic identifier through ``quote_identifier``. Each backend supplies its
placeholder style, its type rendering and its driver calls.
"""

import json
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, contextmanager
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Iterable, Optional, Sequence

import structlog

from authvault.dialects.types import LogicalType, coerce_value, parse_type
from authvault.errors import ConfigurationError, ConflictError, ValidationError
from authvault.models.schema import (
    IDENTIFIER_RE,
    LOGIN_ATTEMPT_COLUMNS,
    MAX_CUSTOM_FIELDS,
    MAX_IDENTIFIER_LENGTH,
    REFRESH_TOKEN_COLUMNS,
    USER_COLUMNS,
    VERIFICATION_TOKEN_COLUMNS,
    Column,
    FieldDescriptor,
    TableNames,
    coerce_descriptor,
)

logger = structlog.get_logger(__name__)

PLACEHOLDER = "?"

_DOLLAR_TAG_RE = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")


def quote_identifier(identifier: str) -> str:
    """Validate an identifier and wrap it in double quotes.

    Raises:
        ValidationError: If the identifier does not match [A-Za-z_][A-Za-z0-9_]*
    """
    if not isinstance(identifier, str) or not IDENTIFIER_RE.fullmatch(identifier):
        raise ValidationError(
            f"Invalid identifier: {identifier!r}. Must start with a letter or "
            "underscore and contain only alphanumeric characters and underscores."
        )
    return '"' + identifier.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Render a string as a single-quoted SQL literal."""
    if "\x00" in value:
        raise ValidationError("String literals cannot contain NUL characters")
    return "'" + value.replace("'", "''") + "'"


def scan_placeholders(query: str, render: Callable[[int], str]) -> tuple[str, int]:
    """Rewrite every ``?`` placeholder outside literals and comments.

    Single-quoted strings, double-quoted identifiers, dollar-quoted bodies,
    ``--`` line comments and ``/* */`` block comments are copied untouched.

    Args:
        query: Query written with canonical ``?`` placeholders
        render: Maps the 1-based placeholder index to the native marker

    Returns:
        Tuple of (rewritten query, number of placeholders found)
    """
    out: list[str] = []
    count = 0
    i = 0
    n = len(query)
    while i < n:
        ch = query[i]
        if ch in ("'", '"'):
            end = i + 1
            while end < n:
                if query[end] == ch:
                    # doubled quote is an escape, not a terminator
                    if end + 1 < n and query[end + 1] == ch:
                        end += 2
                        continue
                    break
                end += 1
            out.append(query[i : end + 1])
            i = end + 1
            continue
        if query.startswith("--", i):
            end = query.find("\n", i)
            end = n if end == -1 else end
            out.append(query[i:end])
            i = end
            continue
        if query.startswith("/*", i):
            end = query.find("*/", i + 2)
            end = n if end == -1 else end + 2
            out.append(query[i:end])
            i = end
            continue
        if ch == "$":
            tag = _DOLLAR_TAG_RE.match(query, i)
            if tag:
                end = query.find(tag.group(0), tag.end())
                end = n if end == -1 else end + len(tag.group(0))
                out.append(query[i:end])
                i = end
                continue
        if ch == PLACEHOLDER:
            count += 1
            out.append(render(count))
        else:
            out.append(ch)
        i += 1
    return "".join(out), count


class AdapterConnection(ABC):
    """One checked-out driver connection, speaking canonical SQL.

    Unique-constraint violations raised by the driver become ConflictError;
    every other driver error propagates unchanged.
    """

    def __init__(self, adapter: "SQLAdapter", raw: Any):
        self.adapter = adapter
        self.raw = raw

    @contextmanager
    def _map_errors(self):
        try:
            yield
        except self.adapter.integrity_errors as e:
            if self.adapter.is_unique_violation(e):
                raise ConflictError(f"Duplicate value violates a unique constraint: {e}") from e
            raise

    def _prepare(self, query: str, params: Sequence[Any]) -> tuple[str, list[Any]]:
        sql = self.adapter.translate(query, params)
        return sql, [self.adapter.adapt_param(p) for p in params]

    async def execute(self, query: str, *params: Any) -> int:
        """Run a statement and return the number of affected rows."""
        sql, args = self._prepare(query, params)
        with self._map_errors():
            return await self._execute(sql, args)

    async def fetchrow(self, query: str, *params: Any) -> Optional[dict[str, Any]]:
        sql, args = self._prepare(query, params)
        with self._map_errors():
            return await self._fetchrow(sql, args)

    async def fetch(self, query: str, *params: Any) -> list[dict[str, Any]]:
        sql, args = self._prepare(query, params)
        with self._map_errors():
            return await self._fetch(sql, args)

    async def fetchval(self, query: str, *params: Any) -> Any:
        row = await self.fetchrow(query, *params)
        if row is None:
            return None
        return next(iter(row.values()))

    async def insert(self, query: str, *params: Any) -> int:
        """Run an INSERT and return the generated id."""
        sql, args = self._prepare(query, params)
        with self._map_errors():
            return await self._insert(sql, args)

    async def execute_ddl(self, statement: str) -> None:
        """Run a single parameterless statement built by this package."""
        with self._map_errors():
            await self._execute_ddl(statement)

    @abstractmethod
    async def _execute(self, sql: str, args: list[Any]) -> int: ...

    @abstractmethod
    async def _fetchrow(self, sql: str, args: list[Any]) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    async def _fetch(self, sql: str, args: list[Any]) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def _insert(self, sql: str, args: list[Any]) -> int: ...

    @abstractmethod
    async def _execute_ddl(self, statement: str) -> None: ...

    @abstractmethod
    def transaction(self):
        """Async context manager wrapping a transaction (or savepoint) on this connection."""


class SQLAdapter(ABC):
    """Base class for a dialect backend.

    Subclasses own their pool or connection as instance state and expose it
    through ``acquire()``. Capability flags describe what the engine can do so
    callers (schema evolution in particular) decide up front instead of
    discovering limits mid-migration.
    """

    name = "generic"
    supports_transactional_ddl = True
    add_column_requires_default_for_not_null = False
    add_column_supports_unique = True
    integrity_errors: tuple[type[BaseException], ...] = ()

    def __init__(self, settings):
        self.settings = settings

    # Lifecycle

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    def acquire(self):
        """Async context manager yielding an AdapterConnection.

        Raises TimeoutError when no connection frees up within
        ``pool_acquire_timeout`` seconds.
        """

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    def _require_connected(self) -> None:
        if not self.is_connected:
            raise ConfigurationError(f"{self.name} adapter is not connected. Call connect() first.")

    # Dialect primitives

    quote_identifier = staticmethod(quote_identifier)

    @abstractmethod
    def render_placeholder(self, index: int) -> str: ...

    @abstractmethod
    def render_type(self, lt: LogicalType) -> str: ...

    @abstractmethod
    def boolean_literal(self, value: bool) -> str: ...

    @abstractmethod
    def primary_key_definition(self) -> str: ...

    @abstractmethod
    def updated_at_trigger_statements(self, table: str) -> list[str]: ...

    @abstractmethod
    def column_exists_query(self) -> str:
        """Canonical query taking (table, column) and returning a row when it exists."""

    def is_unique_violation(self, exc: BaseException) -> bool:
        return True

    def unique_violation_columns(self, exc: BaseException, table: str) -> set[str]:
        """Columns of `table` named by a unique-violation driver error, if it says."""
        return set()

    def adapt_param(self, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value

    def translate(self, query: str, params: Sequence[Any] = ()) -> str:
        """Rewrite canonical placeholders to the native style.

        Raises:
            ValidationError: If the placeholder count differs from len(params)
        """
        sql, count = scan_placeholders(query, self.render_placeholder)
        if count != len(params):
            raise ValidationError(
                f"Query has {count} placeholders but {len(params)} parameters were given"
            )
        return sql

    def index_name(self, table: str, suffix: str) -> str:
        return f"idx_{table}_{suffix}"[:MAX_IDENTIFIER_LENGTH]

    def render_default(self, lt: LogicalType, value: Any, column: str) -> str:
        """Render a caller-supplied default as a SQL literal after type-checking it."""
        value = coerce_value(lt, value, column)
        if isinstance(value, bool):
            return self.boolean_literal(value)
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, (datetime, date, time)):
            return quote_literal(value.isoformat())
        if isinstance(value, (dict, list)):
            return quote_literal(json.dumps(value))
        return quote_literal(value)

    def column_definition(self, column: Column, include_unique: bool = True) -> str:
        """Compile one column to a DDL fragment from its parsed parts."""
        lt = parse_type(column.type)
        parts = [self.quote_identifier(column.name), self.render_type(lt)]
        if column.required:
            parts.append("NOT NULL")
        if column.default_sql is not None:
            parts.append(f"DEFAULT {column.default_sql}")
        elif column.default_value is not None:
            parts.append(f"DEFAULT {self.render_default(lt, column.default_value, column.name)}")
        if column.unique and include_unique:
            parts.append("UNIQUE")
        if lt.kind == "enum":
            logger.warning(
                "enum_type_fallback",
                field=column.name,
                dialect=self.name,
                allowed_values=list(lt.enum_values),
                note="stored as VARCHAR(255); allowed values are enforced on write",
            )
        return " ".join(parts)

    def add_column_statements(self, table: str, column: Column) -> list[str]:
        return [
            f"ALTER TABLE {self.quote_identifier(table)} ADD COLUMN {self.column_definition(column)}"
        ]

    # Connection-scoped helpers

    @asynccontextmanager
    async def using(self, conn: Optional[AdapterConnection] = None) -> AsyncIterator[AdapterConnection]:
        """Yield ``conn`` if given, otherwise a freshly acquired connection."""
        if conn is not None:
            yield conn
        else:
            async with self.acquire() as acquired:
                yield acquired

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AdapterConnection]:
        """Acquire a connection and run the block inside one transaction."""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *params: Any) -> int:
        async with self.acquire() as conn:
            return await conn.execute(query, *params)

    async def fetchrow(self, query: str, *params: Any) -> Optional[dict[str, Any]]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *params)

    async def fetch(self, query: str, *params: Any) -> list[dict[str, Any]]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *params)

    async def fetchval(self, query: str, *params: Any) -> Any:
        async with self.acquire() as conn:
            return await conn.fetchval(query, *params)

    async def insert(self, query: str, *params: Any) -> int:
        async with self.acquire() as conn:
            return await conn.insert(query, *params)

    # Schema

    def table_statements(
        self, tables: TableNames, fields: Sequence[FieldDescriptor] = ()
    ) -> list[str]:
        """Build the CREATE TABLE statements for all four tables."""
        pk = self.primary_key_definition()
        users = self.quote_identifier(tables.users)

        def body(columns: Iterable[Column], extra: Sequence[str] = ()) -> str:
            defs = [pk] + [self.column_definition(c) for c in columns] + list(extra)
            return ",\n    ".join(defs)

        user_columns = list(USER_COLUMNS) + [f.to_column() for f in fields]
        fk = f"FOREIGN KEY (\"user_id\") REFERENCES {users}(\"id\") ON DELETE CASCADE"
        one_per_purpose = "UNIQUE (\"user_id\", \"purpose\")"
        return [
            f"CREATE TABLE IF NOT EXISTS {users} (\n    {body(user_columns)}\n)",
            f"CREATE TABLE IF NOT EXISTS {self.quote_identifier(tables.refresh_tokens)} "
            f"(\n    {body(REFRESH_TOKEN_COLUMNS, [fk])}\n)",
            f"CREATE TABLE IF NOT EXISTS {self.quote_identifier(tables.login_attempts)} "
            f"(\n    {body(LOGIN_ATTEMPT_COLUMNS)}\n)",
            f"CREATE TABLE IF NOT EXISTS {self.quote_identifier(tables.verification_tokens)} "
            f"(\n    {body(VERIFICATION_TOKEN_COLUMNS, [fk, one_per_purpose])}\n)",
        ]

    def index_statements(self, tables: TableNames) -> list[str]:
        specs = (
            (tables.refresh_tokens, "user_revoked", ("user_id", "revoked")),
            (tables.refresh_tokens, "expires", ("expires_at",)),
            (tables.login_attempts, "email_attempted", ("email", "attempted_at")),
            (tables.login_attempts, "attempted", ("attempted_at",)),
            (tables.verification_tokens, "digest", ("token_digest",)),
            (tables.verification_tokens, "expires", ("expires_at",)),
        )
        statements = []
        for table, suffix, columns in specs:
            cols = ", ".join(self.quote_identifier(c) for c in columns)
            statements.append(
                f"CREATE INDEX IF NOT EXISTS {self.quote_identifier(self.index_name(table, suffix))} "
                f"ON {self.quote_identifier(table)} ({cols})"
            )
        return statements

    async def create_tables(
        self, tables: TableNames, fields: Sequence[FieldDescriptor | dict] = ()
    ) -> None:
        """Create the four tables and the updated_at trigger, idempotently.

        Custom fields declared here only take effect when the users table is
        created. Fields missing from an existing table are logged and left to
        schema evolution.

        Raises:
            ValidationError: For bad or reserved field names, bad types or too many fields
            ConflictError: For duplicate field names
        """
        descriptors = validate_descriptors(fields)
        statements = self.table_statements(tables, descriptors)

        async with self.acquire() as conn:
            async with conn.transaction():
                for statement in statements:
                    await conn.execute_ddl(statement)
                for statement in self.updated_at_trigger_statements(tables.users):
                    await conn.execute_ddl(statement)

            for descriptor in descriptors:
                if not await self.column_exists(tables.users, descriptor.name, conn=conn):
                    logger.warning(
                        "custom_field_missing",
                        table=tables.users,
                        field=descriptor.name,
                        hint="table already existed; use dangerously_add_column to add it",
                    )

        logger.info("tables_created", dialect=self.name, custom_fields=len(descriptors))

    async def create_indexes(self, tables: TableNames) -> None:
        async with self.acquire() as conn:
            for statement in self.index_statements(tables):
                await conn.execute_ddl(statement)
        logger.info("indexes_created", dialect=self.name)

    async def column_exists(
        self, table: str, column: str, conn: Optional[AdapterConnection] = None
    ) -> bool:
        async with self.using(conn) as c:
            return await c.fetchrow(self.column_exists_query(), table, column) is not None

    async def table_has_rows(self, table: str, conn: Optional[AdapterConnection] = None) -> bool:
        async with self.using(conn) as c:
            row = await c.fetchrow(f"SELECT 1 AS present FROM {self.quote_identifier(table)} LIMIT 1")
            return row is not None

    async def add_column(
        self, table: str, column: Column, conn: Optional[AdapterConnection] = None
    ) -> None:
        async with self.using(conn) as c:
            for statement in self.add_column_statements(table, column):
                await c.execute_ddl(statement)

    async def health_check(self) -> bool:
        """Check that the database answers a trivial query."""
        try:
            async with self.acquire() as conn:
                return await conn.fetchval("SELECT 1 AS ok") == 1
        except Exception as e:
            logger.error("database_health_check_failed", dialect=self.name, error=str(e))
            return False


def validate_descriptors(fields: Sequence[FieldDescriptor | dict]) -> list[FieldDescriptor]:
    """Coerce and validate a batch of custom field descriptors before any DDL.

    Raises:
        ValidationError: For bad names/types, reserved names, or too many fields
        ConflictError: For duplicate names within the batch
    """
    descriptors = [coerce_descriptor(f) for f in fields]
    if len(descriptors) > MAX_CUSTOM_FIELDS:
        raise ValidationError(f"At most {MAX_CUSTOM_FIELDS} custom fields are allowed")
    seen: set[str] = set()
    for descriptor in descriptors:
        if descriptor.is_reserved:
            raise ValidationError(f"Field name '{descriptor.name}' is reserved")
        key = descriptor.name.lower()
        if key in seen:
            raise ConflictError(f"Duplicate field name: '{descriptor.name}'")
        seen.add(key)
    return descriptors
