"""User records: creation, lookup and guarded updates."""

import json
from typing import Any, Optional

import structlog

from authvault.dialects.base import AdapterConnection, SQLAdapter
from authvault.dialects.types import coerce_value, parse_type
from authvault.errors import ConflictError, NotFoundError, ValidationError
from authvault.models.schema import USER_COLUMNS, Column, FieldDescriptor, TableNames
from authvault.models.user import User, normalize_email

logger = structlog.get_logger(__name__)

MAX_CREATE_FIELDS = 50
MAX_UPDATE_FIELDS = 30

_BUILTIN_COLUMNS = {c.name: c for c in USER_COLUMNS}
_CREATABLE_BUILTINS = ("email", "password_hash", "first_name", "last_name", "email_verified", "is_active")
_UPDATABLE_BUILTINS = ("first_name", "last_name", "is_active")
_SILENTLY_STRIPPED = ("id", "created_at", "updated_at")


class CredentialStore:
    """Reads and writes the users table.

    Every column name that reaches SQL is either a built-in column or a
    registered custom field, and is quoted with the adapter's identifier
    quoting. Values are type-checked against their column before any SQL is
    built.
    """

    def __init__(
        self,
        adapter: SQLAdapter,
        tables: TableNames,
        fields: tuple[FieldDescriptor, ...] = (),
    ):
        self.adapter = adapter
        self.tables = tables
        self._fields: dict[str, FieldDescriptor] = {}
        for descriptor in fields:
            self.register_field(descriptor)

    @property
    def custom_fields(self) -> dict[str, FieldDescriptor]:
        return dict(self._fields)

    def register_field(self, descriptor: FieldDescriptor) -> None:
        """Make a custom column writable and readable through this store."""
        self._fields[descriptor.name] = descriptor

    @property
    def _table(self) -> str:
        return self.adapter.quote_identifier(self.tables.users)

    def _column(self, name: str) -> Column:
        if name in self._fields:
            return self._fields[name].to_column()
        return _BUILTIN_COLUMNS[name]

    def _coerce(self, values: dict[str, Any], allowed: set[str]) -> dict[str, Any]:
        unknown = sorted(set(values) - allowed)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(unknown)}")
        coerced = {}
        for name, value in values.items():
            column = self._column(name)
            if value is None and column.required:
                raise ValidationError(f"Field '{name}' is required")
            coerced[name] = coerce_value(parse_type(column.type), value, name)
        return coerced

    def _to_user(self, row: dict[str, Any]) -> User:
        row = dict(row)
        row.pop("password_hash", None)
        for name, descriptor in self._fields.items():
            value = row.get(name)
            if value is None:
                continue
            kind = parse_type(descriptor.type).kind
            if kind == "boolean":
                row[name] = bool(value)
            elif kind == "json" and isinstance(value, str):
                row[name] = json.loads(value)
        return User.model_validate(row)

    async def create_user(
        self, data: dict[str, Any], conn: Optional[AdapterConnection] = None
    ) -> User:
        """Insert a user.

        Args:
            data: email, password_hash, optional names and custom field values
            conn: Optional connection to run on (e.g. inside a transaction)

        Returns:
            The created user

        Raises:
            ValidationError: For a plaintext password, unknown keys, too many
                keys, missing required values or badly typed values
            ConflictError: If the email (or another unique field) is taken
        """
        if len(data) > MAX_CREATE_FIELDS:
            raise ValidationError(f"At most {MAX_CREATE_FIELDS} fields can be set on create")
        if "password" in data:
            raise ValidationError("Plaintext passwords are never stored; pass password_hash")
        if not data.get("email") or not isinstance(data["email"], str):
            raise ValidationError("Field 'email' is required")
        if not data.get("password_hash"):
            raise ValidationError("Field 'password_hash' is required")

        values = dict(data)
        values["email"] = normalize_email(values["email"])
        allowed = set(_CREATABLE_BUILTINS) | set(self._fields)
        values = self._coerce(values, allowed)

        missing = [
            name
            for name, d in self._fields.items()
            if d.required and d.default_value is None and values.get(name) is None
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        columns = ", ".join(self.adapter.quote_identifier(name) for name in values)
        placeholders = ", ".join("?" for _ in values)
        query = f"INSERT INTO {self._table} ({columns}) VALUES ({placeholders})"

        async with self.adapter.using(conn) as c:
            try:
                user_id = await c.insert(query, *values.values())
            except ConflictError as e:
                violated = self.adapter.unique_violation_columns(e.__cause__ or e, self.tables.users)
                if "email" in violated:
                    raise ConflictError("User with this email already exists") from e
                raise
            user = await self.find_user_by_id(user_id, conn=c)

        logger.info("user_created", user_id=user_id)
        return user

    async def find_user_by_email(
        self, email: str, conn: Optional[AdapterConnection] = None
    ) -> Optional[User]:
        found = await self.find_credentials_by_email(email, conn=conn)
        return found[0] if found else None

    async def find_credentials_by_email(
        self, email: str, conn: Optional[AdapterConnection] = None
    ) -> Optional[tuple[User, str]]:
        """Look up a user and their password hash by email.

        Returns:
            Tuple of (User, password_hash) if found, None otherwise
        """
        if not isinstance(email, str) or not email.strip():
            return None
        async with self.adapter.using(conn) as c:
            row = await c.fetchrow(
                f"SELECT * FROM {self._table} WHERE email = ?", normalize_email(email)
            )
        if row is None:
            return None
        return self._to_user(row), row["password_hash"]

    async def find_user_by_id(
        self, user_id: int, conn: Optional[AdapterConnection] = None
    ) -> Optional[User]:
        async with self.adapter.using(conn) as c:
            row = await c.fetchrow(f"SELECT * FROM {self._table} WHERE id = ?", user_id)
        return self._to_user(row) if row else None

    async def update_user(
        self, user_id: int, updates: dict[str, Any], conn: Optional[AdapterConnection] = None
    ) -> User:
        """Update profile and custom fields.

        id, created_at and updated_at are dropped silently. Email and password
        changes have their own flows and are rejected here.

        Raises:
            ValidationError: For forbidden, unknown, badly typed or too many fields
            NotFoundError: If the user does not exist
        """
        updates = {k: v for k, v in updates.items() if k not in _SILENTLY_STRIPPED}
        if "email" in updates:
            raise ValidationError("Email cannot be changed here; use a verified email-change flow")
        if "password" in updates or "password_hash" in updates:
            raise ValidationError("Use change_password or the password reset flow to change a password")
        if len(updates) > MAX_UPDATE_FIELDS:
            raise ValidationError(f"At most {MAX_UPDATE_FIELDS} fields can be updated at once")
        if not updates:
            raise ValidationError("No fields to update")

        values = self._coerce(updates, set(_UPDATABLE_BUILTINS) | set(self._fields))
        assignments = ", ".join(f"{self.adapter.quote_identifier(name)} = ?" for name in values)

        async with self.adapter.using(conn) as c:
            affected = await c.execute(
                f"UPDATE {self._table} SET {assignments} WHERE id = ?",
                *values.values(),
                user_id,
            )
            if affected == 0:
                raise NotFoundError(f"User {user_id} not found")
            user = await self.find_user_by_id(user_id, conn=c)

        logger.info("user_updated", user_id=user_id, fields=sorted(values))
        return user

    async def set_password_hash(
        self, user_id: int, password_hash: str, conn: Optional[AdapterConnection] = None
    ) -> bool:
        async with self.adapter.using(conn) as c:
            affected = await c.execute(
                f"UPDATE {self._table} SET password_hash = ? WHERE id = ?", password_hash, user_id
            )
        return affected == 1

    async def mark_email_verified(
        self, user_id: int, conn: Optional[AdapterConnection] = None
    ) -> bool:
        async with self.adapter.using(conn) as c:
            affected = await c.execute(
                f"UPDATE {self._table} SET email_verified = TRUE WHERE id = ?", user_id
            )
        return affected == 1

    async def is_email_verified(self, user_id: int) -> bool:
        """Raises NotFoundError if the user does not exist."""
        user = await self.find_user_by_id(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user.email_verified

    async def get_user_count(self) -> int:
        count = await self.adapter.fetchval(f"SELECT COUNT(*) AS total FROM {self._table}")
        return int(count or 0)
