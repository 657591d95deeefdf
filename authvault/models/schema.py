"""Schema metadata: custom field descriptors, built-in columns and table names."""

import re
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*", re.ASCII)

# PostgreSQL truncates identifiers longer than this
MAX_IDENTIFIER_LENGTH = 63

MAX_CUSTOM_FIELDS = 50

RESERVED_FIELD_NAMES = frozenset(
    {
        "id",
        "email",
        "password",
        "password_hash",
        "first_name",
        "last_name",
        "email_verified",
        "is_active",
        "created_at",
        "updated_at",
    }
)


class TableNames(BaseModel):
    """Logical table names used by one AuthVault instance."""

    model_config = ConfigDict(frozen=True)

    users: str = "secure_auth_users"
    refresh_tokens: str = "secure_auth_refresh_tokens"
    login_attempts: str = "secure_auth_login_attempts"
    verification_tokens: str = "secure_auth_verification_tokens"


class FieldDescriptor(BaseModel):
    """A caller-declared custom column on the users table.

    Attributes:
        name: Column name (letters, digits, underscore; not starting with a digit)
        type: Logical type, e.g. VARCHAR(20), INTEGER, BOOLEAN, ENUM('a','b')
        required: Whether the column is NOT NULL
        unique: Whether the column carries a UNIQUE constraint
        default_value: Literal default applied by the database
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER_LENGTH)
    type: str = Field(..., min_length=1, max_length=512)
    required: bool = False
    unique: bool = False
    default_value: Any = Field(default=None, alias="defaultValue")

    @field_validator("name")
    @classmethod
    def name_is_identifier(cls, v: str) -> str:
        """Ensure the name matches the identifier grammar."""
        if not IDENTIFIER_RE.fullmatch(v):
            raise ValueError(
                f"Invalid field name: {v!r}. Must start with a letter or underscore "
                "and contain only alphanumeric characters and underscores."
            )
        return v

    @model_validator(mode="after")
    def type_is_known(self) -> "FieldDescriptor":
        """Parse the logical type eagerly so bad types fail at declaration."""
        from authvault.dialects.types import parse_type
        from authvault.errors import ValidationError

        try:
            parse_type(self.type)
        except ValidationError as e:
            raise ValueError(str(e)) from e
        return self

    @property
    def is_reserved(self) -> bool:
        return self.name.lower() in RESERVED_FIELD_NAMES

    @property
    def logical_type(self):
        from authvault.dialects.types import parse_type

        return parse_type(self.type)

    def to_column(self) -> "Column":
        return Column(
            name=self.name,
            type=self.type,
            required=self.required,
            unique=self.unique,
            default_value=self.default_value,
        )


def coerce_descriptor(field: "FieldDescriptor | dict") -> FieldDescriptor:
    """Build a FieldDescriptor from a dict (or pass one through).

    Raises:
        ValidationError: If the name or type fails validation
    """
    from pydantic import ValidationError as PydanticValidationError

    from authvault.errors import ValidationError

    if isinstance(field, FieldDescriptor):
        return field
    if not isinstance(field, dict):
        raise ValidationError("Field must be a FieldDescriptor or a dict")
    try:
        return FieldDescriptor.model_validate(field)
    except PydanticValidationError as e:
        messages = "; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors())
        raise ValidationError(messages) from e


@dataclass(frozen=True)
class Column:
    """A column of a built-in table, or a compiled FieldDescriptor.

    default_sql is a trusted SQL expression (e.g. CURRENT_TIMESTAMP) and is only
    ever set by this package, never from caller input.
    """

    name: str
    type: str
    required: bool = False
    unique: bool = False
    default_value: Any = None
    default_sql: Optional[str] = None


USER_COLUMNS = (
    Column("email", "VARCHAR(255)", required=True, unique=True),
    Column("password_hash", "VARCHAR(255)", required=True),
    Column("first_name", "VARCHAR(100)"),
    Column("last_name", "VARCHAR(100)"),
    Column("email_verified", "BOOLEAN", default_value=False),
    Column("is_active", "BOOLEAN", default_value=True),
    Column("created_at", "TIMESTAMP", default_sql="CURRENT_TIMESTAMP"),
    Column("updated_at", "TIMESTAMP", default_sql="CURRENT_TIMESTAMP"),
)

REFRESH_TOKEN_COLUMNS = (
    Column("user_id", "INTEGER", required=True),
    Column("token_digest", "VARCHAR(64)", required=True, unique=True),
    Column("revoked", "BOOLEAN", default_value=False),
    Column("expires_at", "BIGINT", required=True),
    Column("created_at", "TIMESTAMP", default_sql="CURRENT_TIMESTAMP"),
)

LOGIN_ATTEMPT_COLUMNS = (
    Column("email", "VARCHAR(255)", required=True),
    Column("success", "BOOLEAN", default_value=False),
    Column("ip_address", "VARCHAR(45)"),
    Column("user_agent", "TEXT"),
    Column("attempted_at", "BIGINT", required=True),
)

VERIFICATION_TOKEN_COLUMNS = (
    Column("user_id", "INTEGER", required=True),
    Column("purpose", "VARCHAR(32)", required=True),
    Column("kind", "VARCHAR(8)", required=True),
    Column("token_digest", "VARCHAR(64)", required=True),
    Column("expires_at", "BIGINT", required=True),
    Column("created_at", "TIMESTAMP", default_sql="CURRENT_TIMESTAMP"),
)
