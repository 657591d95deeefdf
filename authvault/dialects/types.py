"""Canonical logical type vocabulary and its order-sensitive classification table.

A logical type string such as ``VARCHAR(20)``, ``TINYINT(1)``, ``DOUBLE`` or
``ENUM('free','pro')`` is parsed against a strict grammar, then classified by
walking TYPE_RULES top to bottom: the first keyword contained in the normalized
type wins. Each dialect renders the resulting kind from parsed parts only, so
no caller-supplied text ever reaches DDL verbatim.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Optional

from authvault.errors import ValidationError

# Order matters: BIGINT/SMALLINT/TINYINT before INT, VARCHAR and TEXT before
# CHAR, DOUBLE before FLOAT, DATETIME and TIMESTAMP before DATE and TIME.
TYPE_RULES: tuple[tuple[str, str], ...] = (
    ("ENUM", "enum"),
    ("TINYINT(1)", "boolean"),
    ("BIGINT", "bigint"),
    ("SMALLINT", "smallint"),
    ("TINYINT", "smallint"),
    ("INT", "integer"),
    ("BOOL", "boolean"),
    ("VARCHAR", "varchar"),
    ("TEXT", "text"),
    ("CHAR", "char"),
    ("DOUBLE", "double"),
    ("FLOAT", "float"),
    ("REAL", "float"),
    ("DECIMAL", "decimal"),
    ("NUMERIC", "decimal"),
    ("DATETIME", "datetime"),
    ("TIMESTAMP", "datetime"),
    ("DATE", "date"),
    ("TIME", "time"),
    ("JSON", "json"),
)

KNOWN_TYPE_NAMES = frozenset(
    {
        "TINYINT",
        "SMALLINT",
        "MEDIUMINT",
        "INT",
        "INTEGER",
        "BIGINT",
        "BOOL",
        "BOOLEAN",
        "VARCHAR",
        "CHAR",
        "TEXT",
        "TINYTEXT",
        "MEDIUMTEXT",
        "LONGTEXT",
        "DOUBLE",
        "DOUBLE PRECISION",
        "FLOAT",
        "REAL",
        "DECIMAL",
        "NUMERIC",
        "DATETIME",
        "TIMESTAMP",
        "DATE",
        "TIME",
        "JSON",
        "JSONB",
    }
)

INTEGER_KINDS = frozenset({"bigint", "smallint", "integer"})
NUMERIC_KINDS = INTEGER_KINDS | {"double", "float", "decimal"}
STRING_KINDS = frozenset({"varchar", "char", "text", "enum"})
TEMPORAL_KINDS = frozenset({"datetime", "date", "time"})

MAX_VARCHAR_LENGTH = 65535
MAX_ENUM_VALUE_LENGTH = 255

_SCALAR_RE = re.compile(
    r"^(?P<name>[A-Z]+(?: [A-Z]+)?)\s*(?:\(\s*(?P<p1>[0-9]{1,5})\s*(?:,\s*(?P<p2>[0-9]{1,5})\s*)?\))?$"
)
_ENUM_RE = re.compile(r"^ENUM\s*\((?P<body>.*)\)$", re.IGNORECASE | re.DOTALL)
_ENUM_VALUE_RE = re.compile(r"\s*'((?:[^']|'')*)'\s*(,|$)")


@dataclass(frozen=True)
class LogicalType:
    """A parsed logical type.

    Attributes:
        kind: Canonical kind from TYPE_RULES (e.g. "varchar", "bigint")
        length: Declared length for VARCHAR/CHAR, or precision for DECIMAL
        scale: Declared scale for DECIMAL
        enum_values: Allowed values for ENUM types
    """

    kind: str
    length: Optional[int] = None
    scale: Optional[int] = None
    enum_values: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_numeric(self) -> bool:
        return self.kind in NUMERIC_KINDS

    @property
    def is_integer(self) -> bool:
        return self.kind in INTEGER_KINDS


def classify(normalized: str) -> str:
    """Return the canonical kind for a normalized (upper-case) type string.

    Raises:
        ValidationError: If no rule matches
    """
    for keyword, kind in TYPE_RULES:
        if keyword in normalized:
            return kind
    raise ValidationError(f"Unsupported field type: {normalized}")


def _parse_enum(raw: str) -> LogicalType:
    match = _ENUM_RE.match(raw)
    if not match:
        raise ValidationError(f"Malformed ENUM type: {raw!r}")
    body = match.group("body").strip()
    values = []
    pos = 0
    while pos < len(body):
        value_match = _ENUM_VALUE_RE.match(body, pos)
        if not value_match:
            raise ValidationError(
                f"Malformed ENUM type: {raw!r}. Values must be single-quoted and comma-separated."
            )
        value = value_match.group(1).replace("''", "'")
        if not value or len(value) > MAX_ENUM_VALUE_LENGTH:
            raise ValidationError(
                f"ENUM values must be 1-{MAX_ENUM_VALUE_LENGTH} characters long"
            )
        values.append(value)
        pos = value_match.end()
    if not values:
        raise ValidationError(f"ENUM type {raw!r} declares no values")
    if len(set(values)) != len(values):
        raise ValidationError(f"ENUM type {raw!r} declares duplicate values")
    return LogicalType(kind="enum", enum_values=tuple(values))


def parse_type(raw: str) -> LogicalType:
    """Parse a logical type string.

    Args:
        raw: Type as declared by the caller, case-insensitive

    Returns:
        The parsed LogicalType

    Raises:
        ValidationError: If the string does not match the type grammar or
            names a type outside the supported vocabulary
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("Field type must be a non-empty string")

    stripped = raw.strip()
    if stripped.upper().startswith("ENUM"):
        return _parse_enum(stripped)

    normalized = " ".join(stripped.upper().split())
    match = _SCALAR_RE.match(normalized)
    if not match or match.group("name") not in KNOWN_TYPE_NAMES:
        raise ValidationError(f"Unsupported field type: {raw!r}")

    p1 = int(match.group("p1")) if match.group("p1") else None
    p2 = int(match.group("p2")) if match.group("p2") else None
    compact = match.group("name") + (f"({p1})" if p1 is not None and p2 is None else "")
    kind = classify(compact)

    if kind in ("varchar", "char"):
        if p2 is not None:
            raise ValidationError(f"{match.group('name')} takes a single length argument")
        if p1 is not None and not 1 <= p1 <= MAX_VARCHAR_LENGTH:
            raise ValidationError(f"Length must be between 1 and {MAX_VARCHAR_LENGTH}")
        return LogicalType(kind=kind, length=p1)

    if kind == "decimal":
        if p1 is not None and not 1 <= p1 <= 1000:
            raise ValidationError("DECIMAL precision must be between 1 and 1000")
        if p2 is not None and p2 > (p1 or 0):
            raise ValidationError("DECIMAL scale cannot exceed precision")
        return LogicalType(kind=kind, length=p1, scale=p2)

    # Display widths like INT(11) are accepted and dropped
    return LogicalType(kind=kind)


def coerce_value(lt: LogicalType, value: Any, field_name: str) -> Any:
    """Check a Python value against a logical type and normalize it.

    Args:
        lt: Parsed logical type of the target column
        value: Value supplied by the caller
        field_name: Column name, used in error messages

    Returns:
        The value in the shape the drivers expect (bool, int, str,
        datetime/date/time, dict/list), or None

    Raises:
        ValidationError: If the value does not fit the type
    """
    if value is None:
        return None

    if lt.kind == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        raise ValidationError(f"Field '{field_name}' must be a boolean")

    if lt.kind in INTEGER_KINDS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"Field '{field_name}' must be an integer")
        return value

    if lt.kind in NUMERIC_KINDS:
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            raise ValidationError(f"Field '{field_name}' must be a number")
        if isinstance(value, float) and not math.isfinite(value):
            raise ValidationError(f"Field '{field_name}' must be a finite number")
        return value

    if lt.kind in STRING_KINDS:
        if not isinstance(value, str):
            raise ValidationError(f"Field '{field_name}' must be a string")
        if "\x00" in value:
            raise ValidationError(f"Field '{field_name}' contains a NUL character")
        if lt.kind == "enum" and value not in lt.enum_values:
            allowed = ", ".join(lt.enum_values)
            raise ValidationError(f"Field '{field_name}' must be one of: {allowed}")
        if lt.length is not None and len(value) > lt.length:
            raise ValidationError(
                f"Field '{field_name}' must be at most {lt.length} characters"
            )
        return value

    if lt.kind in TEMPORAL_KINDS:
        target = {"datetime": datetime, "date": date, "time": time}[lt.kind]
        if isinstance(value, target) and not (lt.kind == "date" and isinstance(value, datetime)):
            return value
        if isinstance(value, str):
            try:
                return target.fromisoformat(value)
            except ValueError as e:
                raise ValidationError(
                    f"Field '{field_name}' must be an ISO-8601 {lt.kind}"
                ) from e
        raise ValidationError(f"Field '{field_name}' must be a {lt.kind}")

    if lt.kind == "json":
        if not isinstance(value, (dict, list)):
            raise ValidationError(f"Field '{field_name}' must be a JSON object or array")
        return value

    raise ValidationError(f"Field '{field_name}' has unsupported type {lt.kind}")
