"""Dialect adapters for PostgreSQL and SQLite."""

from authvault.dialects.base import AdapterConnection, SQLAdapter, quote_identifier
from authvault.dialects.postgres import PostgresAdapter
from authvault.dialects.sqlite import SQLiteAdapter
from authvault.dialects.types import LogicalType, parse_type

__all__ = [
    "AdapterConnection",
    "LogicalType",
    "PostgresAdapter",
    "SQLAdapter",
    "SQLiteAdapter",
    "parse_type",
    "quote_identifier",
]
