"""Adapter factory: picks the dialect backend named in settings."""

import structlog

from authvault.config import Settings, get_settings
from authvault.dialects.base import SQLAdapter
from authvault.dialects.postgres import PostgresAdapter
from authvault.dialects.sqlite import SQLiteAdapter
from authvault.errors import ConfigurationError

logger = structlog.get_logger(__name__)

_ADAPTERS: dict[str, type[SQLAdapter]] = {
    "postgres": PostgresAdapter,
    "postgresql": PostgresAdapter,
    "pg": PostgresAdapter,
    "sqlite": SQLiteAdapter,
}


def create_adapter(settings: Settings | None = None) -> SQLAdapter:
    """Build an unconnected adapter for ``settings.db_type``.

    Args:
        settings: Settings to use; defaults to get_settings()

    Returns:
        A PostgresAdapter or SQLiteAdapter. Call ``await adapter.connect()``
        before use.

    Raises:
        ConfigurationError: If db_type names an unsupported database
    """
    settings = settings or get_settings()
    db_type = settings.db_type.strip().lower()
    adapter_class = _ADAPTERS.get(db_type)
    if adapter_class is None:
        supported = ", ".join(sorted(_ADAPTERS))
        raise ConfigurationError(
            f"Unsupported database type: {settings.db_type!r}. Supported types: {supported}"
        )
    logger.debug("database_adapter_selected", dialect=adapter_class.name)
    return adapter_class(settings)
