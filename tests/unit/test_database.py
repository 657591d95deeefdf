"""Unit tests for the adapter factory."""

import pytest

from authvault.database import create_adapter
from authvault.dialects.postgres import PostgresAdapter
from authvault.dialects.sqlite import SQLiteAdapter
from authvault.errors import ConfigurationError


class TestCreateAdapter:
    @pytest.mark.parametrize(
        "db_type, expected",
        [
            ("postgres", PostgresAdapter),
            ("PostgreSQL", PostgresAdapter),
            ("pg", PostgresAdapter),
            (" sqlite ", SQLiteAdapter),
        ],
    )
    def test_selects_dialect(self, settings, db_type, expected):
        adapter = create_adapter(settings.model_copy(update={"db_type": db_type}))
        assert isinstance(adapter, expected)
        assert adapter.is_connected is False

    def test_unsupported_type(self, settings):
        with pytest.raises(ConfigurationError, match="Unsupported database type"):
            create_adapter(settings.model_copy(update={"db_type": "oracle"}))

    def test_instances_are_independent(self, settings):
        assert create_adapter(settings) is not create_adapter(settings)
