"""authvault: identity and session persistence over PostgreSQL and SQLite."""

from authvault.config import Settings, get_settings
from authvault.database import create_adapter
from authvault.errors import (
    AccountLockedError,
    AuthFailure,
    AuthFailureReason,
    AuthVaultError,
    ConfigurationError,
    ConflictError,
    InvalidCredentialsError,
    MigrationError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
    ValidationError,
)
from authvault.models import FieldDescriptor, User
from authvault.services import AuthVault, MailTransport

__version__ = "0.1.0"

__all__ = [
    "AccountLockedError",
    "AuthFailure",
    "AuthFailureReason",
    "AuthVault",
    "AuthVaultError",
    "ConfigurationError",
    "ConflictError",
    "FieldDescriptor",
    "InvalidCredentialsError",
    "MailTransport",
    "MigrationError",
    "NotFoundError",
    "Settings",
    "TokenExpiredError",
    "TokenInvalidError",
    "TokenRevokedError",
    "User",
    "ValidationError",
    "create_adapter",
    "get_settings",
]
