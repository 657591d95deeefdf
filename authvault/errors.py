"""
Exception taxonomy for authvault.

Validation and migration errors carry an actionable message. Driver and pool
errors (including acquire timeouts) are never wrapped in these classes so
callers can retry infrastructure failures separately from business rejections.
"""

from enum import Enum


class AuthVaultError(Exception):
    """Base exception for authvault"""
    pass


class ConfigurationError(AuthVaultError):
    """Raised for bad connection settings, secrets, or use before init()"""
    pass


class ValidationError(AuthVaultError):
    """Raised for bad field names or types, too many fields, or malformed codes"""
    pass


class ConflictError(AuthVaultError):
    """Raised when a unique constraint is violated (duplicate email, duplicate field)"""
    pass


class NotFoundError(AuthVaultError):
    """Raised when a user, token, or code does not exist (or has expired)"""
    pass


class MigrationError(AuthVaultError):
    """Raised when a schema change is refused before any DDL runs"""
    pass


class AuthFailureReason(str, Enum):
    """Why an authentication attempt was rejected."""

    EXPIRED = "expired"
    INVALID = "invalid"
    REVOKED = "revoked"
    LOCKED = "locked"


class AuthFailure(AuthVaultError):
    """Raised when a credential or token is rejected"""

    reason: AuthFailureReason = AuthFailureReason.INVALID

    def __init__(self, message: str, reason: AuthFailureReason | None = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class TokenExpiredError(AuthFailure):
    """Raised when a token's lifetime has elapsed; callers should refresh"""

    reason = AuthFailureReason.EXPIRED


class TokenInvalidError(AuthFailure):
    """Raised for malformed, tampered, or unknown tokens; callers should re-authenticate"""

    reason = AuthFailureReason.INVALID


class TokenRevokedError(AuthFailure):
    """Raised when a refresh token was revoked or already consumed"""

    reason = AuthFailureReason.REVOKED


class AccountLockedError(AuthFailure):
    """Raised when too many failed logins fall inside the lockout window"""

    reason = AuthFailureReason.LOCKED


class InvalidCredentialsError(AuthFailure):
    """Raised when email or password do not match"""

    reason = AuthFailureReason.INVALID
