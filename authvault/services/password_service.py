"""Password hashing and password policy."""

import asyncio
import re
from typing import Protocol

import bcrypt
import structlog

from authvault.config import Settings
from authvault.errors import ValidationError

logger = structlog.get_logger(__name__)

# bcrypt ignores everything past 72 bytes
MAX_PASSWORD_LENGTH = 72

WEAK_PASSWORDS = frozenset(
    {"password", "12345678", "qwerty", "abc123", "password123", "admin123", "letmein"}
)

_SPECIAL_CHARS_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_REPEATED_RE = re.compile(r"(.)\1{2,}")


class PasswordHasher(Protocol):
    """Contract for the injected password hasher."""
    async def hash_password(self, password: str) -> str: ...
    async def verify_password(self, password: str, password_hash: str) -> bool: ...


class BcryptPasswordHasher:
    """Default hasher. bcrypt runs in the default executor so it does not block the loop."""

    def __init__(self, rounds: int = 10):
        self.rounds = rounds

    async def hash_password(self, password: str) -> str:
        """Hash a password using bcrypt.

        Args:
            password: Plain-text password to hash

        Returns:
            Bcrypt hash string
        """
        if len(password.encode("utf-8")) > MAX_PASSWORD_LENGTH:
            raise ValidationError(f"Password too long for hashing (max {MAX_PASSWORD_LENGTH} bytes)")
        loop = asyncio.get_running_loop()
        hashed = await loop.run_in_executor(
            None, bcrypt.hashpw, password.encode("utf-8"), bcrypt.gensalt(self.rounds)
        )
        return hashed.decode("utf-8")

    async def verify_password(self, password: str, password_hash: str) -> bool:
        """Verify a password against a bcrypt hash.

        Returns:
            True if the password matches, False otherwise (including for a
            malformed hash)
        """
        if len(password.encode("utf-8")) > MAX_PASSWORD_LENGTH:
            return False
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, bcrypt.checkpw, password.encode("utf-8"), password_hash.encode("utf-8")
            )
        except ValueError:
            logger.warning("password_hash_malformed")
            return False


class PasswordPolicy:
    """Strength rules applied on registration, password change and reset."""

    def __init__(
        self,
        min_length: int = 8,
        require_uppercase: bool = True,
        require_numbers: bool = True,
        require_special_chars: bool = True,
    ):
        if not 6 <= min_length <= MAX_PASSWORD_LENGTH:
            raise ValidationError(f"password_min_length must be between 6 and {MAX_PASSWORD_LENGTH}")
        self.min_length = min_length
        self.require_uppercase = require_uppercase
        self.require_numbers = require_numbers
        self.require_special_chars = require_special_chars

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            require_uppercase=settings.password_require_uppercase,
            require_numbers=settings.password_require_numbers,
            require_special_chars=settings.password_require_special_chars,
        )

    def validate(self, password: str) -> None:
        """Check a password against every rule.

        Raises:
            ValidationError: Listing every rule the password breaks
        """
        if not isinstance(password, str) or not password:
            raise ValidationError("Password is required and must be a string")
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError(f"Password must not exceed {MAX_PASSWORD_LENGTH} characters")

        errors = []
        if len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters long")
        if self.require_uppercase and not re.search(r"[A-Z]", password):
            errors.append("Password must contain at least one uppercase letter")
        if self.require_numbers and not re.search(r"[0-9]", password):
            errors.append("Password must contain at least one number")
        if self.require_special_chars and not _SPECIAL_CHARS_RE.search(password):
            errors.append("Password must contain at least one special character")
        if password.lower() in WEAK_PASSWORDS:
            errors.append("Password is too common. Please choose a stronger password")
        if _REPEATED_RE.search(password):
            errors.append("Password should not contain repeated characters")

        if errors:
            raise ValidationError(". ".join(errors))
