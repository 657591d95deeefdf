"""User, token and artifact records."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def normalize_email(email: str) -> str:
    """Trim and lowercase an email address."""
    return email.strip().lower()


class User(BaseModel):
    """A registered user. Custom fields appear as extra attributes."""

    model_config = ConfigDict(extra="allow")

    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_verified: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def custom_fields(self) -> dict:
        return dict(self.model_extra or {})


class RegistrationData(BaseModel):
    """Registration input.

    Attributes:
        email: Login identifier, normalized by trim + lowercase
        password: Plaintext password, checked against the password policy
        first_name: Optional given name
        last_name: Optional family name

    Any other keys are custom field values and are type-checked by the
    credential store against the registered field descriptors.
    """

    model_config = ConfigDict(extra="allow")

    email: EmailStr
    password: str = Field(..., min_length=1)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email", mode="before")
    @classmethod
    def email_normalized(cls, v):
        if isinstance(v, str):
            return normalize_email(v)
        return v


class ArtifactPurpose(str, Enum):
    """What an ephemeral token or code authorizes."""

    VERIFY_EMAIL = "verify_email"
    RESET_PASSWORD = "reset_password"


class ArtifactKind(str, Enum):
    TOKEN = "token"
    CODE = "code"


class TokenState(str, Enum):
    """Lifecycle state of a stored refresh token."""

    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"
    MISSING = "missing"


class RefreshTokenRecord(BaseModel):
    """A stored refresh token. Only the SHA-256 digest is kept."""

    id: int
    user_id: int
    token_digest: str
    revoked: bool = False
    expires_at: int  # epoch milliseconds
    created_at: Optional[datetime] = None


class LoginAttempt(BaseModel):
    id: int
    email: str
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    attempted_at: int  # epoch milliseconds


class EphemeralArtifact(BaseModel):
    """A live verification or reset artifact."""

    id: int
    user_id: int
    purpose: ArtifactPurpose
    kind: ArtifactKind
    token_digest: str
    expires_at: int  # epoch milliseconds
    created_at: Optional[datetime] = None
