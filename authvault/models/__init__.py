"""Models package exports."""

from authvault.models.results import (
    AuthResult,
    IssueResult,
    MaintenanceReport,
    MigrationReport,
    MigrationResult,
    TokenPair,
)
from authvault.models.schema import Column, FieldDescriptor, TableNames
from authvault.models.user import (
    ArtifactKind,
    ArtifactPurpose,
    EphemeralArtifact,
    LoginAttempt,
    RefreshTokenRecord,
    RegistrationData,
    TokenState,
    User,
)

__all__ = [
    "ArtifactKind",
    "ArtifactPurpose",
    "AuthResult",
    "Column",
    "EphemeralArtifact",
    "FieldDescriptor",
    "IssueResult",
    "LoginAttempt",
    "MaintenanceReport",
    "MigrationReport",
    "MigrationResult",
    "RefreshTokenRecord",
    "RegistrationData",
    "TableNames",
    "TokenPair",
    "TokenState",
    "User",
]
