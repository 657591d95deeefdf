"""Result objects returned by the orchestrator and the admin operations."""

from typing import Optional

from pydantic import BaseModel, Field

from authvault.models.user import User


class TokenPair(BaseModel):
    """Access and refresh token pair.

    Attributes:
        access_token: Short-lived JWT for API access
        refresh_token: Long-lived JWT exchanged for a new pair
        token_type: Always "bearer"
        expires_in: Access token lifetime in seconds
    """

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthResult(BaseModel):
    """Outcome of register, login or refresh."""

    user: User
    tokens: TokenPair


class IssueResult(BaseModel):
    """Outcome of sending a verification or reset artifact."""

    success: bool
    message: str
    expires_at: Optional[int] = None


class MigrationResult(BaseModel):
    """Outcome of a single dangerous column addition."""

    success: bool
    column: str
    skipped: bool = False
    reason: Optional[str] = None
    duration_ms: int = 0


class MigrationReport(BaseModel):
    """Outcome of a batch schema migration.

    Attributes:
        success: True when every column was added or skipped
        atomic: False when the batch ran without a wrapping transaction
        fields_added: Number of columns added
        fields_skipped: Number of columns that already existed
        columns: Per-column results in request order
        warnings: Limitations surfaced to the caller, e.g. atomic_migration_unavailable
        duration_ms: Wall time of the whole batch
    """

    success: bool
    atomic: bool
    fields_added: int = 0
    fields_skipped: int = 0
    columns: list[MigrationResult] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    duration_ms: int = 0


class MaintenanceReport(BaseModel):
    """Rows deleted per category by one maintenance run."""

    counts_by_category: dict[str, int] = Field(default_factory=dict)
    duration_ms: int = 0

    @property
    def total_deleted(self) -> int:
        return sum(self.counts_by_category.values())
