"""Retention sweeps for login attempts, refresh tokens and ephemeral artifacts."""

import time
from typing import Optional

import structlog

from authvault.dialects.base import SQLAdapter
from authvault.errors import ValidationError
from authvault.models.results import MaintenanceReport
from authvault.models.schema import TableNames
from authvault.services import clock

logger = structlog.get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def _check_retention(days: int) -> None:
    if isinstance(days, bool) or not isinstance(days, int) or days < 1:
        raise ValidationError("Retention days must be a positive integer")


class MaintenanceService:
    """Deletes rows past their retention window in bounded batches.

    Each sweep repeats ``DELETE ... WHERE id IN (SELECT id ... LIMIT n)`` until
    a batch comes back short, so no single statement holds locks on an
    unbounded number of rows. Sweeps are idempotent.
    """

    def __init__(
        self,
        adapter: SQLAdapter,
        tables: TableNames,
        batch_size: int = 5000,
        login_attempts_retention_days: int = 30,
        refresh_tokens_retention_days: int = 7,
    ):
        if batch_size < 1:
            raise ValidationError("batch_size must be at least 1")
        self.adapter = adapter
        self.tables = tables
        self.batch_size = batch_size
        self.login_attempts_retention_days = login_attempts_retention_days
        self.refresh_tokens_retention_days = refresh_tokens_retention_days

    async def _delete_in_batches(self, table: str, where: str, *params) -> int:
        quoted = self.adapter.quote_identifier(table)
        query = (
            f"DELETE FROM {quoted} WHERE id IN "
            f"(SELECT id FROM {quoted} WHERE {where} LIMIT ?)"
        )
        total = 0
        while True:
            deleted = await self.adapter.execute(query, *params, self.batch_size)
            total += deleted
            if deleted < self.batch_size:
                return total

    async def cleanup_expired_login_attempts(self, retention_days: Optional[int] = None) -> int:
        """Delete login attempts older than the retention window."""
        days = self.login_attempts_retention_days if retention_days is None else retention_days
        _check_retention(days)
        cutoff = clock.now_ms() - days * DAY_MS
        deleted = await self._delete_in_batches(self.tables.login_attempts, "attempted_at < ?", cutoff)
        logger.info("login_attempts_cleaned", deleted=deleted, retention_days=days)
        return deleted

    async def cleanup_expired_ephemeral(self) -> int:
        """Delete verification and reset artifacts whose expiry has passed."""
        deleted = await self._delete_in_batches(
            self.tables.verification_tokens, "expires_at < ?", clock.now_ms()
        )
        logger.info("ephemeral_artifacts_cleaned", deleted=deleted)
        return deleted

    async def cleanup_expired_refresh_tokens(self, retention_days: Optional[int] = None) -> int:
        """Delete refresh tokens whose expiry is more than retention_days in the past.

        Revoked rows age by their expiry too, so a revoked token stays
        classifiable as revoked until it would have expired anyway.
        """
        days = self.refresh_tokens_retention_days if retention_days is None else retention_days
        _check_retention(days)
        cutoff = clock.now_ms() - days * DAY_MS
        deleted = await self._delete_in_batches(self.tables.refresh_tokens, "expires_at < ?", cutoff)
        logger.info("refresh_tokens_cleaned", deleted=deleted, retention_days=days)
        return deleted

    async def perform_maintenance(
        self,
        login_attempts_retention_days: Optional[int] = None,
        refresh_tokens_retention_days: Optional[int] = None,
    ) -> MaintenanceReport:
        """Run every sweep and report rows deleted per category."""
        started = time.perf_counter()
        counts = {
            "login_attempts": await self.cleanup_expired_login_attempts(login_attempts_retention_days),
            "ephemeral_artifacts": await self.cleanup_expired_ephemeral(),
            "refresh_tokens": await self.cleanup_expired_refresh_tokens(refresh_tokens_retention_days),
        }
        report = MaintenanceReport(
            counts_by_category=counts,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        logger.info("maintenance_completed", duration_ms=report.duration_ms, counts_by_category=counts)
        return report
