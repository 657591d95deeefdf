"""Refresh token persistence: digests, revocation and single-use consumption."""

import hashlib
from typing import Optional

import structlog

from authvault.dialects.base import AdapterConnection, SQLAdapter
from authvault.models.schema import TableNames
from authvault.models.user import RefreshTokenRecord, TokenState
from authvault.services import clock

logger = structlog.get_logger(__name__)


def digest(raw: str) -> str:
    """SHA-256 hex digest of a secret value."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class RefreshTokenVault:
    """Stores SHA-256 digests of refresh tokens and their revocation flag.

    A token moves one way, from active to revoked. Revocation flips the flag
    and never deletes; expired and revoked rows are purged by maintenance.
    """

    def __init__(self, adapter: SQLAdapter, tables: TableNames, default_ttl_days: int = 7):
        self.adapter = adapter
        self.tables = tables
        self.default_ttl_ms = default_ttl_days * 24 * 60 * 60 * 1000

    @property
    def _table(self) -> str:
        return self.adapter.quote_identifier(self.tables.refresh_tokens)

    async def store_refresh_token(
        self,
        user_id: int,
        raw: str,
        expires_at: Optional[int] = None,
        conn: Optional[AdapterConnection] = None,
    ) -> int:
        """Store the digest of a new refresh token.

        Args:
            user_id: Owner of the token
            raw: The raw refresh token
            expires_at: Expiry in epoch milliseconds; defaults to the configured TTL

        Returns:
            The new row id
        """
        if expires_at is None:
            expires_at = clock.now_ms() + self.default_ttl_ms
        async with self.adapter.using(conn) as c:
            token_row_id = await c.insert(
                f"INSERT INTO {self._table} (user_id, token_digest, revoked, expires_at) "
                "VALUES (?, ?, FALSE, ?)",
                user_id,
                digest(raw),
                expires_at,
            )
        logger.info("refresh_token_stored", user_id=user_id, expires_at=expires_at)
        return token_row_id

    async def _get_record(self, raw: str, conn: Optional[AdapterConnection] = None) -> Optional[RefreshTokenRecord]:
        async with self.adapter.using(conn) as c:
            row = await c.fetchrow(
                f"SELECT * FROM {self._table} WHERE token_digest = ?", digest(raw)
            )
        return RefreshTokenRecord.model_validate(row) if row else None

    async def find_refresh_token(
        self, raw: str, conn: Optional[AdapterConnection] = None
    ) -> Optional[RefreshTokenRecord]:
        """Return the record if the token is active (not revoked, not expired)."""
        record = await self._get_record(raw, conn=conn)
        if record is None or record.revoked or record.expires_at <= clock.now_ms():
            return None
        return record

    async def lookup_token_state(
        self, raw: str, conn: Optional[AdapterConnection] = None
    ) -> tuple[TokenState, Optional[RefreshTokenRecord]]:
        """Classify a token as active, revoked, expired or missing."""
        record = await self._get_record(raw, conn=conn)
        if record is None:
            return TokenState.MISSING, None
        if record.revoked:
            return TokenState.REVOKED, record
        if record.expires_at <= clock.now_ms():
            return TokenState.EXPIRED, record
        return TokenState.ACTIVE, record

    async def consume_refresh_token(
        self, raw: str, conn: Optional[AdapterConnection] = None
    ) -> bool:
        """Atomically revoke an active token.

        Returns:
            True for the single caller that won; False if the token was already
            revoked, expired or unknown
        """
        async with self.adapter.using(conn) as c:
            affected = await c.execute(
                f"UPDATE {self._table} SET revoked = TRUE "
                "WHERE token_digest = ? AND revoked = FALSE AND expires_at > ?",
                digest(raw),
                clock.now_ms(),
            )
        if affected == 0:
            logger.warning("refresh_token_consume_rejected")
        return affected == 1

    async def revoke_refresh_token(
        self, raw: str, conn: Optional[AdapterConnection] = None
    ) -> bool:
        """Revoke one token. Returns False if it was unknown or already revoked."""
        async with self.adapter.using(conn) as c:
            affected = await c.execute(
                f"UPDATE {self._table} SET revoked = TRUE WHERE token_digest = ? AND revoked = FALSE",
                digest(raw),
            )
        if affected:
            logger.info("refresh_token_revoked")
        return affected > 0

    async def revoke_all_user_tokens(
        self, user_id: int, conn: Optional[AdapterConnection] = None
    ) -> int:
        """Revoke every active token of a user and return how many were revoked."""
        async with self.adapter.using(conn) as c:
            affected = await c.execute(
                f"UPDATE {self._table} SET revoked = TRUE WHERE user_id = ? AND revoked = FALSE",
                user_id,
            )
        logger.info("all_refresh_tokens_revoked", user_id=user_id, revoked_count=affected)
        return affected
