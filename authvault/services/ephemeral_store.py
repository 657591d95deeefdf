"""Single-use verification and password-reset artifacts (URL tokens and 6-digit codes)."""

import re
import secrets
from datetime import timedelta
from typing import Optional

import structlog

from authvault.dialects.base import AdapterConnection, SQLAdapter
from authvault.errors import NotFoundError, ValidationError
from authvault.models.schema import TableNames
from authvault.models.user import ArtifactKind, ArtifactPurpose, EphemeralArtifact
from authvault.services import clock
from authvault.services.refresh_vault import digest

logger = structlog.get_logger(__name__)

CODE_RE = re.compile(r"[0-9]{6}")


def generate_code() -> str:
    """Uniformly random 6-digit code, leading zeros kept."""
    return f"{secrets.randbelow(1_000_000):06d}"


class EphemeralStore:
    """Issues and consumes artifacts, at most one live per (user, purpose).

    Issuing replaces any earlier artifact for the same purpose, so only the
    most recent token or code works. Consumption deletes the row; an artifact
    whose expiry has passed is treated as missing even before it is swept.
    """

    def __init__(
        self,
        adapter: SQLAdapter,
        tables: TableNames,
        ttls: Optional[dict[tuple[ArtifactPurpose, ArtifactKind], timedelta]] = None,
    ):
        self.adapter = adapter
        self.tables = tables
        self.ttls = ttls or {
            (ArtifactPurpose.VERIFY_EMAIL, ArtifactKind.TOKEN): timedelta(hours=24),
            (ArtifactPurpose.RESET_PASSWORD, ArtifactKind.TOKEN): timedelta(hours=1),
            (ArtifactPurpose.VERIFY_EMAIL, ArtifactKind.CODE): timedelta(minutes=15),
            (ArtifactPurpose.RESET_PASSWORD, ArtifactKind.CODE): timedelta(minutes=15),
        }

    @classmethod
    def from_settings(cls, adapter: SQLAdapter, settings) -> "EphemeralStore":
        return cls(
            adapter,
            settings.tables,
            ttls={
                (ArtifactPurpose.VERIFY_EMAIL, ArtifactKind.TOKEN): timedelta(
                    hours=settings.verification_token_ttl_hours
                ),
                (ArtifactPurpose.RESET_PASSWORD, ArtifactKind.TOKEN): timedelta(
                    hours=settings.reset_token_ttl_hours
                ),
                (ArtifactPurpose.VERIFY_EMAIL, ArtifactKind.CODE): timedelta(
                    minutes=settings.verification_code_ttl_minutes
                ),
                (ArtifactPurpose.RESET_PASSWORD, ArtifactKind.CODE): timedelta(
                    minutes=settings.reset_code_ttl_minutes
                ),
            },
        )

    @property
    def _table(self) -> str:
        return self.adapter.quote_identifier(self.tables.verification_tokens)

    async def _issue(
        self,
        user_id: int,
        purpose: ArtifactPurpose,
        kind: ArtifactKind,
        value: str,
        ttl: Optional[timedelta],
        conn: Optional[AdapterConnection],
    ) -> int:
        purpose = ArtifactPurpose(purpose)
        ttl = ttl or self.ttls[(purpose, kind)]
        expires_at = clock.now_ms() + int(ttl.total_seconds() * 1000)

        async with self.adapter.using(conn) as c:
            async with c.transaction():
                await c.execute(
                    f"DELETE FROM {self._table} WHERE user_id = ? AND purpose = ?",
                    user_id,
                    purpose.value,
                )
                await c.execute(
                    f"INSERT INTO {self._table} (user_id, purpose, kind, token_digest, expires_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    user_id,
                    purpose.value,
                    kind.value,
                    digest(value),
                    expires_at,
                )

        logger.info("ephemeral_issued", user_id=user_id, purpose=purpose.value, kind=kind.value)
        return expires_at

    async def issue_token(
        self,
        user_id: int,
        purpose: ArtifactPurpose,
        ttl: Optional[timedelta] = None,
        conn: Optional[AdapterConnection] = None,
    ) -> tuple[str, int]:
        """Issue a 64-hex-character URL token.

        Returns:
            Tuple of (raw token, expires_at in epoch milliseconds)
        """
        value = secrets.token_hex(32)
        expires_at = await self._issue(user_id, purpose, ArtifactKind.TOKEN, value, ttl, conn)
        return value, expires_at

    async def issue_code(
        self,
        user_id: int,
        purpose: ArtifactPurpose,
        ttl: Optional[timedelta] = None,
        conn: Optional[AdapterConnection] = None,
    ) -> tuple[str, int]:
        """Issue a 6-digit code.

        Returns:
            Tuple of (code, expires_at in epoch milliseconds)
        """
        value = generate_code()
        expires_at = await self._issue(user_id, purpose, ArtifactKind.CODE, value, ttl, conn)
        return value, expires_at

    async def find_active(
        self, user_id: int, purpose: ArtifactPurpose
    ) -> Optional[EphemeralArtifact]:
        """The live artifact for (user, purpose), or None if absent or expired."""
        row = await self.adapter.fetchrow(
            f"SELECT * FROM {self._table} WHERE user_id = ? AND purpose = ? AND expires_at > ?",
            user_id,
            ArtifactPurpose(purpose).value,
            clock.now_ms(),
        )
        return EphemeralArtifact.model_validate(row) if row else None

    async def _consume_where(
        self, conn: Optional[AdapterConnection], where: str, *params
    ) -> int:
        async with self.adapter.using(conn) as c:
            row = await c.fetchrow(
                f"SELECT id, user_id FROM {self._table} WHERE {where} AND expires_at > ?",
                *params,
                clock.now_ms(),
            )
            if row is None:
                return 0
            affected = await c.execute(f"DELETE FROM {self._table} WHERE id = ?", row["id"])
        if affected != 1:
            # A concurrent consumer deleted it first
            return 0
        return row["user_id"]

    async def consume_token(
        self,
        raw: str,
        purpose: ArtifactPurpose,
        conn: Optional[AdapterConnection] = None,
    ) -> int:
        """Consume a URL token.

        Returns:
            The id of the user the token was issued to

        Raises:
            NotFoundError: If the token is unknown, expired, already used or
                issued for another purpose
        """
        if not isinstance(raw, str) or not raw:
            raise NotFoundError("Invalid or expired token")
        purpose = ArtifactPurpose(purpose)
        user_id = await self._consume_where(
            conn,
            "token_digest = ? AND purpose = ? AND kind = ?",
            digest(raw),
            purpose.value,
            ArtifactKind.TOKEN.value,
        )
        if not user_id:
            raise NotFoundError("Invalid or expired token")
        logger.info("ephemeral_consumed", user_id=user_id, purpose=purpose.value, kind="token")
        return user_id

    async def consume_code(
        self,
        user_id: int,
        code: str,
        purpose: ArtifactPurpose,
        conn: Optional[AdapterConnection] = None,
    ) -> int:
        """Consume a 6-digit code for a user.

        Raises:
            ValidationError: If the code is not exactly 6 digits (checked before any lookup)
            NotFoundError: If no live code matches
        """
        if not isinstance(code, str) or not CODE_RE.fullmatch(code):
            raise ValidationError("Code must be exactly 6 digits")
        purpose = ArtifactPurpose(purpose)
        consumed = await self._consume_where(
            conn,
            "user_id = ? AND token_digest = ? AND purpose = ? AND kind = ?",
            user_id,
            digest(code),
            purpose.value,
            ArtifactKind.CODE.value,
        )
        if not consumed:
            raise NotFoundError("Invalid or expired code")
        logger.info("ephemeral_consumed", user_id=user_id, purpose=purpose.value, kind="code")
        return consumed
