"""Append-only login attempt ledger and lockout checks."""

from typing import Optional

import structlog

from authvault.dialects.base import AdapterConnection, SQLAdapter
from authvault.models.schema import TableNames
from authvault.models.user import LoginAttempt, normalize_email
from authvault.services import clock

logger = structlog.get_logger(__name__)

PERSIST = "persist"
RESET_ON_SUCCESS = "reset_on_success"


class LoginAttemptLedger:
    """Records every login attempt and derives lockout state on read.

    Nothing is ever updated or deleted to lock or unlock an account: an account
    is locked while the number of counted failures inside the trailing window
    reaches ``max_attempts``, and unlocks by those failures aging out.

    Policies:
        persist: every failure in the window counts, even after a success
        reset_on_success: only failures after the most recent success count
    """

    def __init__(
        self,
        adapter: SQLAdapter,
        tables: TableNames,
        max_attempts: int = 5,
        window_minutes: int = 15,
        policy: str = PERSIST,
    ):
        if policy not in (PERSIST, RESET_ON_SUCCESS):
            raise ValueError(f"Unknown lockout policy: {policy!r}")
        self.adapter = adapter
        self.tables = tables
        self.max_attempts = max_attempts
        self.window_ms = window_minutes * 60 * 1000
        self.policy = policy

    @property
    def _table(self) -> str:
        return self.adapter.quote_identifier(self.tables.login_attempts)

    async def record_login_attempt(
        self,
        email: str,
        success: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        conn: Optional[AdapterConnection] = None,
    ) -> None:
        """Append one attempt. Never fails on account state."""
        async with self.adapter.using(conn) as c:
            await c.execute(
                f"INSERT INTO {self._table} (email, success, ip_address, user_agent, attempted_at) "
                "VALUES (?, ?, ?, ?, ?)",
                normalize_email(email),
                bool(success),
                ip_address[:45] if ip_address else None,
                user_agent,
                clock.now_ms(),
            )
        logger.debug("login_attempt_recorded", success=success)

    async def count_failed_attempts(
        self,
        email: str,
        window_minutes: Optional[int] = None,
        conn: Optional[AdapterConnection] = None,
    ) -> int:
        """Count the failures that the active policy holds against this email."""
        window_ms = self.window_ms if window_minutes is None else window_minutes * 60 * 1000
        since = clock.now_ms() - window_ms
        email = normalize_email(email)

        async with self.adapter.using(conn) as c:
            if self.policy == RESET_ON_SUCCESS:
                last_success = await c.fetchval(
                    f"SELECT MAX(attempted_at) AS last_success FROM {self._table} "
                    "WHERE email = ? AND success = TRUE",
                    email,
                )
                if last_success is not None:
                    since = max(since, int(last_success))
            count = await c.fetchval(
                f"SELECT COUNT(*) AS failures FROM {self._table} "
                "WHERE email = ? AND success = FALSE AND attempted_at > ?",
                email,
                since,
            )
        return int(count or 0)

    async def is_account_locked(
        self,
        email: str,
        max_attempts: Optional[int] = None,
        window_minutes: Optional[int] = None,
        conn: Optional[AdapterConnection] = None,
    ) -> bool:
        """True when counted failures in the window reach the threshold."""
        threshold = self.max_attempts if max_attempts is None else max_attempts
        failures = await self.count_failed_attempts(email, window_minutes, conn=conn)
        locked = failures >= threshold
        if locked:
            logger.warning("account_locked", failures=failures, threshold=threshold)
        return locked

    async def recent_attempts(self, email: str, limit: int = 20) -> list[LoginAttempt]:
        """Most recent attempts for an email, newest first."""
        rows = await self.adapter.fetch(
            f"SELECT * FROM {self._table} WHERE email = ? ORDER BY attempted_at DESC, id DESC LIMIT ?",
            normalize_email(email),
            limit,
        )
        return [LoginAttempt.model_validate(row) for row in rows]
