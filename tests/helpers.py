"""Shared test doubles: asyncpg pool/connection mocks and a recording mail transport."""

from unittest.mock import AsyncMock

TEST_ACCESS_SECRET = "test-access-secret-0123456789abcdef0123456789"
TEST_REFRESH_SECRET = "test-refresh-secret-0123456789abcdef012345678"
STRONG_PASSWORD = "Tr0ub4dor&Horse"


class MockConnection:
    """Mock asyncpg connection with common query methods."""

    def __init__(self):
        self.execute = AsyncMock(return_value="SELECT 0")
        self.fetchrow = AsyncMock(return_value=None)
        self.fetchval = AsyncMock()
        self.fetch = AsyncMock(return_value=[])
        self.transactions = 0

    def transaction(self):
        self.transactions += 1
        return _AsyncNullContext()

    def executed_sql(self) -> list[str]:
        return [c.args[0] for c in self.execute.call_args_list]


class MockPool:
    """Mock asyncpg pool with acquire() context manager."""

    def __init__(self, conn: MockConnection):
        self._conn = conn
        self.close = AsyncMock()

    def acquire(self, timeout=None):
        return _MockPoolAcquire(self._conn)


class _MockPoolAcquire:
    def __init__(self, conn):
        self._conn = conn

    async def __aenter__(self):
        return self._conn

    async def __aexit__(self, *args):
        pass


class _AsyncNullContext:
    async def __aenter__(self):
        return None

    async def __aexit__(self, *args):
        return False


class FakeMailTransport:
    """Records every delivery instead of sending mail."""

    def __init__(self):
        self.deliveries = []
        self.fail = False

    async def deliver(self, email, purpose, kind, value, expires_at):
        if self.fail:
            raise ConnectionError("SMTP unavailable")
        self.deliveries.append(
            {"email": email, "purpose": purpose, "kind": kind, "value": value, "expires_at": expires_at}
        )

    def last_value(self) -> str:
        return self.deliveries[-1]["value"]
