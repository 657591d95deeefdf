"""Unit tests for RefreshTokenVault."""

import asyncio

import pytest

from authvault.models.user import TokenState
from authvault.services.refresh_vault import RefreshTokenVault, digest


@pytest.fixture
def token_vault(sqlite_adapter, settings):
    return RefreshTokenVault(sqlite_adapter, settings.tables, default_ttl_days=7)


@pytest.fixture
async def user_id(sqlite_adapter, settings):
    return await sqlite_adapter.insert(
        f'INSERT INTO "{settings.tables.users}" (email, password_hash) VALUES (?, ?)',
        "owner@example.com",
        "x",
    )


class TestDigest:
    def test_sha256_hex(self):
        assert digest("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestStoreAndFind:
    """Tests for storing and classifying tokens."""

    async def test_only_digest_is_stored(self, token_vault, sqlite_adapter, settings, user_id):
        await token_vault.store_refresh_token(user_id, "raw-token")

        stored = await sqlite_adapter.fetchval(
            f'SELECT token_digest FROM "{settings.tables.refresh_tokens}"'
        )
        assert stored == digest("raw-token")

    async def test_find_active(self, token_vault, user_id):
        await token_vault.store_refresh_token(user_id, "raw-token")
        record = await token_vault.find_refresh_token("raw-token")
        assert record.user_id == user_id
        assert record.revoked is False

    async def test_state_transitions(self, token_vault, user_id, fake_clock):
        assert (await token_vault.lookup_token_state("nope"))[0] == TokenState.MISSING

        await token_vault.store_refresh_token(user_id, "t1", expires_at=fake_clock.now + 60_000)
        assert (await token_vault.lookup_token_state("t1"))[0] == TokenState.ACTIVE

        fake_clock.advance(minutes=2)
        assert (await token_vault.lookup_token_state("t1"))[0] == TokenState.EXPIRED
        assert await token_vault.find_refresh_token("t1") is None

        await token_vault.store_refresh_token(user_id, "t2")
        await token_vault.revoke_refresh_token("t2")
        state, record = await token_vault.lookup_token_state("t2")
        assert state == TokenState.REVOKED
        assert record.revoked is True


class TestConsume:
    """Tests for single-use consumption."""

    async def test_consume_once(self, token_vault, user_id):
        await token_vault.store_refresh_token(user_id, "raw-token")
        assert await token_vault.consume_refresh_token("raw-token") is True
        assert await token_vault.consume_refresh_token("raw-token") is False

    async def test_concurrent_consumers_have_one_winner(self, token_vault, user_id):
        await token_vault.store_refresh_token(user_id, "raw-token")
        results = await asyncio.gather(
            *(token_vault.consume_refresh_token("raw-token") for _ in range(5))
        )
        assert results.count(True) == 1

    async def test_expired_cannot_be_consumed(self, token_vault, user_id, fake_clock):
        await token_vault.store_refresh_token(user_id, "raw-token", expires_at=fake_clock.now + 1000)
        fake_clock.advance(minutes=1)
        assert await token_vault.consume_refresh_token("raw-token") is False


class TestRevoke:
    """Tests for revocation."""

    async def test_revoke_unknown_is_false(self, token_vault):
        assert await token_vault.revoke_refresh_token("nope") is False

    async def test_revoke_twice(self, token_vault, user_id):
        await token_vault.store_refresh_token(user_id, "raw-token")
        assert await token_vault.revoke_refresh_token("raw-token") is True
        assert await token_vault.revoke_refresh_token("raw-token") is False

    async def test_revoke_all(self, token_vault, user_id):
        for raw in ("a", "b", "c"):
            await token_vault.store_refresh_token(user_id, raw)
        await token_vault.revoke_refresh_token("a")

        assert await token_vault.revoke_all_user_tokens(user_id) == 2
        assert await token_vault.find_refresh_token("b") is None
