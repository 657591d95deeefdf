"""Unit tests for TokenIssuer."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from structlog.testing import capture_logs

from authvault.config import DEFAULT_ACCESS_SECRET, DEFAULT_REFRESH_SECRET
from authvault.errors import ConfigurationError, TokenExpiredError, TokenInvalidError, ValidationError
from authvault.services.token_service import TokenIssuer

from tests.helpers import TEST_ACCESS_SECRET, TEST_REFRESH_SECRET

PAYLOAD = {"user_id": 7, "email": "ada@example.com"}


@pytest.fixture
def issuer():
    return TokenIssuer(TEST_ACCESS_SECRET, TEST_REFRESH_SECRET)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

class TestConstruction:
    """Tests for secret validation."""

    def test_requires_both_secrets(self):
        with pytest.raises(ConfigurationError, match="required"):
            TokenIssuer("", TEST_REFRESH_SECRET)

    def test_secrets_must_differ(self):
        with pytest.raises(ConfigurationError, match="different"):
            TokenIssuer(TEST_ACCESS_SECRET, TEST_ACCESS_SECRET)

    def test_default_secrets_rejected_in_production(self):
        with pytest.raises(ConfigurationError, match="production"):
            TokenIssuer(DEFAULT_ACCESS_SECRET, DEFAULT_REFRESH_SECRET, production=True)

    def test_short_secret_rejected_in_production(self):
        with pytest.raises(ConfigurationError, match="jwt_refresh_secret"):
            TokenIssuer(TEST_ACCESS_SECRET, "short", production=True)

    def test_weak_secret_warns_outside_production(self):
        with capture_logs() as logs:
            TokenIssuer(DEFAULT_ACCESS_SECRET, DEFAULT_REFRESH_SECRET)
        assert any(log["event"] == "jwt_secret_weak" for log in logs)

    def test_from_settings(self, settings):
        issuer = TokenIssuer.from_settings(settings)
        assert issuer.access_lifetime == timedelta(minutes=settings.access_token_expire_minutes)
        assert issuer.refresh_lifetime == timedelta(days=settings.refresh_token_expire_days)


# ---------------------------------------------------------------------------
# Generation and verification
# ---------------------------------------------------------------------------

class TestGenerateTokens:
    """Tests for generate_tokens and generate_access_token."""

    def test_pair_claims(self, issuer):
        pair = issuer.generate_tokens(PAYLOAD)

        access = issuer.verify_access_token(pair.access_token)
        refresh = issuer.verify_refresh_token(pair.refresh_token)
        assert access["sub"] == "7"
        assert access["email"] == "ada@example.com"
        assert access["type"] == "access"
        assert refresh["type"] == "refresh"
        assert access["jti"] != refresh["jti"]
        assert pair.token_type == "bearer"
        assert pair.expires_in == 15 * 60

    def test_every_pair_is_unique(self, issuer):
        first = issuer.generate_tokens(PAYLOAD)
        second = issuer.generate_tokens(PAYLOAD)
        assert first.refresh_token != second.refresh_token

    def test_reserved_claims_cannot_be_overridden(self, issuer):
        token = issuer.generate_access_token({**PAYLOAD, "type": "refresh", "sub": "999"})
        claims = issuer.verify_access_token(token)
        assert claims["type"] == "access"
        assert claims["sub"] == "7"

    @pytest.mark.parametrize("payload", [{}, {"user_id": 1}, {"email": "a@b.com"}, None])
    def test_payload_requires_user_id_and_email(self, issuer, payload):
        with pytest.raises(ValidationError):
            issuer.generate_tokens(payload)


class TestVerify:
    """Tests for verify_access_token and verify_refresh_token."""

    def test_refresh_token_rejected_as_access(self, issuer):
        pair = issuer.generate_tokens(PAYLOAD)
        with pytest.raises(TokenInvalidError):
            issuer.verify_access_token(pair.refresh_token)

    def test_access_token_rejected_as_refresh(self, issuer):
        pair = issuer.generate_tokens(PAYLOAD)
        with pytest.raises(TokenInvalidError):
            issuer.verify_refresh_token(pair.access_token)

    def test_wrong_type_claim_with_right_secret(self, issuer):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": "7", "type": "refresh", "exp": now + timedelta(minutes=5)},
            TEST_ACCESS_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(TokenInvalidError, match="wrong token type"):
            issuer.verify_access_token(token)

    def test_expired(self, issuer):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        token = jwt.encode({"sub": "7", "type": "access", "exp": past}, TEST_ACCESS_SECRET, algorithm="HS256")
        with pytest.raises(TokenExpiredError):
            issuer.verify_access_token(token)

    @pytest.mark.parametrize("token", ["", "not-a-jwt", None])
    def test_garbage(self, issuer, token):
        with pytest.raises(TokenInvalidError):
            issuer.verify_access_token(token)


class TestUnverifiedHelpers:
    """Tests for decode_token and expiry helpers."""

    def test_decode_without_verification(self, issuer):
        token = issuer.generate_access_token(PAYLOAD)
        assert issuer.decode_token(token)["email"] == "ada@example.com"
        assert issuer.decode_token("garbage") is None

    def test_expiration(self, issuer):
        token = issuer.generate_access_token(PAYLOAD)
        expiration = issuer.get_token_expiration(token)
        assert expiration > datetime.now(timezone.utc)
        assert issuer.is_token_expired(token) is False
        assert issuer.is_token_expired("garbage") is True
