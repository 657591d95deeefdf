"""JWT issuance and verification for access and refresh tokens."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
import structlog

from authvault.config import DEFAULT_ACCESS_SECRET, DEFAULT_REFRESH_SECRET, Settings
from authvault.errors import (
    ConfigurationError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from authvault.models.results import TokenPair

logger = structlog.get_logger(__name__)

MIN_SECRET_LENGTH = 32

ACCESS = "access"
REFRESH = "refresh"

# Claims set by the issuer; callers cannot override them through the payload
_RESERVED_CLAIMS = {"type", "jti", "iat", "exp", "sub"}


class TokenIssuer:
    """Signs and verifies access/refresh JWTs with separate secrets.

    Access tokens are short-lived and verified on every request. Refresh
    tokens are long-lived; their revocation state lives in the refresh vault,
    not in the JWT.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        access_expire_minutes: int = 15,
        refresh_expire_days: int = 7,
        production: bool = False,
    ):
        if not access_secret or not refresh_secret:
            raise ConfigurationError("JWT access and refresh secrets are required")
        if access_secret == refresh_secret:
            raise ConfigurationError("JWT access and refresh secrets must be different")

        weak = [
            name
            for name, secret, default in (
                ("jwt_access_secret", access_secret, DEFAULT_ACCESS_SECRET),
                ("jwt_refresh_secret", refresh_secret, DEFAULT_REFRESH_SECRET),
            )
            if secret == default or len(secret) < MIN_SECRET_LENGTH
        ]
        if weak:
            if production:
                raise ConfigurationError(
                    f"{', '.join(weak)} must be set to a random value of at least "
                    f"{MIN_SECRET_LENGTH} characters in production"
                )
            logger.warning("jwt_secret_weak", settings=weak)

        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.access_lifetime = timedelta(minutes=access_expire_minutes)
        self.refresh_lifetime = timedelta(days=refresh_expire_days)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            algorithm=settings.jwt_algorithm,
            access_expire_minutes=settings.access_token_expire_minutes,
            refresh_expire_days=settings.refresh_token_expire_days,
            production=settings.is_production,
        )

    def _sign(self, payload: dict, token_type: str) -> str:
        if token_type == ACCESS:
            secret, lifetime = self._access_secret, self.access_lifetime
        else:
            secret, lifetime = self._refresh_secret, self.refresh_lifetime
        now = datetime.now(timezone.utc)
        claims = {k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS}
        claims.update(
            {
                "sub": str(payload["user_id"]),
                "type": token_type,
                "jti": secrets.token_hex(16),
                "iat": now,
                "exp": now + lifetime,
            }
        )
        return jwt.encode(claims, secret, algorithm=self.algorithm)

    @staticmethod
    def _check_payload(payload: dict) -> None:
        if not isinstance(payload, dict) or payload.get("user_id") is None or not payload.get("email"):
            raise ValidationError("Token payload requires user_id and email")

    def generate_access_token(self, payload: dict) -> str:
        """Sign a new access token.

        Raises:
            ValidationError: If payload lacks user_id or email
        """
        self._check_payload(payload)
        return self._sign(payload, ACCESS)

    def generate_tokens(self, payload: dict) -> TokenPair:
        """Sign an access/refresh pair for a user.

        Args:
            payload: Claims; must contain user_id and email

        Returns:
            TokenPair with both encoded tokens

        Raises:
            ValidationError: If payload lacks user_id or email
        """
        self._check_payload(payload)
        pair = TokenPair(
            access_token=self._sign(payload, ACCESS),
            refresh_token=self._sign(payload, REFRESH),
            expires_in=int(self.access_lifetime.total_seconds()),
        )
        logger.debug("tokens_generated", user_id=payload["user_id"])
        return pair

    def _verify(self, token: str, secret: str, token_type: str) -> dict:
        if not isinstance(token, str) or not token:
            raise TokenInvalidError(f"Invalid {token_type} token: token is required")
        try:
            claims = jwt.decode(token, secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError(f"{token_type.capitalize()} token has expired") from e
        except jwt.InvalidTokenError as e:
            raise TokenInvalidError(f"Invalid {token_type} token: {e}") from e
        if claims.get("type") != token_type:
            raise TokenInvalidError(f"Invalid {token_type} token: wrong token type")
        return claims

    def verify_access_token(self, token: str) -> dict:
        """Decode and validate an access token.

        Raises:
            TokenExpiredError: If the token has expired
            TokenInvalidError: If the signature, format or type is wrong
        """
        return self._verify(token, self._access_secret, ACCESS)

    def verify_refresh_token(self, token: str) -> dict:
        """Decode and validate a refresh token.

        Raises:
            TokenExpiredError: If the token has expired
            TokenInvalidError: If the signature, format or type is wrong
        """
        return self._verify(token, self._refresh_secret, REFRESH)

    def decode_token(self, token: str) -> Optional[dict[str, Any]]:
        """Decode claims without verifying the signature. Returns None if malformed."""
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return None

    def get_token_expiration(self, token: str) -> Optional[datetime]:
        claims = self.decode_token(token)
        if not claims or "exp" not in claims:
            return None
        return datetime.fromtimestamp(claims["exp"], tz=timezone.utc)

    def is_token_expired(self, token: str) -> bool:
        expiration = self.get_token_expiration(token)
        return expiration is None or expiration <= datetime.now(timezone.utc)
