"""AuthVault: registration, login, token rotation, verification and reset flows."""

import inspect
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from authvault.config import Settings, get_settings
from authvault.database import create_adapter
from authvault.dialects.base import SQLAdapter
from authvault.errors import (
    AccountLockedError,
    ConfigurationError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
    ValidationError,
)
from authvault.models.results import (
    AuthResult,
    IssueResult,
    MaintenanceReport,
    MigrationReport,
    MigrationResult,
    TokenPair,
)
from authvault.models.schema import MAX_CUSTOM_FIELDS, FieldDescriptor, coerce_descriptor
from authvault.models.user import (
    ArtifactKind,
    ArtifactPurpose,
    RegistrationData,
    TokenState,
    User,
    normalize_email,
)
from authvault.services.credential_store import CredentialStore
from authvault.services.ephemeral_store import CODE_RE, EphemeralStore
from authvault.services.logging_service import audit
from authvault.services.login_ledger import LoginAttemptLedger
from authvault.services.maintenance_service import MaintenanceService
from authvault.services.password_service import BcryptPasswordHasher, PasswordHasher, PasswordPolicy
from authvault.services.refresh_vault import RefreshTokenVault
from authvault.services.schema_evolution import SchemaEvolution
from authvault.services.token_service import TokenIssuer

logger = structlog.get_logger(__name__)

HOOK_EVENTS = (
    "before_register",
    "after_register",
    "before_login",
    "after_login",
    "before_token_refresh",
    "after_token_refresh",
)

RESET_REQUESTED_MESSAGE = "If an account exists for this email, password reset instructions have been sent"

Hook = Callable[[Any], Optional[Awaitable[None]]]


class MailTransport(Protocol):
    """Delivers a verification or reset value to a user. Implemented by the caller."""
    async def deliver(
        self,
        email: str,
        purpose: ArtifactPurpose,
        kind: ArtifactKind,
        value: str,
        expires_at: int,
    ) -> None: ...


def _validate_model(model: type[BaseModel], data: Any) -> BaseModel:
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(messages) from e


class AuthVault:
    """Entry point tying the stores, the token issuer and the mail transport together.

    Usage:
        vault = AuthVault(settings, mail_transport=my_transport)
        vault.add_field({"name": "plan", "type": "ENUM('free','pro')", "default_value": "free"})
        await vault.init()
        result = await vault.register({"email": "a@b.com", "password": "S3cure!pw"})
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        adapter: Optional[SQLAdapter] = None,
        hasher: Optional[PasswordHasher] = None,
        token_issuer: Optional[TokenIssuer] = None,
        mail_transport: Optional[MailTransport] = None,
        password_policy: Optional[PasswordPolicy] = None,
    ):
        self.settings = settings or get_settings()
        self.tables = self.settings.tables
        self.adapter = adapter or create_adapter(self.settings)
        self.hasher = hasher or BcryptPasswordHasher(self.settings.bcrypt_rounds)
        self.tokens = token_issuer or TokenIssuer.from_settings(self.settings)
        self.password_policy = password_policy or PasswordPolicy.from_settings(self.settings)
        self.mail = mail_transport

        self.users = CredentialStore(self.adapter, self.tables)
        self.ledger = LoginAttemptLedger(
            self.adapter,
            self.tables,
            max_attempts=self.settings.max_login_attempts,
            window_minutes=self.settings.lockout_minutes,
            policy=self.settings.lockout_policy,
        )
        self.vault = RefreshTokenVault(
            self.adapter, self.tables, default_ttl_days=self.settings.refresh_token_expire_days
        )
        self.ephemeral = EphemeralStore.from_settings(self.adapter, self.settings)
        self.schema = SchemaEvolution(self.adapter, self.tables, self.users)
        self.maintenance = MaintenanceService(
            self.adapter,
            self.tables,
            batch_size=self.settings.maintenance_batch_size,
            login_attempts_retention_days=self.settings.login_attempts_retention_days,
            refresh_tokens_retention_days=self.settings.refresh_tokens_retention_days,
        )

        self._pending_fields: list[FieldDescriptor] = []
        self._hooks: dict[str, list[Hook]] = {event: [] for event in HOOK_EVENTS}
        self._initialized = False

    # Lifecycle

    def add_field(self, field: FieldDescriptor | dict) -> "AuthVault":
        """Declare a custom users column. Only allowed before init().

        Raises:
            ConfigurationError: If called after init()
            ValidationError: Bad or reserved name, bad type, or too many fields
            ConflictError: Name already declared
        """
        if self._initialized:
            raise ConfigurationError(
                "add_field() must be called before init(); use dangerously_add_column() afterwards"
            )
        descriptor = coerce_descriptor(field)
        if descriptor.is_reserved:
            raise ValidationError(f"Field name '{descriptor.name}' is reserved")
        if any(d.name.lower() == descriptor.name.lower() for d in self._pending_fields):
            raise ConflictError(f"Field '{descriptor.name}' is already declared")
        if len(self._pending_fields) >= MAX_CUSTOM_FIELDS:
            raise ValidationError(f"At most {MAX_CUSTOM_FIELDS} custom fields are allowed")
        self._pending_fields.append(descriptor)
        return self

    async def init(self) -> None:
        """Connect, create tables, indexes and triggers, and register custom fields."""
        if self._initialized:
            return
        await self.adapter.connect()
        await self.adapter.create_tables(self.tables, self._pending_fields)
        await self.adapter.create_indexes(self.tables)
        for descriptor in self._pending_fields:
            if await self.adapter.column_exists(self.tables.users, descriptor.name):
                self.users.register_field(descriptor)
        self._initialized = True
        logger.info(
            "authvault_initialized",
            dialect=self.adapter.name,
            custom_fields=len(self.users.custom_fields),
        )

    async def close(self) -> None:
        await self.adapter.close()
        self._initialized = False

    async def health_check(self) -> bool:
        return self._initialized and await self.adapter.health_check()

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise ConfigurationError("AuthVault is not initialized. Call await init() first.")

    # Hooks

    def on(self, event: str, callback: Hook) -> "AuthVault":
        """Register a hook. Callbacks may be sync or async; an exception aborts the operation."""
        if event not in self._hooks:
            raise ValidationError(
                f"Invalid hook event: {event}. Valid events: {', '.join(HOOK_EVENTS)}"
            )
        if not callable(callback):
            raise ValidationError("Hook callback must be callable")
        self._hooks[event].append(callback)
        return self

    async def _run_hooks(self, event: str, data: Any) -> None:
        for hook in self._hooks[event]:
            try:
                result = hook(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("hook_failed", hook_event=event, error=str(e))
                raise

    # Sessions

    async def _issue_session(self, user: User, conn=None) -> TokenPair:
        pair = self.tokens.generate_tokens({"user_id": user.id, "email": user.email})
        expiration = self.tokens.get_token_expiration(pair.refresh_token)
        await self.vault.store_refresh_token(
            user.id, pair.refresh_token, int(expiration.timestamp() * 1000), conn=conn
        )
        return pair

    async def register(self, data: dict | RegistrationData) -> AuthResult:
        """Create a user and start a session.

        Raises:
            ValidationError: Bad email, weak password, an unregistered or
                protected field, or a badly typed custom field value
            ConflictError: Email already registered
        """
        self._ensure_initialized()
        payload = data.model_dump() if isinstance(data, RegistrationData) else dict(data)
        await self._run_hooks("before_register", payload)

        registration = _validate_model(RegistrationData, payload)
        extras = registration.model_extra or {}
        # Only registered custom fields may ride along; built-in columns are set by the flows
        rejected = sorted(set(extras) - set(self.users.custom_fields))
        if rejected:
            raise ValidationError(f"Fields cannot be set on registration: {', '.join(rejected)}")
        self.password_policy.validate(registration.password)
        password_hash = await self.hasher.hash_password(registration.password)

        values = {
            "email": registration.email,
            "password_hash": password_hash,
            "first_name": registration.first_name,
            "last_name": registration.last_name,
            **extras,
        }
        user = await self.users.create_user({k: v for k, v in values.items() if v is not None})
        tokens = await self._issue_session(user)

        audit("USER_REGISTERED", user_id=user.id, email=user.email, success=True)

        if self.settings.require_email_verification and self.mail is not None:
            try:
                await self.send_verification_email(user.email)
            except Exception as e:
                # Registration stands even if the mail cannot go out
                logger.error("verification_email_failed", user_id=user.id, error=str(e))

        result = AuthResult(user=user, tokens=tokens)
        await self._run_hooks("after_register", result)
        return result

    async def login(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Authenticate with email and password.

        The lockout check runs first, so a correct password does not get
        through while the account is locked.

        Raises:
            ValidationError: Missing email or password
            AccountLockedError: Too many recent failures
            InvalidCredentialsError: Unknown email, wrong password or disabled account
        """
        self._ensure_initialized()
        if not isinstance(email, str) or not email.strip() or not isinstance(password, str) or not password:
            raise ValidationError("Email and password are required")
        email = normalize_email(email)
        await self._run_hooks("before_login", {"email": email})

        if await self.ledger.is_account_locked(email):
            audit("USER_LOGIN", email=email, success=False, reason="locked")
            raise AccountLockedError(
                "Account is temporarily locked due to too many failed login attempts"
            )

        found = await self.users.find_credentials_by_email(email)
        valid = found is not None and await self.hasher.verify_password(password, found[1])
        if not valid or not found[0].is_active:
            await self.ledger.record_login_attempt(email, False, ip_address, user_agent)
            audit("USER_LOGIN", email=email, success=False, reason="invalid_credentials")
            if valid:
                raise InvalidCredentialsError("Account is disabled")
            raise InvalidCredentialsError("Invalid email or password")

        user = found[0]
        await self.ledger.record_login_attempt(email, True, ip_address, user_agent)
        tokens = await self._issue_session(user)

        audit("USER_LOGIN", user_id=user.id, email=user.email, success=True)
        result = AuthResult(user=user, tokens=tokens)
        await self._run_hooks("after_login", result)
        return result

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Exchange a refresh token for a new pair, revoking the old one.

        Raises:
            TokenInvalidError: Unknown, malformed or tampered token, or its user is gone
            TokenRevokedError: Token revoked, or already used by a concurrent refresh
            TokenExpiredError: Token past its expiry
        """
        self._ensure_initialized()
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            raise TokenInvalidError("Invalid refresh token provided")
        await self._run_hooks("before_token_refresh", {"refresh_token": refresh_token})

        state, record = await self.vault.lookup_token_state(refresh_token)
        if state == TokenState.MISSING:
            raise TokenInvalidError("Invalid refresh token")
        if state == TokenState.REVOKED:
            raise TokenRevokedError("Refresh token has been revoked")
        if state == TokenState.EXPIRED:
            raise TokenExpiredError("Refresh token has expired")

        claims = self.tokens.verify_refresh_token(refresh_token)
        if claims.get("sub") != str(record.user_id):
            raise TokenInvalidError("Refresh token does not belong to its stored owner")

        user = await self.users.find_user_by_id(record.user_id)
        if user is None or not user.is_active:
            raise TokenInvalidError("Refresh token user no longer exists or is disabled")

        async with self.adapter.transaction() as conn:
            if not await self.vault.consume_refresh_token(refresh_token, conn=conn):
                raise TokenRevokedError("Refresh token has already been used")
            tokens = await self._issue_session(user, conn=conn)

        audit("TOKEN_REFRESH", user_id=user.id, email=user.email, success=True)
        result = AuthResult(user=user, tokens=tokens)
        await self._run_hooks("after_token_refresh", result)
        return result

    async def logout(self, refresh_token: str) -> bool:
        """Revoke one refresh token. Returns whether anything was revoked."""
        self._ensure_initialized()
        if not isinstance(refresh_token, str) or not refresh_token:
            raise ValidationError("Refresh token is required")
        revoked = await self.vault.revoke_refresh_token(refresh_token)
        audit("USER_LOGOUT", success=revoked)
        return revoked

    async def logout_all(self, user_id: int) -> int:
        """Revoke every refresh token of a user. Returns how many were revoked."""
        self._ensure_initialized()
        revoked = await self.vault.revoke_all_user_tokens(user_id)
        audit("USER_LOGOUT_ALL", user_id=user_id, success=True, revoked_count=revoked)
        return revoked

    def verify_access_token(self, token: str) -> dict:
        return self.tokens.verify_access_token(token)

    # Users

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        self._ensure_initialized()
        return await self.users.find_user_by_id(user_id)

    async def update_user(self, user_id: int, updates: dict[str, Any]) -> User:
        self._ensure_initialized()
        return await self.users.update_user(user_id, updates)

    async def get_user_count(self) -> int:
        self._ensure_initialized()
        return await self.users.get_user_count()

    async def is_email_verified(self, user_id: int) -> bool:
        self._ensure_initialized()
        return await self.users.is_email_verified(user_id)

    async def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        """Change a password and revoke every session of the user.

        Raises:
            ValidationError: Missing passwords, unchanged password, or weak new password
            NotFoundError: Unknown user
            InvalidCredentialsError: Wrong current password
        """
        self._ensure_initialized()
        if not current_password or not new_password:
            raise ValidationError("Both current and new passwords are required")
        if current_password == new_password:
            raise ValidationError("New password must be different from the current password")

        user = await self.users.find_user_by_id(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        _, current_hash = await self.users.find_credentials_by_email(user.email)
        if not await self.hasher.verify_password(current_password, current_hash):
            audit("PASSWORD_CHANGE", user_id=user_id, success=False)
            raise InvalidCredentialsError("Invalid current password")

        self.password_policy.validate(new_password)
        new_hash = await self.hasher.hash_password(new_password)
        async with self.adapter.transaction() as conn:
            await self.users.set_password_hash(user_id, new_hash, conn=conn)
            await self.vault.revoke_all_user_tokens(user_id, conn=conn)

        audit("PASSWORD_CHANGE", user_id=user_id, success=True)

    # Verification and reset

    def _require_mail(self) -> MailTransport:
        if self.mail is None:
            raise ConfigurationError("No mail transport configured; pass mail_transport to AuthVault")
        return self.mail

    async def _user_for_verification(self, email: str) -> User:
        user = await self.users.find_user_by_email(email)
        if user is None:
            raise NotFoundError("User not found")
        if user.email_verified:
            raise ValidationError("Email is already verified")
        return user

    async def send_verification_email(self, email: str, ttl: Optional[timedelta] = None) -> IssueResult:
        """Issue a verification URL token and deliver it.

        Raises:
            ConfigurationError: No mail transport
            NotFoundError: Unknown email
            ValidationError: Email already verified
        """
        self._ensure_initialized()
        mail = self._require_mail()
        user = await self._user_for_verification(email)
        token, expires_at = await self.ephemeral.issue_token(user.id, ArtifactPurpose.VERIFY_EMAIL, ttl)
        await mail.deliver(user.email, ArtifactPurpose.VERIFY_EMAIL, ArtifactKind.TOKEN, token, expires_at)
        return IssueResult(success=True, message="Verification email sent", expires_at=expires_at)

    async def resend_verification_email(self, email: str) -> IssueResult:
        """Issue a fresh verification token; the previous one stops working."""
        result = await self.send_verification_email(email)
        logger.info("verification_email_resent")
        return result

    async def verify_email(self, token: str) -> User:
        """Consume a verification token and mark the email verified.

        Raises:
            NotFoundError: Unknown, expired or already used token
        """
        self._ensure_initialized()
        async with self.adapter.transaction() as conn:
            user_id = await self.ephemeral.consume_token(token, ArtifactPurpose.VERIFY_EMAIL, conn=conn)
            await self.users.mark_email_verified(user_id, conn=conn)
            user = await self.users.find_user_by_id(user_id, conn=conn)
        audit("EMAIL_VERIFIED", user_id=user_id, success=True)
        return user

    async def send_verification_code(self, email: str) -> IssueResult:
        """Issue a 6-digit verification code and deliver it. Replaces any earlier code."""
        self._ensure_initialized()
        mail = self._require_mail()
        user = await self._user_for_verification(email)
        code, expires_at = await self.ephemeral.issue_code(user.id, ArtifactPurpose.VERIFY_EMAIL)
        await mail.deliver(user.email, ArtifactPurpose.VERIFY_EMAIL, ArtifactKind.CODE, code, expires_at)
        return IssueResult(success=True, message="Verification code sent", expires_at=expires_at)

    async def verify_code(self, email: str, code: str) -> User:
        """Consume a verification code and mark the email verified.

        Raises:
            ValidationError: Code is not 6 digits (checked before any lookup)
            NotFoundError: Wrong, expired, replaced or already used code
        """
        self._ensure_initialized()
        if not isinstance(code, str) or not CODE_RE.fullmatch(code):
            raise ValidationError("Code must be exactly 6 digits")
        user = await self.users.find_user_by_email(email)
        if user is None:
            raise NotFoundError("Invalid or expired code")
        async with self.adapter.transaction() as conn:
            await self.ephemeral.consume_code(user.id, code, ArtifactPurpose.VERIFY_EMAIL, conn=conn)
            await self.users.mark_email_verified(user.id, conn=conn)
            user = await self.users.find_user_by_id(user.id, conn=conn)
        audit("EMAIL_VERIFIED", user_id=user.id, success=True, method="code")
        return user

    async def _request_reset(self, email: str, kind: ArtifactKind) -> IssueResult:
        mail = self._require_mail()
        user = await self.users.find_user_by_email(email) if isinstance(email, str) else None
        if user is None:
            logger.info("password_reset_unknown_email")
            return IssueResult(success=True, message=RESET_REQUESTED_MESSAGE)

        if kind == ArtifactKind.TOKEN:
            value, expires_at = await self.ephemeral.issue_token(user.id, ArtifactPurpose.RESET_PASSWORD)
        else:
            value, expires_at = await self.ephemeral.issue_code(user.id, ArtifactPurpose.RESET_PASSWORD)
        try:
            await mail.deliver(user.email, ArtifactPurpose.RESET_PASSWORD, kind, value, expires_at)
        except Exception as e:
            # Same answer either way so callers cannot probe which emails exist
            logger.error("password_reset_delivery_failed", user_id=user.id, error=str(e))
        return IssueResult(success=True, message=RESET_REQUESTED_MESSAGE)

    async def send_password_reset_email(self, email: str) -> IssueResult:
        """Request a reset link. Returns the same result whether or not the email exists."""
        self._ensure_initialized()
        return await self._request_reset(email, ArtifactKind.TOKEN)

    async def send_password_reset_code(self, email: str) -> IssueResult:
        """Request a 6-digit reset code. Returns the same result whether or not the email exists."""
        self._ensure_initialized()
        return await self._request_reset(email, ArtifactKind.CODE)

    async def _apply_reset(self, user_id: int, new_hash: str, conn) -> None:
        await self.users.set_password_hash(user_id, new_hash, conn=conn)
        await self.vault.revoke_all_user_tokens(user_id, conn=conn)

    async def reset_password(self, token: str, new_password: str) -> None:
        """Consume a reset token, set the new password and revoke every session.

        Raises:
            ValidationError: Weak new password
            NotFoundError: Unknown, expired or already used token
        """
        self._ensure_initialized()
        self.password_policy.validate(new_password)
        new_hash = await self.hasher.hash_password(new_password)
        async with self.adapter.transaction() as conn:
            user_id = await self.ephemeral.consume_token(token, ArtifactPurpose.RESET_PASSWORD, conn=conn)
            await self._apply_reset(user_id, new_hash, conn)
        audit("PASSWORD_RESET", user_id=user_id, success=True)

    async def reset_password_with_code(self, email: str, code: str, new_password: str) -> None:
        """Consume a reset code, set the new password and revoke every session.

        Raises:
            ValidationError: Code is not 6 digits, or weak new password
            NotFoundError: Wrong, expired or already used code
        """
        self._ensure_initialized()
        if not isinstance(code, str) or not CODE_RE.fullmatch(code):
            raise ValidationError("Code must be exactly 6 digits")
        self.password_policy.validate(new_password)
        user = await self.users.find_user_by_email(email)
        if user is None:
            raise NotFoundError("Invalid or expired code")
        new_hash = await self.hasher.hash_password(new_password)
        async with self.adapter.transaction() as conn:
            await self.ephemeral.consume_code(user.id, code, ArtifactPurpose.RESET_PASSWORD, conn=conn)
            await self._apply_reset(user.id, new_hash, conn)
        audit("PASSWORD_RESET", user_id=user.id, success=True, method="code")

    # Schema evolution

    async def dangerously_add_column(
        self, field: FieldDescriptor | dict, confirmed: bool = False, skip_if_exists: bool = True
    ) -> MigrationResult:
        self._ensure_initialized()
        return await self.schema.add_column(field, confirmed=confirmed, skip_if_exists=skip_if_exists)

    async def dangerously_migrate_schema(
        self,
        fields: Sequence[FieldDescriptor | dict],
        confirmed: bool = False,
        use_transaction: bool = True,
    ) -> MigrationReport:
        self._ensure_initialized()
        return await self.schema.migrate_schema(
            fields, confirmed=confirmed, use_transaction=use_transaction
        )

    # Maintenance

    async def cleanup_expired_login_attempts(self, retention_days: Optional[int] = None) -> int:
        self._ensure_initialized()
        return await self.maintenance.cleanup_expired_login_attempts(retention_days)

    async def cleanup_expired_ephemeral(self) -> int:
        self._ensure_initialized()
        return await self.maintenance.cleanup_expired_ephemeral()

    async def cleanup_expired_refresh_tokens(self, retention_days: Optional[int] = None) -> int:
        self._ensure_initialized()
        return await self.maintenance.cleanup_expired_refresh_tokens(retention_days)

    async def perform_maintenance(self, **retention: int) -> MaintenanceReport:
        self._ensure_initialized()
        return await self.maintenance.perform_maintenance(**retention)
