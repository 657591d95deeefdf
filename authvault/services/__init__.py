"""Services package exports."""

from authvault.services.auth_service import AuthVault, MailTransport
from authvault.services.credential_store import CredentialStore
from authvault.services.ephemeral_store import EphemeralStore
from authvault.services.logging_service import audit, configure_logging
from authvault.services.login_ledger import LoginAttemptLedger
from authvault.services.maintenance_service import MaintenanceService
from authvault.services.password_service import BcryptPasswordHasher, PasswordHasher, PasswordPolicy
from authvault.services.refresh_vault import RefreshTokenVault
from authvault.services.schema_evolution import SchemaEvolution
from authvault.services.token_service import TokenIssuer

__all__ = [
    "AuthVault",
    "BcryptPasswordHasher",
    "CredentialStore",
    "EphemeralStore",
    "LoginAttemptLedger",
    "MailTransport",
    "MaintenanceService",
    "PasswordHasher",
    "PasswordPolicy",
    "RefreshTokenVault",
    "SchemaEvolution",
    "TokenIssuer",
    "audit",
    "configure_logging",
]
