"""Credential acquisition for the convergence engine.

The engine never sees a secret. Credentials are obtained through the narrow
CredentialProvider protocol, and the shipped provider only hands out
ManagedIdentityCredential instances after verifying that no password or
certificate material is present in the environment.

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET must never be present in the environment
2. ManagedIdentityCredential is the only credential type handed to managers
3. SQL servers are created with Entra ID only authentication
4. MySQL server administrator passwords are generated for a single create
   request and never stored or logged
"""

from __future__ import annotations

import logging
import os
import secrets
import string
from typing import Protocol, runtime_checkable

from azure.core.credentials import TokenCredential
from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Secretless architecture violation: {env_var} is set. "
    "Remove credential environment variables and assign a managed identity "
    "with RBAC roles on the target resource groups instead."
)


class SecretlessViolationError(Exception):
    """Raised when a credential secret is detected in the environment.

    This is a fatal error. The operator must not start.
    """

    pass


@runtime_checkable
class CredentialProvider(Protocol):
    """Supplies the token credential used by every resource manager."""

    def get_credential(self) -> TokenCredential: ...


def enforce_secretless_architecture() -> None:
    """Ensure no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "Secretless architecture verified",
        extra={
            "security_event": "secretless_verified",
            "credential_type": "ManagedIdentity",
        },
    )


class ManagedIdentityCredentialProvider:
    """CredentialProvider backed by a system or user-assigned managed identity.

    The credential is created lazily on first use and cached, so every
    manager built from one provider shares a single token cache.
    """

    def __init__(self, client_id: str | None = None) -> None:
        """Initialize the provider.

        Args:
            client_id: Client ID of a user-assigned managed identity. When None
                the system-assigned identity is used.
        """
        self._client_id = client_id
        self._credential: ManagedIdentityCredential | None = None

    def get_credential(self) -> ManagedIdentityCredential:
        """Return the managed identity credential.

        Raises:
            SecretlessViolationError: If credential environment variables are set.
        """
        if self._credential is not None:
            return self._credential

        enforce_secretless_architecture()

        if self._client_id:
            logger.info(
                "Using user-assigned managed identity",
                extra={"client_id": _redact(self._client_id)},
            )
            self._credential = ManagedIdentityCredential(client_id=self._client_id)
        else:
            logger.info("Using system-assigned managed identity")
            self._credential = ManagedIdentityCredential()
        return self._credential


def _redact(value: str) -> str:
    return value[:8] + "..." if len(value) > 8 else value


# Symbols accepted in Azure Database for MySQL administrator passwords
PASSWORD_SYMBOLS = "!#$%*+-.:=?@^_~"


def generate_administrator_password(length: int = 32) -> str:
    """Random administrator password meeting the MySQL server complexity rules.

    The password is sent in a single create request and then discarded.
    Servers are administered through their Entra ID administrator.
    """
    if length < 8:
        raise ValueError("administrator passwords need at least 8 characters")
    alphabet = string.ascii_letters + string.digits + PASSWORD_SYMBOLS
    while True:
        password = "".join(secrets.choice(alphabet) for _ in range(length))
        if (
            any(c.islower() for c in password)
            and any(c.isupper() for c in password)
            and any(c.isdigit() for c in password)
            and any(c in PASSWORD_SYMBOLS for c in password)
        ):
            return password
