"""Configuration management with validation.

All engine settings are validated at load time so that a misconfigured
operator fails at startup instead of in the middle of a reconciliation pass.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


DEFAULT_RESOURCE_MANAGER_ENDPOINT = "https://management.azure.com"
DEFAULT_USER_AGENT = "azure-convergence-operator"
MAX_USER_AGENT_LENGTH = 128

# Configuration constants with documented bounds
DEFAULT_RESYNC_INTERVAL_SECONDS = 300
MIN_RESYNC_INTERVAL_SECONDS = 60
MAX_RESYNC_INTERVAL_SECONDS = 3600

DEFAULT_POLL_INTERVAL_SECONDS = 5
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 60
DEFAULT_MAX_POLL_INTERVAL_SECONDS = 30

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800
MIN_OPERATION_TIMEOUT_SECONDS = 30
MAX_OPERATION_TIMEOUT_SECONDS = 7200

DEFAULT_PASS_TIMEOUT_SECONDS = 3600

DEFAULT_MAX_CONCURRENT_RECONCILES = 4
MAX_CONCURRENT_RECONCILES_LIMIT = 64

DEFAULT_MAX_RETRIES = 5
MAX_RETRIES_LIMIT = 20

DEFAULT_MAX_BACKOFF_SECONDS = 300
MIN_BACKOFF_CEILING_SECONDS = 10
MAX_BACKOFF_CEILING_SECONDS = 3600

# Input validation patterns
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_ENDPOINT_PATTERN = r"^https://[a-zA-Z0-9.-]+(:[0-9]+)?/?$"


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    subscription_id: str

    # Identity and endpoint
    tenant_id: str | None = None
    client_id: str | None = None
    resource_manager_endpoint: str = DEFAULT_RESOURCE_MANAGER_ENDPOINT
    user_agent: str = DEFAULT_USER_AGENT

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))

    # Timing
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_poll_interval_seconds: float = DEFAULT_MAX_POLL_INTERVAL_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    pass_timeout_seconds: int = DEFAULT_PASS_TIMEOUT_SECONDS

    # Concurrency and retries
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES
    max_retries: int = DEFAULT_MAX_RETRIES
    max_backoff_seconds: int = DEFAULT_MAX_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_GUID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.tenant_id and not re.match(VALID_GUID_PATTERN, self.tenant_id.lower()):
            errors.append(f"AZURE_TENANT_ID must be a valid GUID: {self.tenant_id}")

        if not re.match(VALID_ENDPOINT_PATTERN, self.resource_manager_endpoint):
            errors.append(
                "AZURE_RESOURCE_MANAGER_ENDPOINT must be an https URL: "
                f"{self.resource_manager_endpoint}"
            )

        if not self.user_agent or len(self.user_agent) > MAX_USER_AGENT_LENGTH:
            errors.append(
                f"CLIENT_USER_AGENT must be 1-{MAX_USER_AGENT_LENGTH} characters"
            )

        if not (
            MIN_RESYNC_INTERVAL_SECONDS
            <= self.resync_interval_seconds
            <= MAX_RESYNC_INTERVAL_SECONDS
        ):
            errors.append(
                f"RESYNC_INTERVAL must be between {MIN_RESYNC_INTERVAL_SECONDS} "
                f"and {MAX_RESYNC_INTERVAL_SECONDS} seconds"
            )

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )
        elif self.max_poll_interval_seconds < self.poll_interval_seconds:
            errors.append("MAX_POLL_INTERVAL must not be lower than POLL_INTERVAL")

        if not (
            MIN_OPERATION_TIMEOUT_SECONDS
            <= self.operation_timeout_seconds
            <= MAX_OPERATION_TIMEOUT_SECONDS
        ):
            errors.append(
                f"OPERATION_TIMEOUT must be between {MIN_OPERATION_TIMEOUT_SECONDS} "
                f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )
        elif self.pass_timeout_seconds < self.operation_timeout_seconds:
            errors.append("PASS_TIMEOUT must not be lower than OPERATION_TIMEOUT")

        if not 1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES_LIMIT:
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES_LIMIT}"
            )

        if not 1 <= self.max_retries <= MAX_RETRIES_LIMIT:
            errors.append(f"MAX_RETRIES must be between 1 and {MAX_RETRIES_LIMIT}")

        if not (
            MIN_BACKOFF_CEILING_SECONDS
            <= self.max_backoff_seconds
            <= MAX_BACKOFF_CEILING_SECONDS
        ):
            errors.append(
                f"MAX_BACKOFF must be between {MIN_BACKOFF_CEILING_SECONDS} "
                f"and {MAX_BACKOFF_CEILING_SECONDS} seconds"
            )

        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Subscription that owns the managed resources
            AZURE_TENANT_ID: Optional Entra ID tenant scope
            AZURE_CLIENT_ID: Optional user-assigned managed identity client ID
            AZURE_RESOURCE_MANAGER_ENDPOINT: ARM endpoint (default: public cloud)
            CLIENT_USER_AGENT: Identifier appended to every SDK request
            SPECS_DIR: Path to YAML resource specs (default: /specs)
            RESYNC_INTERVAL: Seconds between full resyncs (default: 300)
            POLL_INTERVAL: Initial long-running operation poll interval (default: 5)
            MAX_POLL_INTERVAL: Poll interval ceiling (default: 30)
            OPERATION_TIMEOUT: Timeout for one remote operation (default: 1800)
            PASS_TIMEOUT: Deadline for one reconciliation pass (default: 3600)
            MAX_CONCURRENT_RECONCILES: Worker count (default: 4)
            MAX_RETRIES: Conflict/throttle retries before failing (default: 5)
            MAX_BACKOFF: Requeue delay ceiling in seconds (default: 300)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            tenant_id=os.environ.get("AZURE_TENANT_ID") or None,
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            resource_manager_endpoint=os.environ.get(
                "AZURE_RESOURCE_MANAGER_ENDPOINT", DEFAULT_RESOURCE_MANAGER_ENDPOINT
            ),
            user_agent=os.environ.get("CLIENT_USER_AGENT", DEFAULT_USER_AGENT),
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            poll_interval_seconds=get_float("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            max_poll_interval_seconds=get_float(
                "MAX_POLL_INTERVAL", DEFAULT_MAX_POLL_INTERVAL_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            pass_timeout_seconds=get_int("PASS_TIMEOUT", DEFAULT_PASS_TIMEOUT_SECONDS),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            max_retries=get_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
            max_backoff_seconds=get_int("MAX_BACKOFF", DEFAULT_MAX_BACKOFF_SECONDS),
        )
