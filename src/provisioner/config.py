"""Engine and adapter settings with validation.

Settings are frozen dataclasses validated at construction time. Invalid
values raise ConfigurationError immediately rather than failing mid-run.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

from .errors import ConfigurationError, ConfigurationErrorKind, ErrorClass

# Retry defaults with documented bounds
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_RETRY_BACKOFF_FACTOR = 2.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 60.0
DEFAULT_RETRY_MAX_ATTEMPTS = 5
MAX_RETRY_ATTEMPTS = 20

# Operation polling
DEFAULT_POLL_BASE_DELAY_SECONDS = 2.0
DEFAULT_POLL_MAX_ATTEMPTS = 30
MAX_POLL_ATTEMPTS = 120

# Worker pool
DEFAULT_MAX_WORKERS = 4
MAX_WORKERS_LIMIT = 32

# Timeout for a single blocking SDK call
DEFAULT_CALL_TIMEOUT_SECONDS = 300

# Topology file limits
MAX_TOPOLOGY_FILE_SIZE_BYTES = 1024 * 1024  # 1MB
MAX_TOPOLOGY_NODES = 500

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
MAX_RESOURCE_GROUP_NAME_LENGTH = 90

DEFAULT_RETRYABLE_CLASSES: frozenset[ErrorClass] = frozenset(
    {ErrorClass.TRANSIENT, ErrorClass.QUOTA_EXCEEDED}
)

# Never retried, regardless of configuration
NON_RETRYABLE_CLASSES: frozenset[ErrorClass] = frozenset(
    {
        ErrorClass.INVALID_ARGUMENT,
        ErrorClass.PERMISSION_DENIED,
        ErrorClass.UNAUTHENTICATED,
        ErrorClass.ALREADY_EXISTS,
        ErrorClass.NOT_FOUND,
    }
)


def _raise_if_errors(errors: list[str]) -> None:
    if errors:
        error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        raise ConfigurationError(ConfigurationErrorKind.INVALID_SETTING, error_msg)


def _get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_SETTING, f"{key} must be an integer: {value}"
        ) from e


def _get_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_SETTING, f"{key} must be a number: {value}"
        ) from e


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    delay(attempt) = min(base_delay * factor ** (attempt - 1), max_delay)
    """

    base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    backoff_factor: float = DEFAULT_RETRY_BACKOFF_FACTOR
    max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retryable: frozenset[ErrorClass] = DEFAULT_RETRYABLE_CLASSES
    attempts_limit: int = MAX_RETRY_ATTEMPTS

    def __post_init__(self) -> None:
        errors: list[str] = []
        if self.base_delay_seconds < 0:
            errors.append("RETRY_BASE_DELAY_SECONDS cannot be negative")
        if self.backoff_factor < 1:
            errors.append("RETRY_BACKOFF_FACTOR must be at least 1")
        if self.max_delay_seconds < self.base_delay_seconds:
            errors.append("RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS")
        if not (1 <= self.max_attempts <= self.attempts_limit):
            errors.append(f"RETRY_MAX_ATTEMPTS must be between 1 and {self.attempts_limit}")
        forbidden = self.retryable & NON_RETRYABLE_CLASSES
        if forbidden:
            errors.append(
                f"Error classes cannot be retried: {sorted(c.value for c in forbidden)}"
            )
        _raise_if_errors(errors)

    def delay(self, attempt: int) -> float:
        """Backoff before the retry that follows `attempt` (1-based)."""
        backoff = self.base_delay_seconds * (self.backoff_factor ** (attempt - 1))
        return min(backoff, self.max_delay_seconds)

    def is_retryable(self, error_class: ErrorClass) -> bool:
        return error_class in self.retryable

    @classmethod
    def from_env(cls) -> RetryPolicy:
        """Load retry settings.

        Environment Variables:
            RETRY_BASE_DELAY_SECONDS: First backoff delay (default: 1.0)
            RETRY_BACKOFF_FACTOR: Multiplier per attempt (default: 2.0)
            RETRY_MAX_DELAY_SECONDS: Cap on a single delay (default: 60)
            RETRY_MAX_ATTEMPTS: Attempts per remote call (default: 5)
        """
        return cls(
            base_delay_seconds=_get_float(
                "RETRY_BASE_DELAY_SECONDS", DEFAULT_RETRY_BASE_DELAY_SECONDS
            ),
            backoff_factor=_get_float("RETRY_BACKOFF_FACTOR", DEFAULT_RETRY_BACKOFF_FACTOR),
            max_delay_seconds=_get_float(
                "RETRY_MAX_DELAY_SECONDS", DEFAULT_RETRY_MAX_DELAY_SECONDS
            ),
            max_attempts=_get_int("RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS),
        )


@dataclass(frozen=True)
class EngineSettings:
    """Scheduling and polling configuration for the convergence engine."""

    max_workers: int = DEFAULT_MAX_WORKERS
    poll_base_delay_seconds: float = DEFAULT_POLL_BASE_DELAY_SECONDS
    poll_max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        errors: list[str] = []
        if not (1 <= self.max_workers <= MAX_WORKERS_LIMIT):
            errors.append(f"MAX_WORKERS must be between 1 and {MAX_WORKERS_LIMIT}")
        if self.poll_base_delay_seconds < 0:
            errors.append("POLL_BASE_DELAY_SECONDS cannot be negative")
        if not (1 <= self.poll_max_attempts <= MAX_POLL_ATTEMPTS):
            errors.append(f"POLL_MAX_ATTEMPTS must be between 1 and {MAX_POLL_ATTEMPTS}")
        _raise_if_errors(errors)

    @property
    def poll_policy(self) -> RetryPolicy:
        """Backoff used while waiting for an operation to reach a terminal status."""
        return RetryPolicy(
            base_delay_seconds=self.poll_base_delay_seconds,
            backoff_factor=self.retry.backoff_factor,
            max_delay_seconds=max(self.retry.max_delay_seconds, self.poll_base_delay_seconds),
            max_attempts=self.poll_max_attempts,
            attempts_limit=MAX_POLL_ATTEMPTS,
        )

    @classmethod
    def from_env(cls) -> EngineSettings:
        """Load engine settings.

        Environment Variables:
            MAX_WORKERS: Concurrent nodes per wavefront (default: 4)
            POLL_BASE_DELAY_SECONDS: First poll delay (default: 2.0)
            POLL_MAX_ATTEMPTS: Polls before an operation is failed (default: 30)
            RETRY_*: See RetryPolicy.from_env
        """
        return cls(
            max_workers=_get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            poll_base_delay_seconds=_get_float(
                "POLL_BASE_DELAY_SECONDS", DEFAULT_POLL_BASE_DELAY_SECONDS
            ),
            poll_max_attempts=_get_int("POLL_MAX_ATTEMPTS", DEFAULT_POLL_MAX_ATTEMPTS),
            retry=RetryPolicy.from_env(),
        )


@dataclass(frozen=True)
class AzureSettings:
    """Target environment for the Azure adapters."""

    subscription_id: str
    resource_group_name: str
    location: str
    key_vault_url: str = ""
    key_vault_resource_id: str = ""
    client_id: str | None = None
    call_timeout_seconds: int = DEFAULT_CALL_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.resource_group_name:
            errors.append("RESOURCE_GROUP_NAME is required")
        elif len(self.resource_group_name) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"RESOURCE_GROUP_NAME exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if self.key_vault_url and not self.key_vault_url.startswith("https://"):
            errors.append("KEY_VAULT_URL must be an https:// URL")

        if bool(self.key_vault_url) != bool(self.key_vault_resource_id):
            errors.append("KEY_VAULT_URL and KEY_VAULT_RESOURCE_ID must be set together")

        if self.call_timeout_seconds < 1:
            errors.append("AZURE_CALL_TIMEOUT must be at least 1 second")

        _raise_if_errors(errors)

    @property
    def project_scope(self) -> str:
        """ARM scope that stands for "project" (the target resource group)."""
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group_name}"

    @classmethod
    def from_env(cls) -> AzureSettings:
        """Load Azure adapter settings.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target subscription
            RESOURCE_GROUP_NAME: Resource group holding the topology
            AZURE_LOCATION: Default region for created resources
            KEY_VAULT_URL: Vault used as secret store (https://<name>.vault.azure.net)
            KEY_VAULT_RESOURCE_ID: ARM id of the same vault (scope for secret bindings)
            AZURE_CLIENT_ID: Optional user-assigned managed identity client id
            AZURE_CALL_TIMEOUT: Seconds per blocking SDK call (default: 300)
        """
        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            resource_group_name=os.environ.get("RESOURCE_GROUP_NAME", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            key_vault_url=os.environ.get("KEY_VAULT_URL", ""),
            key_vault_resource_id=os.environ.get("KEY_VAULT_RESOURCE_ID", ""),
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            call_timeout_seconds=_get_int("AZURE_CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_SECONDS),
        )
