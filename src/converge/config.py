"""Engine configuration with validation.

All limits are enforced at load time so that a misconfigured run fails
before the state lock is taken or any provider call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class StateBackendType(str, Enum):
    """Supported state persistence back-ends."""

    LOCAL = "local"
    AZURE_BLOB = "azure-blob"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_STATE_PATH = "converge.state.json"
DEFAULT_STATE_BLOB = "converge.state.json"

DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0
MAX_LOCK_TIMEOUT_SECONDS = 3600.0
LOCK_POLL_INTERVAL_SECONDS = 1.0

DEFAULT_MAX_WORKERS = 10
MAX_WORKERS = 64

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES = 10
RETRY_BACKOFF_BASE_SECONDS = 2.0
RETRY_BACKOFF_MAX_SECONDS = 60.0

# Declaration files larger than this are rejected before parsing
MAX_CONFIGURATION_FILE_SIZE_BYTES = 1024 * 1024

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_CONTAINER_PATTERN = r"^[a-z0-9](?!.*--)[a-z0-9-]{1,61}[a-z0-9]$"


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration, usually loaded from environment variables.

    Invalid configurations raise ConfigurationError at construction time.
    """

    # State persistence
    state_backend: StateBackendType = StateBackendType.LOCAL
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))
    state_account_url: str | None = None
    state_container: str | None = None
    state_blob: str = DEFAULT_STATE_BLOB

    # Azure provider
    subscription_id: str | None = None
    client_id: str | None = None

    # Locking
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS

    # Execution
    max_workers: int = DEFAULT_MAX_WORKERS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS

    # Read live attributes of recorded resources before planning
    refresh: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.state_backend == StateBackendType.AZURE_BLOB:
            if not self.state_account_url:
                errors.append("CONVERGE_STATE_ACCOUNT_URL is required for the azure-blob backend")
            elif not self.state_account_url.startswith("https://"):
                errors.append(
                    f"CONVERGE_STATE_ACCOUNT_URL must be an https URL: {self.state_account_url}"
                )
            if not self.state_container:
                errors.append("CONVERGE_STATE_CONTAINER is required for the azure-blob backend")
            elif not re.match(VALID_CONTAINER_PATTERN, self.state_container):
                errors.append(
                    f"CONVERGE_STATE_CONTAINER is not a valid container name: "
                    f"{self.state_container}"
                )
            if not self.state_blob:
                errors.append("CONVERGE_STATE_BLOB must not be empty")

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not (0 <= self.lock_timeout_seconds <= MAX_LOCK_TIMEOUT_SECONDS):
            errors.append(
                f"CONVERGE_LOCK_TIMEOUT must be between 0 and {MAX_LOCK_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.max_workers <= MAX_WORKERS):
            errors.append(f"CONVERGE_MAX_WORKERS must be between 1 and {MAX_WORKERS}")

        if not (0 <= self.max_retries <= MAX_RETRIES):
            errors.append(f"CONVERGE_MAX_RETRIES must be between 0 and {MAX_RETRIES}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("CONVERGE_RETRY_BACKOFF_BASE must not be negative")
        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("CONVERGE_RETRY_BACKOFF_MAX must be at least CONVERGE_RETRY_BACKOFF_BASE")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            CONVERGE_STATE_BACKEND: local or azure-blob (default: local)
            CONVERGE_STATE_PATH: State file for the local backend
            CONVERGE_STATE_ACCOUNT_URL: Blob account URL for the azure-blob backend
            CONVERGE_STATE_CONTAINER: Blob container for the azure-blob backend
            CONVERGE_STATE_BLOB: Blob name (default: converge.state.json)
            CONVERGE_LOCK_TIMEOUT: Seconds to wait for the state lock (default: 30)
            CONVERGE_MAX_WORKERS: Parallel actions per wave (default: 10)
            CONVERGE_MAX_RETRIES: Retries for transient provider errors (default: 3)
            CONVERGE_RETRY_BACKOFF_BASE: Base backoff in seconds (default: 2)
            CONVERGE_RETRY_BACKOFF_MAX: Backoff cap in seconds (default: 60)
            CONVERGE_REFRESH: Refresh recorded state before planning (default: true)
            AZURE_SUBSCRIPTION_ID: Target subscription for the Azure provider
            AZURE_CLIENT_ID: User-assigned managed identity client ID
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

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_backend(value: str | None) -> StateBackendType:
            if not value:
                return StateBackendType.LOCAL
            try:
                return StateBackendType(value)
            except ValueError as e:
                valid = [b.value for b in StateBackendType]
                raise ConfigurationError(
                    f"CONVERGE_STATE_BACKEND must be one of {valid}: {value}"
                ) from e

        return cls(
            state_backend=get_backend(os.environ.get("CONVERGE_STATE_BACKEND")),
            state_path=Path(os.environ.get("CONVERGE_STATE_PATH", DEFAULT_STATE_PATH)),
            state_account_url=os.environ.get("CONVERGE_STATE_ACCOUNT_URL"),
            state_container=os.environ.get("CONVERGE_STATE_CONTAINER"),
            state_blob=os.environ.get("CONVERGE_STATE_BLOB", DEFAULT_STATE_BLOB),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID"),
            client_id=os.environ.get("AZURE_CLIENT_ID"),
            lock_timeout_seconds=get_float("CONVERGE_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT_SECONDS),
            max_workers=get_int("CONVERGE_MAX_WORKERS", DEFAULT_MAX_WORKERS),
            max_retries=get_int("CONVERGE_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_backoff_base_seconds=get_float(
                "CONVERGE_RETRY_BACKOFF_BASE", RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "CONVERGE_RETRY_BACKOFF_MAX", RETRY_BACKOFF_MAX_SECONDS
            ),
            refresh=get_bool("CONVERGE_REFRESH", True),
        )
