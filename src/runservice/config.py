"""Runtime configuration with validation.

Settings that govern a reconciliation pass (not the service being
deployed) are loaded from the environment and validated at construction
time, so a bad value fails before any backend call is made.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 4
MIN_MAX_CONCURRENCY = 1
MAX_MAX_CONCURRENCY = 64

DEFAULT_OPERATION_TIMEOUT_SECONDS = 300
MAX_OPERATION_TIMEOUT_SECONDS = 3600

DEFAULT_MAX_RETRIES = 3
MAX_MAX_RETRIES = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0

DEFAULT_STATE_FILE = "state.yaml"

# Files larger than this are rejected before parsing
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024
MAX_STATE_FILE_SIZE_BYTES = 1024 * 1024

# Backend references use "package.module:attribute"
VALID_BACKEND_REF_PATTERN = r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$"


@dataclass(frozen=True)
class ReconcilerConfig:
    """Settings for one reconciliation pass.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pass.
    """

    # Parallel backend calls across independent subtrees
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    # Upper bound for a single backend round-trip
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Attempts per node for retryable backend errors
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS

    # Compute the plan without mutating the backend
    dry_run: bool = False

    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))
    spec_file: Path | None = None
    backend: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if not (MIN_MAX_CONCURRENCY <= self.max_concurrency <= MAX_MAX_CONCURRENCY):
            errors.append(
                f"RECONCILE_MAX_CONCURRENCY must be between {MIN_MAX_CONCURRENCY} "
                f"and {MAX_MAX_CONCURRENCY}"
            )

        if not (1 <= self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS):
            errors.append(
                f"OPERATION_TIMEOUT must be between 1 and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.max_retries <= MAX_MAX_RETRIES):
            errors.append(f"MAX_OPERATION_RETRIES must be between 1 and {MAX_MAX_RETRIES}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE must not be negative")

        if self.spec_file is not None and not self.spec_file.exists():
            errors.append(f"Spec file does not exist: {self.spec_file}")

        if self.backend is not None and not re.match(VALID_BACKEND_REF_PATTERN, self.backend):
            errors.append(f"BACKEND must look like 'package.module:attribute': {self.backend}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> ReconcilerConfig:
        """Load configuration from environment variables.

        Environment Variables:
            RECONCILE_MAX_CONCURRENCY: Parallel node applications (default: 4)
            OPERATION_TIMEOUT: Backend call timeout in seconds (default: 300)
            MAX_OPERATION_RETRIES: Attempts for transient failures (default: 3)
            RETRY_BACKOFF_BASE: Base backoff in seconds (default: 2.0)
            DRY_RUN: If "true", plan without applying (default: false)
            STATE_FILE: Observed-state store path (default: state.yaml)
            SPEC_FILE: Service spec path (one-shot entry point only)
            BACKEND: Backend reference "module:attribute" (one-shot entry point only)
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

        spec_file = os.environ.get("SPEC_FILE")

        return cls(
            max_concurrency=get_int("RECONCILE_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            max_retries=get_int("MAX_OPERATION_RETRIES", DEFAULT_MAX_RETRIES),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            dry_run=get_bool("DRY_RUN", False),
            state_file=Path(os.environ.get("STATE_FILE", DEFAULT_STATE_FILE)),
            spec_file=Path(spec_file) if spec_file else None,
            backend=os.environ.get("BACKEND") or None,
        )
