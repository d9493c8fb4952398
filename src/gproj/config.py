"""Configuration management with validation.

Tunables are read from the environment once per invocation and validated at
construction time so a bad value fails before any Google Cloud call is made.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import platformdirs


class CallingConvention(str, Enum):
    """How a spec's billing field and catalog absence are interpreted.

    APPLY: ``billing: enable`` auto-selects the single open account, an empty
    billing field leaves billing untouched, and an API missing from the catalog
    is treated as not yet enabled.

    SYNC: an empty billing field also auto-selects, and an API missing from the
    catalog is an error because the catalog is taken as complete.
    """

    APPLY = "apply"
    SYNC = "sync"


class LogFormat(str, Enum):
    """Supported log output formats."""

    TEXT = "text"
    JSON = "json"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


APP_NAME = "gproj"

# Spec discovery
SPEC_FILENAME = "googlecloudproject.yaml"
MAX_SPEC_SEARCH_DEPTH = 100
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file

# Provider constants
MIN_PROJECT_NAME_LENGTH = 4
SERVICE_DOMAIN_SUFFIX = ".googleapis.com"
BOOTSTRAP_SERVICE = "cloudbilling.googleapis.com"
MAX_BATCH_ENABLE_SERVICES = 20
BILLING_ACCOUNT_PREFIX = "billingAccounts/"
AUTO_SELECT_BILLING = "enable"

# Label merged into every project this tool creates or updates
MANAGED_BY_LABEL_KEY = "managed-by"
MANAGED_BY_LABEL_VALUE = APP_NAME

# Timing with documented bounds
DEFAULT_POLL_INTERVAL_MS = 400
MIN_POLL_INTERVAL_MS = 50
MAX_POLL_INTERVAL_MS = 10_000

DEFAULT_CREATE_TIMEOUT_SECONDS = 30
MIN_CREATE_TIMEOUT_SECONDS = 1
MAX_CREATE_TIMEOUT_SECONDS = 600

DEFAULT_RUN_TIMEOUT_SECONDS = 1800
MIN_RUN_TIMEOUT_SECONDS = 60
MAX_RUN_TIMEOUT_SECONDS = 7200


def default_cache_dir() -> Path:
    """Per-user cache root (``~/.cache/gproj`` on Linux)."""
    return platformdirs.user_cache_path(APP_NAME)


@dataclass(frozen=True)
class Config:
    """Runtime configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    cache_dir: Path = field(default_factory=default_cache_dir)
    spec_path: Path | None = None

    # Timing
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    create_timeout_seconds: int = DEFAULT_CREATE_TIMEOUT_SECONDS
    run_timeout_seconds: int = DEFAULT_RUN_TIMEOUT_SECONDS

    # Behavior
    convention: CallingConvention = CallingConvention.APPLY
    log_format: LogFormat = LogFormat.TEXT
    verbose: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not MIN_POLL_INTERVAL_MS <= self.poll_interval_ms <= MAX_POLL_INTERVAL_MS:
            errors.append(
                f"GPROJ_POLL_INTERVAL_MS must be between {MIN_POLL_INTERVAL_MS} "
                f"and {MAX_POLL_INTERVAL_MS}"
            )

        if not (
            MIN_CREATE_TIMEOUT_SECONDS
            <= self.create_timeout_seconds
            <= MAX_CREATE_TIMEOUT_SECONDS
        ):
            errors.append(
                f"GPROJ_CREATE_TIMEOUT must be between {MIN_CREATE_TIMEOUT_SECONDS} "
                f"and {MAX_CREATE_TIMEOUT_SECONDS} seconds"
            )

        if not MIN_RUN_TIMEOUT_SECONDS <= self.run_timeout_seconds <= MAX_RUN_TIMEOUT_SECONDS:
            errors.append(
                f"GPROJ_RUN_TIMEOUT must be between {MIN_RUN_TIMEOUT_SECONDS} "
                f"and {MAX_RUN_TIMEOUT_SECONDS} seconds"
            )

        # The creation wait is a sub-deadline of the whole run
        if self.create_timeout_seconds > self.run_timeout_seconds:
            errors.append("GPROJ_CREATE_TIMEOUT cannot exceed GPROJ_RUN_TIMEOUT")

        if self.spec_path is not None and self.spec_path.is_dir():
            errors.append(f"Spec path is a directory: {self.spec_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000

    @classmethod
    def from_env(
        cls,
        *,
        spec_path: Path | None = None,
        convention: CallingConvention = CallingConvention.APPLY,
        verbose: bool = False,
    ) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            GPROJ_CACHE_DIR: Root of the API catalog cache (default: user cache dir)
            GPROJ_SPEC: Path to the project spec (default: search upwards from cwd)
            GPROJ_POLL_INTERVAL_MS: Long-running operation poll interval (default: 400)
            GPROJ_CREATE_TIMEOUT: Seconds to wait for project creation (default: 30)
            GPROJ_RUN_TIMEOUT: Seconds before the whole run is cancelled (default: 1800)
            GPROJ_LOG_FORMAT: "text" or "json" (default: text)

        Explicit keyword arguments (from the command line) take precedence.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.TEXT
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(f"GPROJ_LOG_FORMAT must be one of {valid}: {value}") from e

        cache_dir = os.environ.get("GPROJ_CACHE_DIR")
        env_spec = os.environ.get("GPROJ_SPEC")
        if spec_path is None and env_spec:
            spec_path = Path(env_spec)

        return cls(
            cache_dir=Path(cache_dir) if cache_dir else default_cache_dir(),
            spec_path=spec_path,
            poll_interval_ms=get_int("GPROJ_POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS),
            create_timeout_seconds=get_int("GPROJ_CREATE_TIMEOUT", DEFAULT_CREATE_TIMEOUT_SECONDS),
            run_timeout_seconds=get_int("GPROJ_RUN_TIMEOUT", DEFAULT_RUN_TIMEOUT_SECONDS),
            convention=convention,
            log_format=get_log_format(os.environ.get("GPROJ_LOG_FORMAT")),
            verbose=verbose,
        )
