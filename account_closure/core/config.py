"""Workflow configuration loaded from environment variables.

All configuration values have defaults matching the deployed
account-closure state machine (5 minute ceiling, 10 second status
waits, at most 5 organisation status checks, one retry on a timed-out
account close).  Azure Functions app settings (or
``local.settings.json`` for local dev) are the source of truth.

Fail-fast validation:
    ``from_env()`` raises ``ConfigValidationError`` if any numeric
    value is out of its valid range.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from account_closure.core.exceptions import WorkflowError


class ConfigValidationError(WorkflowError):
    """Raised when configuration values are out of valid range.

    Attributes:
        key: The configuration key that failed validation.
        value: The invalid value.
        message: Human-readable description of the valid range.
    """

    default_stage = "config"
    default_code = "CONFIG_VALIDATION_FAILED"

    def __init__(self, key: str, value: object, message: str) -> None:
        self.key = key
        self.value = value
        self.message = message
        super().__init__(f"Invalid configuration {key}={value!r}: {message}")


@dataclass(frozen=True, slots=True)
class WorkflowConfig:
    """Immutable workflow configuration.

    Loaded once at function startup and used to build the graph.

    Attributes:
        app_env: Deployment environment, suffixed onto the workflow name.
        timeout_seconds: Instance-level ceiling measured from start.
        status_wait_seconds: Wait before each organisation status check.
        max_status_checks: Status checks allowed before giving up.
        close_retry_interval_seconds: Base backoff for the close-account retry.
        close_retry_max_attempts: Retries (after the first call) on close timeout.
        close_retry_backoff_rate: Multiplier applied to the backoff per retry.
        task_endpoint_base_url: Base URL of the HTTP task handlers.
        task_request_timeout_seconds: Per-request timeout for HTTP task calls.
    """

    app_env: str = "dev"
    timeout_seconds: float = 300.0
    status_wait_seconds: float = 10.0
    max_status_checks: int = 5
    close_retry_interval_seconds: float = 10.0
    close_retry_max_attempts: int = 1
    close_retry_backoff_rate: float = 2.0
    task_endpoint_base_url: str = ""
    task_request_timeout_seconds: float = 60.0

    @property
    def workflow_name(self) -> str:
        """Return the environment-qualified workflow name."""
        return f"aws-account-closure-{self.app_env}"

    @classmethod
    def from_env(cls) -> WorkflowConfig:
        """Load and validate configuration from environment variables.

        Raises:
            ConfigValidationError: If a numeric value is out of range
                or a required string value is empty.
            ValueError: If a numeric environment variable cannot be
                parsed (e.g. ``MAX_STATUS_CHECKS=abc``).
        """
        config = cls(
            app_env=os.getenv("APP_ENV", "dev"),
            timeout_seconds=float(os.getenv("WORKFLOW_TIMEOUT_SECONDS", "300")),
            status_wait_seconds=float(os.getenv("STATUS_WAIT_SECONDS", "10")),
            max_status_checks=int(os.getenv("MAX_STATUS_CHECKS", "5")),
            close_retry_interval_seconds=float(
                os.getenv("CLOSE_ACCOUNT_RETRY_INTERVAL_SECONDS", "10")
            ),
            close_retry_max_attempts=int(os.getenv("CLOSE_ACCOUNT_RETRY_MAX_ATTEMPTS", "1")),
            close_retry_backoff_rate=float(os.getenv("CLOSE_ACCOUNT_RETRY_BACKOFF_RATE", "2.0")),
            task_endpoint_base_url=os.getenv("TASK_ENDPOINT_BASE_URL", ""),
            task_request_timeout_seconds=float(os.getenv("TASK_REQUEST_TIMEOUT_SECONDS", "60")),
        )
        _validate(config)
        return config


def _validate(config: WorkflowConfig) -> None:
    """Validate configuration ranges.  Raises ``ConfigValidationError``."""
    if not config.app_env:
        raise ConfigValidationError("APP_ENV", config.app_env, "must not be empty")

    if config.timeout_seconds <= 0:
        raise ConfigValidationError(
            "WORKFLOW_TIMEOUT_SECONDS",
            config.timeout_seconds,
            "must be > 0 (seconds)",
        )

    if config.status_wait_seconds < 0:
        raise ConfigValidationError(
            "STATUS_WAIT_SECONDS",
            config.status_wait_seconds,
            "must be >= 0 (seconds)",
        )

    if config.max_status_checks < 1:
        raise ConfigValidationError(
            "MAX_STATUS_CHECKS",
            config.max_status_checks,
            "must be >= 1",
        )

    if config.close_retry_interval_seconds <= 0:
        raise ConfigValidationError(
            "CLOSE_ACCOUNT_RETRY_INTERVAL_SECONDS",
            config.close_retry_interval_seconds,
            "must be > 0 (seconds)",
        )

    if config.close_retry_max_attempts < 0:
        raise ConfigValidationError(
            "CLOSE_ACCOUNT_RETRY_MAX_ATTEMPTS",
            config.close_retry_max_attempts,
            "must be >= 0",
        )

    if config.close_retry_backoff_rate < 1.0:
        raise ConfigValidationError(
            "CLOSE_ACCOUNT_RETRY_BACKOFF_RATE",
            config.close_retry_backoff_rate,
            "must be >= 1.0",
        )

    if config.task_request_timeout_seconds <= 0:
        raise ConfigValidationError(
            "TASK_REQUEST_TIMEOUT_SECONDS",
            config.task_request_timeout_seconds,
            "must be > 0 (seconds)",
        )
