"""Unified workflow exception taxonomy.

Provides a shared base exception hierarchy for the graph, the task
invoker, the parallel stage, and the execution drivers.  Every domain
exception inherits from ``WorkflowError`` and carries structured context
fields that enable consistent retry decisions and post-mortem reports.

Taxonomy categories
-------------------
- ``ValidationError``   — graph/input contract violations, never retryable.
- ``TransientError``    — temporary failures (timeouts, throttling), retryable.
- ``PermanentError``    — unrecoverable failures, not retryable.
- ``ContractError``     — payload/schema drift between nodes, never retryable.

Every exception exposes ``to_error_dict()`` for a stable structured
error payload suitable for orchestration history and logging.  The
``code`` field is what retry policies match against.
"""

from __future__ import annotations

from typing import Any


class WorkflowError(Exception):
    """Base exception for all workflow-domain errors.

    Attributes:
        message: Human-readable error description.
        stage: Node where the error occurred
            (e.g. ``"close_account_task"``).
        code: Machine-readable error code (e.g. ``"TASK_TIMEOUT"``).
        retryable: Whether a retry policy may re-attempt the operation.
        correlation_id: Workflow instance identifier.
    """

    #: Default stage for subclasses (override via class attribute or kwarg).
    default_stage: str = ""
    #: Default code for subclasses (override via class attribute or kwarg).
    default_code: str = ""

    def __init__(
        self,
        message: str = "",
        *,
        stage: str = "",
        code: str = "",
        retryable: bool = False,
        correlation_id: str = "",
    ) -> None:
        self.message = message
        self.stage = stage or self.default_stage
        self.code = code or self.default_code
        self.retryable = retryable
        self.correlation_id = correlation_id
        super().__init__(message)

    @property
    def category(self) -> str:
        """Return the error category based on concrete class."""
        if isinstance(self, ContractError):
            return "contract"
        if isinstance(self, ValidationError):
            return "validation"
        if isinstance(self, TransientError):
            return "transient"
        if isinstance(self, PermanentError):
            return "permanent"
        return "transient" if self.retryable else "permanent"

    def to_error_dict(self) -> dict[str, object]:
        """Return a structured error payload with stable keys."""
        return {
            "category": self.category,
            "code": self.code,
            "stage": self.stage,
            "message": self.message,
            "retryable": self.retryable,
            "correlation_id": self.correlation_id,
        }


# ---------------------------------------------------------------------------
# Category base classes
# ---------------------------------------------------------------------------


class ValidationError(WorkflowError):
    """Input or graph validation failure. Never retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class TransientError(WorkflowError):
    """Temporary failure that may succeed on retry."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class PermanentError(WorkflowError):
    """Unrecoverable failure. Not retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class ContractError(WorkflowError):
    """Payload or schema drift between nodes. Never retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Concrete workflow errors
# ---------------------------------------------------------------------------


class GraphValidationError(ValidationError):
    """The workflow graph is malformed (dangling or unreachable nodes)."""

    default_stage = "graph"
    default_code = "GRAPH_INVALID"


class TaskTimeoutError(TransientError):
    """A task handler did not answer within its own time limit."""

    default_code = "TASK_TIMEOUT"


class TaskFailedError(PermanentError):
    """A task handler failed with a non-retryable or unclassified error."""

    default_code = "TASK_FAILED"


class TaskRetryExhaustedError(PermanentError):
    """A retryable task failure persisted past its retry policy.

    Attributes:
        attempts: Number of invocations made.
        last_error: Structured dict of the final failure.
    """

    default_code = "RETRY_EXHAUSTED"

    def __init__(
        self,
        message: str = "",
        *,
        attempts: int = 0,
        last_error: dict[str, Any] | None = None,
        **kwargs: object,
    ) -> None:
        self.attempts = attempts
        self.last_error = dict(last_error or {})
        super().__init__(message, **kwargs)

    def to_error_dict(self) -> dict[str, object]:
        payload = super().to_error_dict()
        payload["attempts"] = self.attempts
        payload["last_error"] = self.last_error
        return payload


class BranchFailedError(PermanentError):
    """A parallel-stage branch failed terminally; the whole stage fails.

    Attributes:
        branch: Name of the failing branch.
        cause: Structured dict of the branch's failure.
    """

    default_code = "BRANCH_FAILED"

    def __init__(
        self,
        message: str = "",
        *,
        branch: str = "",
        cause: dict[str, Any] | None = None,
        **kwargs: object,
    ) -> None:
        self.branch = branch
        self.cause = dict(cause or {})
        super().__init__(message, **kwargs)

    def to_error_dict(self) -> dict[str, object]:
        payload = super().to_error_dict()
        payload["branch"] = self.branch
        payload["cause"] = self.cause
        return payload


class WorkflowTimeoutError(PermanentError):
    """The instance-level deadline elapsed before a terminal node."""

    default_code = "WORKFLOW_TIMEOUT"


class ExecutionCancelledError(PermanentError):
    """Work was abandoned because a sibling branch or the instance stopped."""

    default_code = "CANCELLED"


def error_to_dict(exc: BaseException, *, stage: str = "") -> dict[str, object]:
    """Return a structured error dict for any exception.

    ``WorkflowError`` instances use their own ``to_error_dict``; anything
    else is reported as a permanent ``TASK_FAILED`` error.
    """
    if isinstance(exc, WorkflowError):
        payload = exc.to_error_dict()
        if stage and not payload["stage"]:
            payload["stage"] = stage
        return payload
    return TaskFailedError(f"{type(exc).__name__}: {exc}", stage=stage).to_error_dict()


_CATEGORY_CLASSES: dict[str, type[WorkflowError]] = {
    "transient": TransientError,
    "permanent": PermanentError,
    "contract": ContractError,
    "validation": ValidationError,
}

_CODE_CLASSES: dict[str, type[WorkflowError]] = {
    cls.default_code: cls
    for cls in (
        TaskTimeoutError,
        TaskFailedError,
        WorkflowTimeoutError,
        ExecutionCancelledError,
    )
}


def error_from_dict(payload: dict[str, Any], *, stage: str = "") -> WorkflowError:
    """Rebuild a ``WorkflowError`` from a ``to_error_dict()`` payload.

    Used where errors cross a serialisation boundary (Durable Functions
    activity envelopes).  The concrete class is chosen by ``code`` when
    known, otherwise by ``category``.
    """
    code = str(payload.get("code", ""))
    cls = _CODE_CLASSES.get(code) or _CATEGORY_CLASSES.get(
        str(payload.get("category", "")), PermanentError
    )
    return cls(
        str(payload.get("message", "")),
        stage=str(payload.get("stage", "")) or stage,
        code=code,
        retryable=bool(payload.get("retryable", False)),
        correlation_id=str(payload.get("correlation_id", "")),
    )
