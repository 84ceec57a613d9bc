"""Invoke task activity — run one task attempt for the durable orchestrator.

The durable orchestrator never calls task handlers directly (activities
are the only place non-deterministic I/O may happen).  Each attempt of a
task node becomes one ``invoke_task`` activity call; retry decisions
stay in the orchestrator so that backoff timers are durable.  The
handler's transport timeout is capped at the time left before the
instance deadline carried in the input.

Handler failures are returned as an ``{"ok": false, "error": {...}}``
envelope instead of being raised.  A raised activity exception reaches
the orchestrator as an opaque message, which would lose the error
``code`` the retry policy matches on.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from account_closure.core.config import ConfigValidationError, WorkflowConfig
from account_closure.core.constants import INVOKE_TASK_ACTIVITY
from account_closure.core.exceptions import ContractError, error_to_dict
from account_closure.engine.handlers import HandlerRegistry, HttpTaskHandler, call_with_budget
from account_closure.models.payloads import InvokeTaskInput, InvokeTaskOutput, validate_payload

logger = logging.getLogger("account_closure.activities.invoke_task")


def build_handler_registry(config: WorkflowConfig) -> HandlerRegistry:
    """Return a registry routing every task to the configured HTTP endpoint.

    Raises:
        ConfigValidationError: If ``TASK_ENDPOINT_BASE_URL`` is not set.
    """
    if not config.task_endpoint_base_url:
        raise ConfigValidationError(
            "TASK_ENDPOINT_BASE_URL",
            config.task_endpoint_base_url,
            "must be set to invoke tasks over HTTP",
        )
    handler = HttpTaskHandler(
        config.task_endpoint_base_url,
        timeout_seconds=config.task_request_timeout_seconds,
    )
    return HandlerRegistry.with_default(handler)


def remaining_budget(deadline: str | None, *, now: datetime | None = None) -> float | None:
    """Return the seconds left before the ISO-8601 *deadline*, or ``None``.

    Naive timestamps are read as UTC.  A deadline in year 9999 means the
    workflow has no ceiling.
    """
    if not deadline:
        return None
    expires_at = datetime.fromisoformat(deadline)
    if expires_at.year == datetime.max.year:
        return None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    now = now or datetime.now(tz=UTC)
    return max(0.0, (expires_at - now).total_seconds())


def invoke_task(payload: dict[str, Any], *, handlers: HandlerRegistry) -> InvokeTaskOutput:
    """Run a single task attempt and wrap the outcome in an envelope.

    Args:
        payload: ``InvokeTaskInput`` dict from the orchestrator.
        handlers: Registry resolving the task name.

    Returns:
        ``{"ok": True, "result": {...}}`` on success, otherwise
        ``{"ok": False, "error": {...}}`` with a structured error dict.

    Raises:
        ContractError: If the payload is missing required keys.
    """
    validate_payload(payload, InvokeTaskInput, activity=INVOKE_TASK_ACTIVITY)

    task_name = str(payload["task_name"])
    node = str(payload["node"])
    attempt = int(payload.get("attempt", 1))
    instance_id = str(payload.get("instance_id", ""))

    logger.info(
        "invoke_task started | instance=%s | node=%s | task=%s | attempt=%d",
        instance_id,
        node,
        task_name,
        attempt,
    )

    try:
        handler = handlers.get(task_name)
        budget = remaining_budget(payload.get("deadline"))
        result = call_with_budget(handler, task_name, payload["payload"], budget)
        if not isinstance(result, dict):
            msg = f"Task {task_name!r} must return an object, got {type(result).__name__}"
            raise ContractError(msg, code="INVALID_TASK_RESPONSE")
    except Exception as exc:
        error = error_to_dict(exc, stage=node)
        error["correlation_id"] = error.get("correlation_id") or instance_id
        logger.warning(
            "invoke_task failed | instance=%s | node=%s | task=%s | attempt=%d | code=%s | error=%s",
            instance_id,
            node,
            task_name,
            attempt,
            error["code"],
            exc,
        )
        return InvokeTaskOutput(ok=False, error=error)

    logger.info(
        "invoke_task completed | instance=%s | node=%s | task=%s | attempt=%d",
        instance_id,
        node,
        task_name,
        attempt,
    )
    return InvokeTaskOutput(ok=True, result=result)
