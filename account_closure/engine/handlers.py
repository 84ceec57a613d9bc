"""Task handler registry and transports.

The orchestrator treats every task as an opaque function from payload
to payload.  A handler is any callable ``(task_name, payload) -> dict``;
how the call is transported (in-process, HTTP, queue) is the handler's
business.  Handlers signal failure by raising: ``TransientError``
subclasses (including ``TaskTimeoutError``) are candidates for retry,
anything else is terminal.

Usage::

    registry = HandlerRegistry()
    registry.register("FUNC_STATUS_HANDLER", my_status_handler)
    payload = registry.get("FUNC_STATUS_HANDLER")("FUNC_STATUS_HANDLER", {...})

    http = HttpTaskHandler("https://tasks.internal/api")
    registry = HandlerRegistry.with_default(http)
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Any, Protocol

import httpx

from account_closure.core.exceptions import (
    ContractError,
    PermanentError,
    TaskTimeoutError,
    TransientError,
)

logger = logging.getLogger("account_closure.engine.handlers")

#: Lower bound for a budget-capped request timeout.
_MIN_REQUEST_TIMEOUT = 0.001


class TaskHandler(Protocol):
    """Callable invoked for one task attempt."""

    def __call__(self, task_name: str, payload: Any) -> dict[str, Any]: ...


#: Seconds left before the instance ceiling for the task call in flight.
_call_budget: ContextVar[float | None] = ContextVar("task_call_budget", default=None)


def call_with_budget(
    handler: TaskHandler,
    task_name: str,
    payload: Any,
    budget: float | None,
) -> dict[str, Any]:
    """Call *handler* with *budget* seconds available to any transport it uses.

    ``HttpTaskHandler`` caps its request timeout at the budget; other
    handlers may read it through ``call_budget()``.
    """
    token = _call_budget.set(budget)
    try:
        return handler(task_name, payload)
    finally:
        _call_budget.reset(token)


def call_budget() -> float | None:
    """Return the budget of the task call in flight, if any."""
    return _call_budget.get()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class HandlerRegistry:
    """Maps task names to handlers, with an optional fallback handler."""

    def __init__(
        self,
        handlers: dict[str, TaskHandler] | None = None,
        *,
        default: TaskHandler | None = None,
    ) -> None:
        self._handlers: dict[str, TaskHandler] = {}
        self._default = default
        for name, handler in (handlers or {}).items():
            self.register(name, handler)

    @classmethod
    def with_default(cls, handler: TaskHandler) -> HandlerRegistry:
        """Return a registry that routes every task to *handler*."""
        return cls(default=handler)

    def register(self, task_name: str, handler: TaskHandler) -> None:
        """Register *handler* for *task_name*.

        Raises:
            ValueError: If the name is empty.
        """
        if not task_name:
            msg = "Task name must be non-empty"
            raise ValueError(msg)
        self._handlers[task_name] = handler
        logger.debug("Registered task handler: %s", task_name)

    def get(self, task_name: str) -> TaskHandler:
        """Return the handler for *task_name*.

        Raises:
            ContractError: If no handler (and no default) is registered.
        """
        handler = self._handlers.get(task_name, self._default)
        if handler is None:
            available = ", ".join(self.names())
            msg = f"No handler registered for task {task_name!r}. Available: {available}"
            raise ContractError(msg, code="UNKNOWN_TASK")
        return handler

    def names(self) -> list[str]:
        """Return the explicitly registered task names."""
        return sorted(self._handlers)


# ---------------------------------------------------------------------------
# HTTP transport
# ---------------------------------------------------------------------------


class HttpTaskHandler:
    """Invoke tasks as ``POST {base_url}/{task_name}`` with a JSON body.

    Error mapping:
        - request timeout            → ``TaskTimeoutError`` (retryable)
        - connection error, 5xx, 429 → ``TransientError`` ``TASK_UNAVAILABLE``
        - other 4xx                  → ``PermanentError`` ``TASK_REJECTED``
        - non-object JSON response   → ``ContractError`` ``INVALID_TASK_RESPONSE``
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        if not base_url:
            msg = "HttpTaskHandler requires a base URL"
            raise ValueError(msg)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client

    @property
    def base_url(self) -> str:
        return self._base_url

    def effective_timeout(self) -> float:
        """Return the request timeout, capped at the in-flight call budget."""
        budget = call_budget()
        if budget is None:
            return self._timeout
        return max(_MIN_REQUEST_TIMEOUT, min(self._timeout, budget))

    def __call__(self, task_name: str, payload: Any) -> dict[str, Any]:
        url = f"{self._base_url}/{task_name}"
        timeout = self.effective_timeout()
        logger.info("HTTP task call | task=%s | url=%s | timeout=%.1fs", task_name, url, timeout)

        try:
            if self._client is not None:
                response = self._client.post(url, json=payload, timeout=timeout)
            else:
                with httpx.Client(timeout=timeout) as client:
                    response = client.post(url, json=payload)
        except httpx.TimeoutException as exc:
            msg = f"Task {task_name!r} timed out after {timeout:g}s"
            raise TaskTimeoutError(msg) from exc
        except httpx.TransportError as exc:
            msg = f"Task {task_name!r} unreachable: {exc}"
            raise TransientError(msg, code="TASK_UNAVAILABLE") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            msg = f"Task {task_name!r} returned HTTP {status}"
            raise TransientError(msg, code="TASK_UNAVAILABLE")
        if status >= 400:
            msg = f"Task {task_name!r} rejected the request: HTTP {status}"
            raise PermanentError(msg, code="TASK_REJECTED")

        try:
            body = response.json()
        except ValueError as exc:
            msg = f"Task {task_name!r} returned a non-JSON body"
            raise ContractError(msg, code="INVALID_TASK_RESPONSE") from exc
        if not isinstance(body, dict):
            msg = f"Task {task_name!r} must return a JSON object, got {type(body).__name__}"
            raise ContractError(msg, code="INVALID_TASK_RESPONSE")
        return body
