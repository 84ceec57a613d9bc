"""Task invoker — one task node, one handler, bounded retries.

``TaskInvoker.invoke`` selects the node's input sub-view, calls the
registered handler, and returns the next context
(``{"Payload": result}``).  Handler failures are classified through
their structured error dict:

- matched by the node's ``RetryPolicy`` → exponential backoff through
  the instance deadline, then retry;
- retries exhausted → ``TaskRetryExhaustedError`` carrying the last error;
- anything else → raised as a terminal failure.

Each call runs on a worker thread and is waited on no longer than the
instance ceiling allows.  The handler is never assumed idempotent; a
retry is a fresh call.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Any

from account_closure.core.constants import PAYLOAD_KEY
from account_closure.core.context import read_path, select_input, snapshot, write_path
from account_closure.core.exceptions import (
    ContractError,
    TaskFailedError,
    TaskRetryExhaustedError,
    WorkflowError,
    WorkflowTimeoutError,
    error_to_dict,
)
from account_closure.engine.handlers import call_with_budget

if TYPE_CHECKING:
    from account_closure.engine.deadline import Deadline
    from account_closure.engine.handlers import HandlerRegistry, TaskHandler
    from account_closure.workflow.nodes import TaskNode

logger = logging.getLogger("account_closure.engine.invoker")


class TaskInvoker:
    """Invoke task nodes against a handler registry.

    Args:
        handlers: Registry resolving task names to handlers.
        on_attempt: Called with the node name before every attempt.
        correlation_id: Instance identifier stamped on raised errors.
    """

    def __init__(
        self,
        handlers: HandlerRegistry,
        *,
        on_attempt: Callable[[str], None] | None = None,
        correlation_id: str = "",
    ) -> None:
        self._handlers = handlers
        self._on_attempt = on_attempt
        self._correlation_id = correlation_id

    def invoke(self, node: TaskNode, context: dict[str, Any], deadline: Deadline) -> dict[str, Any]:
        """Run *node* against *context* and return the next context.

        Raises:
            TaskRetryExhaustedError: Retryable failures outlasted the policy.
            WorkflowError: Any terminal failure (task, contract, timeout).
        """
        try:
            payload = select_input(context, node.input_path)
            handler = self._handlers.get(node.task)
        except WorkflowError as exc:
            exc.stage = exc.stage or node.name
            exc.correlation_id = self._correlation_id
            raise

        retries = 0
        while True:
            deadline.check(node.name)
            if self._on_attempt is not None:
                self._on_attempt(node.name)

            try:
                result = self._call(handler, node, payload, deadline)
            except WorkflowTimeoutError:
                raise
            except Exception as exc:
                error = error_to_dict(exc, stage=node.name)
                try:
                    backoff = next_retry_delay(
                        node, error, retries, correlation_id=self._correlation_id
                    )
                except TaskRetryExhaustedError as exhausted:
                    logger.error(
                        "Task retries exhausted | node=%s | task=%s | attempts=%d | error=%s",
                        node.name,
                        node.task,
                        retries + 1,
                        exc,
                    )
                    raise exhausted from exc

                if backoff is None:
                    logger.error(
                        "Task failed | node=%s | task=%s | code=%s | error=%s",
                        node.name,
                        node.task,
                        error["code"],
                        exc,
                    )
                    if isinstance(exc, WorkflowError):
                        exc.stage = exc.stage or node.name
                        exc.correlation_id = exc.correlation_id or self._correlation_id
                        raise
                    msg = f"Task {node.task!r} raised {type(exc).__name__}: {exc}"
                    raise TaskFailedError(
                        msg, stage=node.name, correlation_id=self._correlation_id
                    ) from exc

                retries += 1
                logger.warning(
                    "Task error (retry %d/%d) | node=%s | task=%s | backoff=%.1fs | error=%s",
                    retries,
                    node.retry.max_attempts if node.retry else 0,
                    node.name,
                    node.task,
                    backoff,
                    exc,
                )
                deadline.sleep(backoff, node=node.name)
                continue

            # A result arriving after the ceiling does not count.
            deadline.check(node.name)
            if not isinstance(result, dict):
                msg = f"Task {node.task!r} must return an object, got {type(result).__name__}"
                raise ContractError(
                    msg,
                    stage=node.name,
                    code="INVALID_TASK_RESPONSE",
                    correlation_id=self._correlation_id,
                )
            logger.info(
                "Task completed | node=%s | task=%s | attempts=%d",
                node.name,
                node.task,
                retries + 1,
            )
            return wrap_task_result(node, context, result)

    def _call(
        self,
        handler: TaskHandler,
        node: TaskNode,
        payload: Any,
        deadline: Deadline,
    ) -> Any:
        """Run one handler call, waiting no longer than the ceiling allows.

        The handler runs on a worker thread so a slow call cannot hold the
        instance past its ceiling.  An abandoned call is not interrupted;
        its result is discarded.

        Raises:
            WorkflowTimeoutError: The ceiling passed before the call returned.
        """
        budget = deadline.remaining()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"task-{node.name}")
        try:
            future = pool.submit(call_with_budget, handler, node.task, snapshot(payload), budget)
            done, _ = wait([future], timeout=budget)
        finally:
            pool.shutdown(wait=False)

        if not done:
            deadline.cancel()
            logger.error(
                "Task call outlived the workflow timeout | node=%s | task=%s | budget=%.1fs",
                node.name,
                node.task,
                budget or 0.0,
            )
            msg = f"Workflow timed out after {deadline.timeout_seconds:g}s waiting on {node.task!r}"
            raise WorkflowTimeoutError(msg, stage=node.name, correlation_id=self._correlation_id)
        return future.result()


def next_retry_delay(
    node: TaskNode,
    error: dict[str, Any],
    retries: int,
    *,
    correlation_id: str = "",
) -> float | None:
    """Decide whether a failed attempt of *node* is retried.

    Shared by the in-process and durable drivers.

    Args:
        node: The task node whose attempt failed.
        error: Structured error dict of the failure.
        retries: Retries already made (0 after the first call).
        correlation_id: Instance identifier stamped on the exhaustion error.

    Returns:
        The backoff in seconds before the next attempt, or ``None`` when
        the node's policy does not cover *error*.

    Raises:
        TaskRetryExhaustedError: The policy covers *error* but no retries
            are left.
    """
    policy = node.retry
    if policy is None or not policy.matches(error):
        return None
    if retries >= policy.max_attempts:
        msg = (
            f"Task {node.task!r} failed after {retries + 1} attempt(s): "
            f"{error.get('message', '')}"
        )
        raise TaskRetryExhaustedError(
            msg,
            attempts=retries + 1,
            last_error=error,
            stage=node.name,
            correlation_id=correlation_id,
        )
    return policy.delay_for(retries + 1)


def wrap_task_result(
    node: TaskNode,
    context: dict[str, Any],
    result: dict[str, Any],
) -> dict[str, Any]:
    """Build the post-task context from a handler *result*.

    Shared with the durable orchestrator so both drivers shape task
    output identically.
    """
    output: dict[str, Any] = {PAYLOAD_KEY: snapshot(result)}
    if node.increment_path:
        prior = read_path(context, node.increment_path)
        count = prior if isinstance(prior, int) and not isinstance(prior, bool) else 0
        output = write_path(output, node.increment_path, count + 1)
    return output
