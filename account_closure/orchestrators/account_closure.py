"""Durable Functions orchestrator for the account-closure workflow.

Walks the same ``WorkflowGraph`` as the in-process ``Orchestrator`` but
expresses every suspension point as a durable task so the instance
survives host restarts:

- ``TaskNode``     → ``call_activity("invoke_task")`` per attempt; retry
  backoff is a durable timer
- ``WaitNode``     → ``create_timer``
- ``ChoiceNode``   → evaluated in the orchestrator (pure, replay-safe)
- ``ParallelNode`` → one ``parallel_branch_suborchestrator`` per branch,
  joined with ``task_all`` and merged by branch name

The instance ceiling is an absolute orchestration time computed once
from ``current_utc_datetime`` and handed to every branch.  Timers and
backoff never wait past it, and every activity call and branch join is
raced against a timer at the ceiling with ``task_any``.  Durable
sub-orchestrations cannot be cancelled from the parent; a failing branch
fails the stage only after its siblings return, and branches still
running at the ceiling are abandoned.

The orchestrator always returns a ``WorkflowSummary``.  Failures are
reported in its ``failure`` field rather than raised so the caller can
read the failing node and last-known context from the instance output.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from account_closure.core.config import WorkflowConfig
from account_closure.core.constants import BRANCH_SUBORCHESTRATOR, INVOKE_TASK_ACTIVITY
from account_closure.core.context import select_input, snapshot
from account_closure.core.exceptions import (
    BranchFailedError,
    ContractError,
    TaskFailedError,
    WorkflowError,
    WorkflowTimeoutError,
    error_from_dict,
)
from account_closure.engine.invoker import next_retry_delay, wrap_task_result
from account_closure.models.execution import ExecutionStatus, FailureReport
from account_closure.models.payloads import (
    BranchInput,
    BranchOutput,
    InvokeTaskInput,
    WorkflowSummary,
    validate_payload,
)
from account_closure.workflow.account_closure import build_account_closure_graph
from account_closure.workflow.merge import merge_branch_results
from account_closure.workflow.nodes import ChoiceNode, ParallelNode, TaskNode, WaitNode

if TYPE_CHECKING:
    from collections.abc import Generator

    import azure.durable_functions as df

    from account_closure.workflow.graph import WorkflowGraph

logger = logging.getLogger("account_closure.orchestrators.account_closure")


@functools.cache
def default_graph() -> WorkflowGraph:
    """Build the account-closure graph from the environment (once per worker)."""
    return build_account_closure_graph(WorkflowConfig.from_env())


@dataclass
class _WalkState:
    """Progress of one walk, kept for the failure report."""

    current_node: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    visits: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Orchestrator entry points
# ---------------------------------------------------------------------------


def orchestrator_function(
    context: df.DurableOrchestrationContext,
    graph: WorkflowGraph | None = None,
) -> Generator[Any, Any, WorkflowSummary]:
    """Account-closure orchestrator.

    Args:
        context: Durable Functions orchestration context.
        graph: Workflow graph; defaults to ``default_graph()``.

    Returns:
        ``WorkflowSummary`` with ``status`` ``succeeded``, ``failed`` or
        ``timed_out``.

    Input (via ``context.get_input``):
        An ``OrchestrationInput`` dict (``account_id``, ``payload``,
        ``correlation_id``).  It becomes the initial context as-is.
    """
    graph = graph or default_graph()
    initial: dict[str, Any] = context.get_input() or {}
    instance_id = context.instance_id
    deadline = _compute_deadline(context, graph)
    state = _WalkState(context=snapshot(initial))

    if not context.is_replaying:
        logger.info(
            "Orchestrator started | instance=%s | workflow=%s | account_id=%s | correlation_id=%s",
            instance_id,
            graph.name,
            initial.get("account_id", ""),
            initial.get("correlation_id", ""),
        )

    try:
        final = yield from walk_graph(
            context,
            graph,
            snapshot(initial),
            deadline=deadline,
            state=state,
            instance_id=instance_id,
        )
    except WorkflowError as exc:
        return _failure_summary(context, graph, state, exc, instance_id=instance_id)

    if not context.is_replaying:
        logger.info(
            "Orchestrator completed | instance=%s | workflow=%s | nodes=%d",
            instance_id,
            graph.name,
            len(state.visits),
        )

    return WorkflowSummary(
        status=ExecutionStatus.SUCCEEDED.value,
        workflow=graph.name,
        instance_id=instance_id,
        current_node=state.current_node,
        context=final,
        visits=state.visits,
        failure=None,
    )


def branch_orchestrator_function(
    context: df.DurableOrchestrationContext,
    graph: WorkflowGraph | None = None,
) -> Generator[Any, Any, BranchOutput]:
    """Sub-orchestrator: walk one branch of a parallel node.

    Input (via ``context.get_input``):
        A ``BranchInput`` dict naming the parallel node and branch, the
        branch's copy of the pre-stage context, and the absolute
        deadline (ISO 8601).

    Returns:
        ``BranchOutput``; failures are returned with ``ok=False`` so the
        parent can apply its own failure policy.
    """
    graph = graph or default_graph()
    raw: dict[str, Any] = context.get_input() or {}
    validate_payload(raw, BranchInput, activity=BRANCH_SUBORCHESTRATOR)

    parallel = graph.node(str(raw["parallel"]))
    if not isinstance(parallel, ParallelNode):
        msg = f"Node {parallel.name!r} is not a parallel node"
        raise ContractError(msg, stage=BRANCH_SUBORCHESTRATOR, code="NOT_A_PARALLEL_NODE")
    branch = parallel.branch(str(raw["branch"]))
    deadline = datetime.fromisoformat(str(raw["deadline"]))
    instance_id = str(raw.get("instance_id", "")) or context.instance_id

    try:
        final = yield from walk_graph(
            context,
            branch.graph,
            snapshot(raw["context"]),
            deadline=deadline,
            state=_WalkState(),
            instance_id=instance_id,
        )
    except WorkflowError as exc:
        if not context.is_replaying:
            logger.warning(
                "Branch failed | instance=%s | parallel=%s | branch=%s | code=%s | error=%s",
                instance_id,
                parallel.name,
                branch.name,
                exc.code,
                exc.message,
            )
        return BranchOutput(branch=branch.name, ok=False, error=exc.to_error_dict())

    return BranchOutput(branch=branch.name, ok=True, context=final)


# ---------------------------------------------------------------------------
# Graph walk
# ---------------------------------------------------------------------------


def walk_graph(
    context: df.DurableOrchestrationContext,
    graph: WorkflowGraph,
    ctx: dict[str, Any],
    *,
    deadline: datetime,
    state: _WalkState,
    instance_id: str,
) -> Generator[Any, Any, dict[str, Any]]:
    """Walk *graph* from its start node and return the terminal context.

    Raises:
        WorkflowError: Any terminal failure, including the timeout.
    """
    node = graph.start
    while True:
        _check_deadline(context, deadline, node.name)
        state.current_node = node.name
        state.context = ctx
        state.visits.append(node.name)

        if not context.is_replaying:
            logger.info(
                "Node entered | instance=%s | node=%s | kind=%s",
                instance_id,
                node.name,
                node.kind.value,
            )

        if isinstance(node, ChoiceNode):
            node = graph.node(node.evaluate(ctx))
            continue

        if isinstance(node, TaskNode):
            ctx = yield from _invoke_task(
                context, node, ctx, deadline=deadline, instance_id=instance_id
            )
        elif isinstance(node, WaitNode):
            yield from _sleep(context, node.seconds, deadline=deadline, node=node.name)
        elif isinstance(node, ParallelNode):
            ctx = yield from _run_parallel(
                context, node, ctx, deadline=deadline, instance_id=instance_id
            )

        if not node.successors:
            return ctx
        node = graph.node(node.successors[0])


def _invoke_task(
    context: df.DurableOrchestrationContext,
    node: TaskNode,
    ctx: dict[str, Any],
    *,
    deadline: datetime,
    instance_id: str,
) -> Generator[Any, Any, dict[str, Any]]:
    """Call ``invoke_task`` until success, a terminal error, or exhaustion.

    Backoff between attempts follows the node's ``RetryPolicy`` and uses
    durable timers capped at the deadline.
    """
    payload = select_input(ctx, node.input_path)
    retries = 0

    while True:
        activity_input = InvokeTaskInput(
            task_name=node.task,
            node=node.name,
            payload=payload,
            attempt=retries + 1,
            instance_id=instance_id,
        )
        if _bounded(deadline):
            activity_input["deadline"] = deadline.isoformat()
        try:
            envelope = yield from _until_deadline(
                context,
                context.call_activity(INVOKE_TASK_ACTIVITY, activity_input),
                deadline=deadline,
                node=node.name,
            )
        except WorkflowTimeoutError:
            raise
        except Exception as exc:
            # The activity itself crashed; no structured error is available.
            envelope = {
                "ok": False,
                "error": TaskFailedError(
                    f"invoke_task activity failed: {exc}",
                    stage=node.name,
                    correlation_id=instance_id,
                ).to_error_dict(),
            }

        # A result arriving after the ceiling does not count.
        _check_deadline(context, deadline, node.name)

        if not isinstance(envelope, dict):
            msg = f"invoke_task returned {type(envelope).__name__}, expected an object"
            raise ContractError(msg, stage=node.name, code="INVALID_TASK_RESPONSE")

        if envelope.get("ok"):
            result = envelope.get("result")
            if not isinstance(result, dict):
                msg = f"Task {node.task!r} must return an object, got {type(result).__name__}"
                raise ContractError(msg, stage=node.name, code="INVALID_TASK_RESPONSE")
            if not context.is_replaying:
                logger.info(
                    "Task completed | instance=%s | node=%s | task=%s | attempts=%d",
                    instance_id,
                    node.name,
                    node.task,
                    retries + 1,
                )
            return wrap_task_result(node, ctx, result)

        error = envelope.get("error")
        error = error if isinstance(error, dict) else {}
        backoff = next_retry_delay(node, error, retries, correlation_id=instance_id)
        if backoff is None:
            if not context.is_replaying:
                logger.error(
                    "Task failed | instance=%s | node=%s | task=%s | code=%s | error=%s",
                    instance_id,
                    node.name,
                    node.task,
                    error.get("code", ""),
                    error.get("message", ""),
                )
            raise error_from_dict(error, stage=node.name)

        retries += 1
        if not context.is_replaying:
            logger.warning(
                "Task error (retry %d/%d) | instance=%s | node=%s | backoff=%.1fs | error=%s",
                retries,
                node.retry.max_attempts if node.retry else 0,
                instance_id,
                node.name,
                backoff,
                error.get("message", ""),
            )
        yield from _sleep(context, backoff, deadline=deadline, node=node.name)


def _run_parallel(
    context: df.DurableOrchestrationContext,
    node: ParallelNode,
    ctx: dict[str, Any],
    *,
    deadline: datetime,
    instance_id: str,
) -> Generator[Any, Any, dict[str, Any]]:
    """Fan out one sub-orchestration per branch, join, and merge by name."""
    tasks = [
        context.call_sub_orchestrator(
            BRANCH_SUBORCHESTRATOR,
            BranchInput(
                parallel=node.name,
                branch=branch.name,
                context=snapshot(ctx),
                deadline=deadline.isoformat(),
                instance_id=instance_id,
            ),
            instance_id=f"{instance_id}:{node.name}:{branch.name}",
        )
        for branch in node.branches
    ]
    outputs = yield from _until_deadline(
        context, context.task_all(tasks), deadline=deadline, node=node.name
    )

    by_branch: dict[str, dict[str, Any]] = {}
    for output in outputs if isinstance(outputs, list) else []:
        if isinstance(output, dict) and "branch" in output:
            by_branch[str(output["branch"])] = output

    # Declaration order decides which failure is reported.
    for branch in node.branches:
        output = by_branch.get(branch.name)
        if output is None:
            msg = f"Branch {branch.name!r} of {node.name!r} returned no result"
            raise ContractError(msg, stage=node.name, code="MISSING_BRANCH_RESULT")
        if output.get("ok"):
            continue
        cause = output.get("error") if isinstance(output.get("error"), dict) else {}
        if cause.get("code") == WorkflowTimeoutError.default_code:
            raise error_from_dict(cause, stage=node.name)
        if not context.is_replaying:
            logger.error(
                "Parallel branch failed | instance=%s | node=%s | branch=%s | code=%s",
                instance_id,
                node.name,
                branch.name,
                cause.get("code", ""),
            )
        msg = f"Branch {branch.name!r} of {node.name!r} failed: {cause.get('message', '')}"
        raise BranchFailedError(
            msg,
            branch=branch.name,
            cause=cause,
            stage=node.name,
            correlation_id=instance_id,
        )

    _check_deadline(context, deadline, node.name)
    results = {name: output.get("context") or {} for name, output in by_branch.items()}
    merged = merge_branch_results(node.merge, results, ctx)

    if not context.is_replaying:
        logger.info(
            "Parallel stage merged | instance=%s | node=%s | branches=%d",
            instance_id,
            node.name,
            len(results),
        )
    return merged


# ---------------------------------------------------------------------------
# Deadline helpers
# ---------------------------------------------------------------------------


def _compute_deadline(context: df.DurableOrchestrationContext, graph: WorkflowGraph) -> datetime:
    # Orchestration time is replay-safe; wall-clock time is not.
    timeout = graph.timeout_seconds
    if timeout is None:
        return datetime.max.replace(tzinfo=context.current_utc_datetime.tzinfo)
    return context.current_utc_datetime + timedelta(seconds=timeout)


def _bounded(deadline: datetime) -> bool:
    return deadline.year != datetime.max.year


def _check_deadline(
    context: df.DurableOrchestrationContext,
    deadline: datetime,
    node: str,
) -> None:
    if context.current_utc_datetime >= deadline:
        msg = f"Workflow deadline {deadline.isoformat()} passed"
        raise WorkflowTimeoutError(msg, stage=node)


def _sleep(
    context: df.DurableOrchestrationContext,
    seconds: float,
    *,
    deadline: datetime,
    node: str,
) -> Generator[Any, Any, None]:
    """Durable timer for *seconds*, never firing past *deadline*."""
    fire_at = context.current_utc_datetime + timedelta(seconds=seconds)
    if fire_at >= deadline:
        yield context.create_timer(deadline)
        msg = f"Workflow deadline {deadline.isoformat()} reached while waiting {seconds:g}s"
        raise WorkflowTimeoutError(msg, stage=node)
    yield context.create_timer(fire_at)


def _until_deadline(
    context: df.DurableOrchestrationContext,
    work: Any,
    *,
    deadline: datetime,
    node: str,
) -> Generator[Any, Any, Any]:
    """Wait for the durable task *work*, racing it against a timer at *deadline*.

    Returns the result of *work*; a failed *work* raises its exception.
    The timer is cancelled when *work* wins.

    Raises:
        WorkflowTimeoutError: The deadline timer fired first.
    """
    if not _bounded(deadline):
        return (yield work)

    timer = context.create_timer(deadline)
    winner = yield context.task_any([work, timer])
    if winner is timer:
        msg = f"Workflow deadline {deadline.isoformat()} reached while waiting on {node!r}"
        raise WorkflowTimeoutError(msg, stage=node)

    timer.cancel()
    result = work.result
    if isinstance(result, BaseException):
        raise result
    return result


# ---------------------------------------------------------------------------
# Result shaping
# ---------------------------------------------------------------------------


def _failure_summary(
    context: df.DurableOrchestrationContext,
    graph: WorkflowGraph,
    state: _WalkState,
    exc: WorkflowError,
    *,
    instance_id: str,
) -> WorkflowSummary:
    timed_out = isinstance(exc, WorkflowTimeoutError)
    status = ExecutionStatus.TIMED_OUT if timed_out else ExecutionStatus.FAILED
    report = FailureReport(
        kind=exc.category,
        code=exc.code,
        node=exc.stage or state.current_node,
        message=exc.message,
        context=snapshot(state.context),
        error=exc.to_error_dict(),
    )
    if not context.is_replaying:
        logger.error(
            "Orchestrator %s | instance=%s | workflow=%s | node=%s | code=%s | error=%s",
            status.value,
            instance_id,
            graph.name,
            report.node,
            exc.code,
            exc.message,
        )
    return WorkflowSummary(
        status=status.value,
        workflow=graph.name,
        instance_id=instance_id,
        current_node=state.current_node,
        context=snapshot(state.context),
        visits=state.visits,
        failure=report.model_dump(),
    )
