"""In-process execution driver for a workflow graph.

``Orchestrator.run`` walks one instance from the graph's start node to
a terminal node, applying each node's contract:

- ``TaskNode``     → ``TaskInvoker`` (retry/backoff through the deadline)
- ``WaitNode``     → ``Deadline.sleep``
- ``ChoiceNode``   → first matching rule, else default
- ``ParallelNode`` → ``ParallelStage`` (threads, join, named merge)
- ``PassNode``     → no-op

Each instance gets its own ``Deadline`` and ``ExecutionRecord``; the
orchestrator itself only holds the immutable graph and the handler
registry, so one orchestrator can run many instances.

Failures never escape ``run``: they are captured on the returned
record as a ``FailureReport`` naming the node and the last-known
context.  Durable state across restarts is out of scope; the record is
what an external store would persist via the ``listener`` hook.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from account_closure.core.context import snapshot
from account_closure.core.exceptions import WorkflowError, WorkflowTimeoutError
from account_closure.engine.deadline import Clock, Deadline, WaitFn
from account_closure.engine.invoker import TaskInvoker
from account_closure.engine.parallel import ParallelStage
from account_closure.models.execution import (
    ExecutionRecord,
    ExecutionStatus,
    FailureReport,
    NodeVisit,
)
from account_closure.workflow.nodes import ChoiceNode, ParallelNode, TaskNode, WaitNode

if TYPE_CHECKING:
    from account_closure.engine.handlers import HandlerRegistry
    from account_closure.workflow.graph import Branch, WorkflowGraph
    from account_closure.workflow.nodes import Node

logger = logging.getLogger("account_closure.engine.orchestrator")

Listener = Callable[[ExecutionRecord, NodeVisit], None]


class _Execution:
    """Per-instance mutable state shared by the main path and its branches."""

    def __init__(
        self,
        record: ExecutionRecord,
        deadline: Deadline,
        listener: Listener | None,
    ) -> None:
        self.record = record
        self.deadline = deadline
        self._listener = listener
        self._lock = threading.Lock()

    def enter(self, node: Node, context: dict[str, Any], branch: str) -> None:
        visit = NodeVisit(
            node=node.name,
            kind=node.kind.value,
            branch=branch,
            elapsed_seconds=round(self.deadline.elapsed(), 3),
        )
        with self._lock:
            self.record.visits.append(visit)
            if not branch:
                self.record.current_node = node.name
                self.record.context = snapshot(context)
        logger.info(
            "Node entered | instance=%s | node=%s | kind=%s | branch=%s",
            self.record.instance_id,
            node.name,
            visit.kind,
            branch or "-",
        )
        if self._listener is not None:
            self._listener(self.record, visit)

    def count_attempt(self, node_name: str) -> None:
        with self._lock:
            self.record.attempts[node_name] = self.record.attempts.get(node_name, 0) + 1


class Orchestrator:
    """Drive workflow instances over an immutable graph.

    Args:
        graph: Validated workflow graph.
        handlers: Registry resolving task names to handlers.
        clock: Monotonic clock for the deadline (default ``time.monotonic``).
        wait: Blocking wait for the deadline (default: cancellable event wait).
        listener: Called with the live record on every node entry.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        handlers: HandlerRegistry,
        *,
        clock: Clock | None = None,
        wait: WaitFn | None = None,
        listener: Listener | None = None,
    ) -> None:
        self._graph = graph
        self._handlers = handlers
        self._clock = clock
        self._wait = wait
        self._listener = listener

    @property
    def graph(self) -> WorkflowGraph:
        return self._graph

    def run(
        self,
        initial_context: dict[str, Any],
        *,
        instance_id: str | None = None,
    ) -> ExecutionRecord:
        """Run one instance to a terminal node or failure.

        Args:
            initial_context: Trigger-supplied context (at least the
                account identifier).
            instance_id: Instance name; a UUID is generated when omitted.

        Returns:
            The final ``ExecutionRecord``.  ``status`` is ``succeeded``,
            ``failed``, or ``timed_out``; ``context`` is the terminal (or
            last-known) context.
        """
        instance_id = instance_id or str(uuid.uuid4())
        deadline = Deadline(self._graph.timeout_seconds, clock=self._clock, wait=self._wait)
        record = ExecutionRecord(
            instance_id=instance_id,
            workflow=self._graph.name,
            context=snapshot(initial_context),
        )
        execution = _Execution(record, deadline, self._listener)
        invoker = TaskInvoker(
            self._handlers,
            on_attempt=execution.count_attempt,
            correlation_id=instance_id,
        )

        logger.info(
            "Workflow started | instance=%s | workflow=%s | timeout=%s",
            instance_id,
            self._graph.name,
            self._graph.timeout_seconds,
        )

        try:
            final = self._walk(
                execution,
                invoker,
                self._graph,
                snapshot(initial_context),
                deadline,
                branch="",
            )
        except WorkflowError as exc:
            # Wake anything still parked on the deadline (e.g. abandoned branches).
            deadline.cancel()
            self._fail(record, exc)
        else:
            record.context = final
            record.status = ExecutionStatus.SUCCEEDED
            logger.info(
                "Workflow succeeded | instance=%s | workflow=%s | nodes=%d | elapsed=%.1fs",
                instance_id,
                self._graph.name,
                len(record.visits),
                deadline.elapsed(),
            )

        record.finished_at = datetime.now(tz=UTC)
        return record

    # ------------------------------------------------------------------
    # Graph walk
    # ------------------------------------------------------------------

    def _walk(
        self,
        execution: _Execution,
        invoker: TaskInvoker,
        graph: WorkflowGraph,
        context: dict[str, Any],
        deadline: Deadline,
        *,
        branch: str,
    ) -> dict[str, Any]:
        node = graph.start
        while True:
            deadline.check(node.name)
            execution.enter(node, context, branch)

            if isinstance(node, ChoiceNode):
                target = node.evaluate(context)
                logger.debug(
                    "Choice | node=%s | rules=%s | next=%s",
                    node.name,
                    "; ".join(rule.condition.describe() for rule in node.choices),
                    target,
                )
                node = graph.node(target)
                continue

            if isinstance(node, TaskNode):
                context = invoker.invoke(node, context, deadline)
            elif isinstance(node, WaitNode):
                deadline.sleep(node.seconds, node=node.name)
            elif isinstance(node, ParallelNode):
                context = self._parallel(execution, invoker).run(node, context, deadline)

            if not node.successors:
                return context
            node = graph.node(node.successors[0])

    def _parallel(self, execution: _Execution, invoker: TaskInvoker) -> ParallelStage:
        def run_branch(branch: Branch, context: dict[str, Any], scope: Deadline) -> dict[str, Any]:
            return self._walk(execution, invoker, branch.graph, context, scope, branch=branch.name)

        return ParallelStage(run_branch)

    # ------------------------------------------------------------------
    # Failure reporting
    # ------------------------------------------------------------------

    @staticmethod
    def _fail(record: ExecutionRecord, exc: WorkflowError) -> None:
        timed_out = isinstance(exc, WorkflowTimeoutError)
        record.status = ExecutionStatus.TIMED_OUT if timed_out else ExecutionStatus.FAILED
        error = exc.to_error_dict()
        record.failure = FailureReport(
            kind=exc.category,
            code=exc.code,
            node=exc.stage or record.current_node,
            message=exc.message,
            context=snapshot(record.context),
            error=error,
        )
        logger.error(
            "Workflow %s | instance=%s | workflow=%s | node=%s | code=%s | error=%s",
            record.status.value,
            record.instance_id,
            record.workflow,
            record.failure.node,
            exc.code,
            exc.message,
        )
