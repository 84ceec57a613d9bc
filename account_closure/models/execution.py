"""Observable execution state for one workflow instance.

The ``ExecutionRecord`` is the "flight recorder" of an instance: which
node it is at, the current context snapshot, per-task attempt counters,
the ordered node visits, and — on failure — where and why it stopped.
It is updated in place by the in-process orchestrator and handed to the
optional transition listener, so it can be persisted or audited by an
external store.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from account_closure.models.payloads import WorkflowSummary


class ExecutionStatus(StrEnum):
    """Lifecycle state of a workflow instance."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class NodeVisit(BaseModel):
    """One node entry.

    Attributes:
        node: Node name.
        kind: Node variant (``task``, ``wait``, ``choice``, ``parallel``, ``pass``).
        branch: Parallel branch name when the visit happened inside a branch.
        elapsed_seconds: Seconds since instance start, on the deadline clock.
    """

    node: str
    kind: str
    branch: str = ""
    elapsed_seconds: float = 0.0


class FailureReport(BaseModel):
    """Terminal failure details for post-mortem.

    Attributes:
        kind: Error category (``transient``, ``permanent``, ``contract``, ``validation``).
        code: Machine-readable error code (e.g. ``"BRANCH_FAILED"``).
        node: Node at which the instance stopped.
        message: Human-readable description.
        context: Last-known context when the failure surfaced.
        error: Full structured error dict.
    """

    kind: str
    code: str
    node: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    error: dict[str, Any] = Field(default_factory=dict)


class ExecutionRecord(BaseModel):
    """Live, serialisable state of a single workflow instance."""

    instance_id: str
    workflow: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_node: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    attempts: dict[str, int] = Field(default_factory=dict)
    visits: list[NodeVisit] = Field(default_factory=list)
    failure: FailureReport | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCEEDED

    def visit_count(self, node: str) -> int:
        """Return how many times *node* was entered (any branch)."""
        return sum(1 for v in self.visits if v.node == node)

    def to_summary(self) -> WorkflowSummary:
        """Return the compact result shape shared with the durable orchestrator."""
        return WorkflowSummary(
            status=self.status.value,
            workflow=self.workflow,
            instance_id=self.instance_id,
            current_node=self.current_node,
            context=self.context,
            visits=[v.node for v in self.visits],
            failure=self.failure.model_dump() if self.failure else None,
        )
