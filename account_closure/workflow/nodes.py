"""Tagged node variants of the workflow graph.

Every node is an immutable dataclass identified by a unique name and
referring to its successors by name.  Names are resolved and checked
when the ``WorkflowGraph`` is constructed, never during execution.

Variants
--------
- ``TaskNode``     — delegate to an opaque external handler.
- ``WaitNode``     — suspend for a fixed duration.
- ``ChoiceNode``   — route on the first matching predicate, else default.
- ``ParallelNode`` — fan out to branch sub-graphs, merge named results.
- ``PassNode``     — no-op marker; terminal when it has no successor.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

from account_closure.core.context import MISSING, read_path

if TYPE_CHECKING:
    from account_closure.workflow.graph import Branch
    from account_closure.workflow.merge import MergeSpec


class NodeKind(StrEnum):
    TASK = "task"
    WAIT = "wait"
    CHOICE = "choice"
    PARALLEL = "parallel"
    PASS = "pass"


# ---------------------------------------------------------------------------
# Choice predicates
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BooleanEquals:
    """``field == value`` where the field must exist and be a bool."""

    path: str
    value: bool

    def evaluate(self, context: dict[str, Any]) -> bool:
        actual = read_path(context, self.path)
        if actual is MISSING or not isinstance(actual, bool):
            return False
        return actual is self.value

    def describe(self) -> str:
        return f"{self.path} == {str(self.value).lower()}"


@dataclass(frozen=True, slots=True)
class NumericLessThan:
    """``field < threshold`` where the field must exist and be numeric."""

    path: str
    threshold: float

    def evaluate(self, context: dict[str, Any]) -> bool:
        actual = read_path(context, self.path)
        if actual is MISSING or isinstance(actual, bool):
            return False
        if not isinstance(actual, int | float):
            return False
        return actual < self.threshold

    def describe(self) -> str:
        return f"{self.path} < {self.threshold:g}"


Condition = BooleanEquals | NumericLessThan


@dataclass(frozen=True, slots=True)
class ChoiceRule:
    condition: Condition
    next: str


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

#: Wildcard error code matching any error flagged ``retryable``.
ALL_ERRORS = "ALL"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Per-task retry policy.

    Attributes:
        error_codes: Error codes eligible for retry.  ``ALL`` matches any
            error whose ``retryable`` flag is set.
        max_attempts: Retries allowed after the first invocation.
        interval_seconds: Delay before the first retry.
        backoff_rate: Multiplier applied to the delay for each later retry.
    """

    error_codes: tuple[str, ...]
    max_attempts: int = 3
    interval_seconds: float = 1.0
    backoff_rate: float = 2.0

    def matches(self, error: dict[str, Any]) -> bool:
        """Return ``True`` if the structured *error* is eligible for retry."""
        code = str(error.get("code", ""))
        if code in self.error_codes:
            return True
        return ALL_ERRORS in self.error_codes and bool(error.get("retryable", False))

    def delay_for(self, retry: int) -> float:
        """Return the backoff before retry number *retry* (1-based)."""
        return self.interval_seconds * (self.backoff_rate ** (retry - 1))


# ---------------------------------------------------------------------------
# Node variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TaskNode:
    """Invoke the handler registered for ``task``.

    The handler receives the sub-view at ``input_path``; its result is
    wrapped as ``{"Payload": result}`` and becomes the new context.
    When ``increment_path`` is set, the value at that path in the
    pre-invocation context (default 0) plus one is written into the
    result.
    """

    kind: ClassVar[NodeKind] = NodeKind.TASK

    name: str
    task: str
    next: str | None = None
    input_path: str = "$"
    retry: RetryPolicy | None = None
    increment_path: str | None = None

    @property
    def successors(self) -> tuple[str, ...]:
        return (self.next,) if self.next else ()


@dataclass(frozen=True, slots=True)
class WaitNode:
    """Suspend for ``seconds`` then advance to ``next``."""

    kind: ClassVar[NodeKind] = NodeKind.WAIT

    name: str
    seconds: float
    next: str

    @property
    def successors(self) -> tuple[str, ...]:
        return (self.next,)


@dataclass(frozen=True, slots=True)
class ChoiceNode:
    """Route to the first rule whose condition holds, else ``default``."""

    kind: ClassVar[NodeKind] = NodeKind.CHOICE

    name: str
    choices: tuple[ChoiceRule, ...]
    default: str

    @property
    def successors(self) -> tuple[str, ...]:
        return (*(rule.next for rule in self.choices), self.default)

    def evaluate(self, context: dict[str, Any]) -> str:
        """Return the successor name for *context*.  Side-effect free."""
        for rule in self.choices:
            if rule.condition.evaluate(context):
                return rule.next
        return self.default


@dataclass(frozen=True, slots=True)
class ParallelNode:
    """Run every branch on its own copy of the context, then merge."""

    kind: ClassVar[NodeKind] = NodeKind.PARALLEL

    name: str
    branches: tuple[Branch, ...]
    merge: MergeSpec
    next: str | None = None

    @property
    def successors(self) -> tuple[str, ...]:
        return (self.next,) if self.next else ()

    def branch(self, name: str) -> Branch:
        for branch in self.branches:
            if branch.name == name:
                return branch
        msg = f"Parallel node {self.name!r} has no branch {name!r}"
        raise KeyError(msg)


@dataclass(frozen=True, slots=True)
class PassNode:
    """Pass the context through unchanged."""

    kind: ClassVar[NodeKind] = NodeKind.PASS

    name: str
    next: str | None = None

    @property
    def successors(self) -> tuple[str, ...]:
        return (self.next,) if self.next else ()


Node = TaskNode | WaitNode | ChoiceNode | ParallelNode | PassNode
