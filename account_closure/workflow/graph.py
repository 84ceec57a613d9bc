"""Workflow graph: named nodes, entry point, ceiling, and validation.

A ``WorkflowGraph`` is built once and never mutated.  Construction
validates the whole structure — including every parallel branch
sub-graph — so an execution driver can walk it without defensive
lookups:

- the start node exists
- every successor name (task/wait/pass ``next``, choice rules and
  default, parallel ``next``) resolves to a node
- every node is reachable from the start node
- at least one terminal node exists
- parallel branches have unique names and merge slots reference them
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from account_closure.core.exceptions import GraphValidationError
from account_closure.workflow.nodes import Node, ParallelNode

logger = logging.getLogger("account_closure.workflow.graph")


@dataclass(frozen=True, eq=False)
class WorkflowGraph:
    """Immutable, validated directed graph of workflow nodes.

    Attributes:
        name: Workflow name (e.g. ``"aws-account-closure-dev"``).
        start_at: Entry node name.
        nodes: Node name → node.
        timeout_seconds: Instance-level ceiling; ``None`` for branch
            sub-graphs, which share their parent's deadline.
    """

    name: str
    start_at: str
    nodes: Mapping[str, Node]
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", MappingProxyType(dict(self.nodes)))
        self.validate()

    @classmethod
    def from_nodes(
        cls,
        name: str,
        start_at: str,
        nodes: Iterable[Node],
        *,
        timeout_seconds: float | None = None,
    ) -> WorkflowGraph:
        """Build a graph from a node list, rejecting duplicate names."""
        by_name: dict[str, Node] = {}
        for node in nodes:
            if node.name in by_name:
                msg = f"{name}: duplicate node name {node.name!r}"
                raise GraphValidationError(msg)
            by_name[node.name] = node
        return cls(
            name=name,
            start_at=start_at,
            nodes=by_name,
            timeout_seconds=timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def node(self, name: str) -> Node:
        """Return the node called *name*.

        Raises:
            GraphValidationError: If no such node exists.
        """
        try:
            return self.nodes[name]
        except KeyError:
            msg = f"{self.name}: unknown node {name!r}"
            raise GraphValidationError(msg) from None

    @property
    def start(self) -> Node:
        return self.nodes[self.start_at]

    @property
    def terminals(self) -> tuple[str, ...]:
        return tuple(n.name for n in self.nodes.values() if not n.successors)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Check the structural invariants.  Raises ``GraphValidationError``."""
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            msg = f"{self.name}: timeout must be > 0, got {self.timeout_seconds!r}"
            raise GraphValidationError(msg)

        if self.start_at not in self.nodes:
            msg = f"{self.name}: start node {self.start_at!r} does not exist"
            raise GraphValidationError(msg)

        for key, node in self.nodes.items():
            if key != node.name:
                msg = f"{self.name}: node registered as {key!r} is named {node.name!r}"
                raise GraphValidationError(msg)
            for successor in node.successors:
                if successor not in self.nodes:
                    msg = f"{self.name}: node {node.name!r} references unknown successor {successor!r}"
                    raise GraphValidationError(msg)
            if isinstance(node, ParallelNode):
                _validate_parallel(self.name, node)

        reachable = self._reachable()
        unreachable = [name for name in self.nodes if name not in reachable]
        if unreachable:
            msg = f"{self.name}: unreachable node(s): {', '.join(sorted(unreachable))}"
            raise GraphValidationError(msg)

        if not self.terminals:
            msg = f"{self.name}: graph has no terminal node"
            raise GraphValidationError(msg)

        logger.debug(
            "Graph validated | workflow=%s | nodes=%d | terminals=%s",
            self.name,
            len(self.nodes),
            ",".join(self.terminals),
        )

    def _reachable(self) -> set[str]:
        seen = {self.start_at}
        queue = deque([self.start_at])
        while queue:
            for successor in self.nodes[queue.popleft()].successors:
                if successor not in seen:
                    seen.add(successor)
                    queue.append(successor)
        return seen


@dataclass(frozen=True, slots=True)
class Branch:
    """A named parallel branch and its (already validated) sub-graph."""

    name: str
    graph: WorkflowGraph


def _validate_parallel(workflow: str, node: ParallelNode) -> None:
    if not node.branches:
        msg = f"{workflow}: parallel node {node.name!r} has no branches"
        raise GraphValidationError(msg)

    names = [b.name for b in node.branches]
    if len(set(names)) != len(names):
        msg = f"{workflow}: parallel node {node.name!r} has duplicate branch names"
        raise GraphValidationError(msg)

    unknown = node.merge.branches - set(names)
    if unknown:
        msg = (
            f"{workflow}: parallel node {node.name!r} merges unknown branch(es): "
            f"{', '.join(sorted(unknown))}"
        )
        raise GraphValidationError(msg)
