"""Parallel stage — fan out to branch sub-graphs, join, merge by name.

Each branch runs on its own worker thread with an independent deep copy
of the pre-stage context and walks its own sub-graph.  The stage blocks
until every branch has finished, then merges results by branch name.

Failure policy is fail-fast with no partial merge: on the first branch
failure the stage signals cancellation to its siblings (best effort —
they observe it at their next deadline check or wait), joins them
within the remaining time, and raises ``BranchFailedError`` for the
failed branch that comes first in declaration order.  A ceiling
reached during the join raises ``WorkflowTimeoutError`` instead.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Any

from account_closure.core.context import snapshot
from account_closure.core.exceptions import (
    BranchFailedError,
    ExecutionCancelledError,
    WorkflowTimeoutError,
    error_to_dict,
)
from account_closure.workflow.merge import merge_branch_results

if TYPE_CHECKING:
    from account_closure.engine.deadline import Deadline
    from account_closure.workflow.graph import Branch
    from account_closure.workflow.nodes import ParallelNode

    BranchRunner = Callable[[Branch, dict[str, Any], Deadline], dict[str, Any]]

logger = logging.getLogger("account_closure.engine.parallel")


class ParallelStage:
    """Coordinator for one parallel node visit.

    Args:
        run_branch: Walks a branch sub-graph and returns its final context.
    """

    def __init__(self, run_branch: BranchRunner) -> None:
        self._run_branch = run_branch

    def run(
        self, node: ParallelNode, context: dict[str, Any], deadline: Deadline
    ) -> dict[str, Any]:
        """Execute every branch of *node* and return the merged context.

        Raises:
            BranchFailedError: A branch failed terminally.
            WorkflowTimeoutError: The ceiling passed before all branches joined.
        """
        scope = deadline.child()
        pool = ThreadPoolExecutor(
            max_workers=len(node.branches),
            thread_name_prefix=f"branch-{node.name}",
        )
        futures: dict[Future[dict[str, Any]], Branch] = {}
        try:
            for branch in node.branches:
                futures[pool.submit(self._run_branch, branch, snapshot(context), scope)] = branch

            logger.info(
                "Parallel stage started | node=%s | branches=%s",
                node.name,
                ",".join(b.name for b in node.branches),
            )

            done, pending = wait(futures, timeout=scope.remaining(), return_when=FIRST_EXCEPTION)
            failed = any(f.exception() is not None for f in done)
            if failed and pending:
                scope.cancel()
                extra_done, pending = wait(pending, timeout=scope.remaining())
                done |= extra_done

            if pending:
                scope.cancel()
                msg = f"Parallel stage {node.name!r} did not join before the workflow timeout"
                logger.error(
                    "Parallel stage timed out | node=%s | pending=%s",
                    node.name,
                    ",".join(futures[f].name for f in pending),
                )
                raise WorkflowTimeoutError(msg, stage=node.name)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        self._raise_first_failure(node, futures)
        deadline.check(node.name)

        results = {futures[f].name: f.result() for f in futures}
        merged = merge_branch_results(node.merge, results, context)
        logger.info("Parallel stage merged | node=%s | branches=%d", node.name, len(results))
        return merged

    @staticmethod
    def _raise_first_failure(
        node: ParallelNode,
        futures: dict[Future[dict[str, Any]], Branch],
    ) -> None:
        by_branch = {branch.name: future for future, branch in futures.items()}
        errors: list[tuple[str, BaseException]] = []
        for branch in node.branches:
            exc = by_branch[branch.name].exception()
            if exc is not None:
                errors.append((branch.name, exc))
        if not errors:
            return

        # Siblings cancelled by the stage itself are not root causes.
        root = [(name, exc) for name, exc in errors if not isinstance(exc, ExecutionCancelledError)]
        branch_name, exc = (root or errors)[0]

        if isinstance(exc, WorkflowTimeoutError):
            raise exc

        cause = error_to_dict(exc)
        logger.error(
            "Parallel branch failed | node=%s | branch=%s | code=%s | error=%s",
            node.name,
            branch_name,
            cause["code"],
            exc,
        )
        msg = f"Branch {branch_name!r} of {node.name!r} failed: {exc}"
        raise BranchFailedError(msg, branch=branch_name, cause=cause, stage=node.name) from exc
