"""Named-slot merge of parallel branch results.

A parallel stage produces one output context per branch.  The merge
reads declared fields out of those outputs *by branch name* and writes
them into a fresh context that replaces the working context.  Branch
completion order and declaration order therefore never affect the
result.

When a slot's branch output lacks the field, the same path is read
from the pre-stage context instead; if it is absent there too, the
target is left unset.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from account_closure.core.context import MISSING, read_path, snapshot, write_path

logger = logging.getLogger("account_closure.workflow.merge")


@dataclass(frozen=True, slots=True)
class MergeSlot:
    """Copy ``source`` from branch ``branch``'s output to ``target``."""

    target: str
    branch: str
    source: str


@dataclass(frozen=True, slots=True)
class MergeSpec:
    slots: tuple[MergeSlot, ...]

    @property
    def branches(self) -> frozenset[str]:
        return frozenset(slot.branch for slot in self.slots)


def merge_branch_results(
    spec: MergeSpec,
    results: Mapping[str, dict[str, Any]],
    pre_stage: dict[str, Any],
) -> dict[str, Any]:
    """Build the post-stage context from named branch *results*.

    Args:
        spec: Declared slots.
        results: Branch name → that branch's final context.
        pre_stage: Context the stage was entered with.

    Returns:
        A new context containing only the slot targets.
    """
    merged: dict[str, Any] = {}
    for slot in spec.slots:
        value = read_path(results.get(slot.branch, {}), slot.source)
        if value is MISSING:
            value = read_path(pre_stage, slot.source)
            if value is MISSING:
                logger.debug(
                    "Merge slot unresolved | target=%s | branch=%s | source=%s",
                    slot.target,
                    slot.branch,
                    slot.source,
                )
                continue
        merged = write_path(merged, slot.target, snapshot(value))
    return merged
