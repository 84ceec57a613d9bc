"""Typed payload schemas for the Durable Functions boundaries.

Every activity and sub-orchestrator in the hosted workflow receives and
returns a JSON-serialisable dict.  These ``TypedDict`` definitions make
the contracts explicit so that pyright catches key mismatches at
analysis time and ``validate_payload`` catches them at runtime.

Usage::

    from account_closure.models.payloads import InvokeTaskInput, validate_payload

    def invoke_task_activity(raw: dict) -> ...:
        validate_payload(raw, InvokeTaskInput, activity="invoke_task")
"""

from __future__ import annotations

from typing import Any, NotRequired, TypedDict

from account_closure.core.exceptions import ContractError

# ---------------------------------------------------------------------------
# Orchestration input (trigger → orchestrator)
# ---------------------------------------------------------------------------


class OrchestrationInput(TypedDict):
    """Initial context built by ``build_orchestrator_input``."""

    account_id: str
    payload: dict[str, Any]
    correlation_id: str


# ---------------------------------------------------------------------------
# invoke_task activity (orchestrator → task handler)
# ---------------------------------------------------------------------------


class InvokeTaskInput(TypedDict):
    """Orchestrator → ``invoke_task`` activity."""

    task_name: str
    node: str
    payload: Any
    attempt: NotRequired[int]
    instance_id: NotRequired[str]
    deadline: NotRequired[str]


class InvokeTaskOutput(TypedDict):
    """``invoke_task`` activity → orchestrator.

    Failures are returned as an envelope rather than raised so that the
    orchestrator can classify them by ``error["code"]``.
    """

    ok: bool
    result: NotRequired[dict[str, Any]]
    error: NotRequired[dict[str, Any]]


# ---------------------------------------------------------------------------
# Parallel branch sub-orchestrator
# ---------------------------------------------------------------------------


class BranchInput(TypedDict):
    """Orchestrator → ``parallel_branch_suborchestrator``."""

    parallel: str
    branch: str
    context: dict[str, Any]
    deadline: str
    instance_id: NotRequired[str]


class BranchOutput(TypedDict):
    """``parallel_branch_suborchestrator`` → orchestrator."""

    branch: str
    ok: bool
    context: NotRequired[dict[str, Any]]
    error: NotRequired[dict[str, Any]]


# ---------------------------------------------------------------------------
# Orchestrator output
# ---------------------------------------------------------------------------


class WorkflowSummary(TypedDict):
    """Final orchestrator result, success or failure."""

    status: str
    workflow: str
    instance_id: str
    current_node: str
    context: dict[str, Any]
    visits: list[str]
    failure: dict[str, Any] | None


# ---------------------------------------------------------------------------
# Required-key registrations (used by validate_payload)
# ---------------------------------------------------------------------------

_REQUIRED_KEYS: dict[type, frozenset[str]] = {
    OrchestrationInput: frozenset({"account_id"}),
    InvokeTaskInput: frozenset({"task_name", "node", "payload"}),
    InvokeTaskOutput: frozenset({"ok"}),
    BranchInput: frozenset({"parallel", "branch", "context", "deadline"}),
}


# ---------------------------------------------------------------------------
# Runtime validation
# ---------------------------------------------------------------------------


def validate_payload(
    raw: dict[str, Any],
    schema: type,
    *,
    activity: str,
) -> None:
    """Validate that *raw* contains the required keys for *schema*.

    Raises:
        ContractError: If required keys are missing from the payload.
    """
    required = _REQUIRED_KEYS.get(schema)
    if required is None:
        return

    missing = required - raw.keys()
    if missing:
        msg = f"{activity}: missing required payload key(s): {', '.join(sorted(missing))}"
        raise ContractError(msg, stage=activity, code="PAYLOAD_MISSING_KEYS")
