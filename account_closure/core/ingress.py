"""Thin ingress boundary helpers for Azure Functions entrypoints.

Centralises the transport concerns so that ``function_app.py``
contains only trigger bindings and handoff:

- **deserialize_activity_input** — normalises the JSON-string-or-dict
  payload that Durable Functions passes to activities (idempotent on
  replays).
- **build_orchestrator_input** — constructs the canonical
  ``OrchestrationInput`` dict from an HTTP trigger body, validating the
  account identifier and propagating a correlation identifier.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from account_closure.core.constants import ACCOUNT_ID_KEY
from account_closure.core.exceptions import ContractError
from account_closure.models.payloads import OrchestrationInput

logger = logging.getLogger("account_closure.core.ingress")


# ---------------------------------------------------------------------------
# Activity input deserialisation
# ---------------------------------------------------------------------------


def deserialize_activity_input(raw: str | dict[str, Any] | object) -> dict[str, Any]:
    """Normalise Durable Functions activity input to a plain dict.

    During initial execution the activity input arrives as a JSON
    string; on orchestrator replay it may already be a ``dict``.

    Raises:
        ContractError: If *raw* is neither a JSON string nor a dict.
    """
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, ValueError) as exc:
            msg = f"Activity input is not valid JSON: {exc}"
            raise ContractError(msg, stage="ingress", code="INVALID_JSON") from exc
        if not isinstance(parsed, dict):
            msg = f"Activity input JSON must be an object, got {type(parsed).__name__}"
            raise ContractError(msg, stage="ingress", code="INVALID_INPUT_TYPE")
        return parsed
    if isinstance(raw, dict):
        return raw
    msg = f"Unexpected activity input type: {type(raw).__name__}"
    raise ContractError(msg, stage="ingress", code="INVALID_INPUT_TYPE")


# ---------------------------------------------------------------------------
# Canonical orchestrator input builder
# ---------------------------------------------------------------------------


def build_orchestrator_input(
    body: dict[str, Any] | object,
    *,
    correlation_id: str = "",
) -> OrchestrationInput:
    """Build a canonical ``OrchestrationInput`` from a trigger body.

    The account identifier is the only required field.  Any other
    top-level fields are carried through untouched as seed context for
    the first task; ``payload`` defaults to an empty object.

    Args:
        body: Parsed JSON body of the trigger request.
        correlation_id: Caller-supplied correlation identifier.  A new
            UUID is generated when empty.

    Returns:
        Validated ``OrchestrationInput`` dict.

    Raises:
        ContractError: If the body is not an object or the account
            identifier is missing.
    """
    if not isinstance(body, dict):
        msg = f"Trigger body must be a JSON object, got {type(body).__name__}"
        raise ContractError(msg, stage="ingress", code="INVALID_INPUT_TYPE")

    account_id = str(body.get(ACCOUNT_ID_KEY, "") or "").strip()
    if not account_id:
        msg = "Orchestrator input missing required field(s): account_id"
        raise ContractError(msg, stage="ingress", code="MISSING_ORCHESTRATOR_FIELDS")

    seed_payload = body.get("payload", {})
    if not isinstance(seed_payload, dict):
        msg = f"'payload' must be an object, got {type(seed_payload).__name__}"
        raise ContractError(msg, stage="ingress", code="INVALID_INPUT_TYPE")

    payload: OrchestrationInput = {  # type: ignore[typeddict-unknown-key]
        **body,
        "account_id": account_id,
        "payload": seed_payload,
        "correlation_id": correlation_id or str(body.get("correlation_id", "")) or str(uuid.uuid4()),
    }

    logger.debug(
        "Built orchestrator input | account_id=%s | correlation_id=%s",
        payload["account_id"],
        payload["correlation_id"],
    )

    return payload
