"""Azure Functions entry point — AWS account-closure workflow.

This module registers all Azure Functions (triggers, orchestrators, activities)
using the Python v2 programming model.

All business logic lives in the account_closure package. This file is purely
the wiring layer between Azure Functions bindings and application code.
"""

from __future__ import annotations

import json
import logging

import azure.durable_functions as df
import azure.functions as func

from account_closure.core.constants import (
    BRANCH_SUBORCHESTRATOR,
    INVOKE_TASK_ACTIVITY,
    ORCHESTRATOR_FUNCTION,
)
from account_closure.core.exceptions import ContractError
from account_closure.core.ingress import build_orchestrator_input, deserialize_activity_input

app = func.FunctionApp()

logger = logging.getLogger("account_closure.function_app")


# ---------------------------------------------------------------------------
# Trigger: HTTP POST → Start Orchestration
# ---------------------------------------------------------------------------


@app.function_name("account_closure_trigger")
@app.route(route="account-closure", methods=["POST"])
@app.durable_client_input(client_name="client")
async def account_closure_trigger(
    req: func.HttpRequest, client: df.DurableOrchestrationClient
) -> func.HttpResponse:
    """HTTP trigger that starts one account-closure instance.

    Body: JSON object with at least ``account_id``.  An optional
    ``x-correlation-id`` header is propagated into the instance input.

    Returns the Durable Functions check-status response (202) on
    success, or 400 with a structured error body on invalid input.
    """
    try:
        body = req.get_json()
    except ValueError:
        body = None

    try:
        orchestrator_input = build_orchestrator_input(
            body,
            correlation_id=req.headers.get("x-correlation-id", ""),
        )
    except ContractError as exc:
        logger.warning("Rejected account-closure request | code=%s | error=%s", exc.code, exc)
        return func.HttpResponse(
            json.dumps(exc.to_error_dict()),
            status_code=400,
            mimetype="application/json",
        )

    logger.info(
        "HTTP trigger fired | account_id=%s | correlation_id=%s",
        orchestrator_input["account_id"],
        orchestrator_input["correlation_id"],
    )

    try:
        instance_id = await client.start_new(
            ORCHESTRATOR_FUNCTION,
            client_input=orchestrator_input,
        )
    except Exception:
        logger.exception(
            "Failed to start orchestrator for account_id=%s",
            orchestrator_input["account_id"],
        )
        raise

    logger.info(
        "Orchestrator started | instance_id=%s | account_id=%s",
        instance_id,
        orchestrator_input["account_id"],
    )

    return client.create_check_status_response(req, instance_id)


# ---------------------------------------------------------------------------
# Orchestrators
# ---------------------------------------------------------------------------


@app.function_name(ORCHESTRATOR_FUNCTION)
@app.orchestration_trigger(context_name="context")
def account_closure_orchestrator(context: df.DurableOrchestrationContext) -> object:
    """Durable Functions orchestrator for the account-closure workflow.

    See ``account_closure.orchestrators.account_closure`` for implementation.
    """
    from account_closure.orchestrators.account_closure import orchestrator_function

    return orchestrator_function(context)


@app.function_name(BRANCH_SUBORCHESTRATOR)
@app.orchestration_trigger(context_name="context")
def parallel_branch_suborchestrator(context: df.DurableOrchestrationContext) -> object:
    """Sub-orchestrator: walk one branch of a parallel stage.

    Called concurrently via ``task_all`` from the offboarding stage.
    """
    from account_closure.orchestrators.account_closure import branch_orchestrator_function

    return branch_orchestrator_function(context)


# ---------------------------------------------------------------------------
# HTTP: Orchestrator Status Endpoint
# ---------------------------------------------------------------------------


@app.function_name("orchestrator_status")
@app.route(route="account-closure/{instance_id}", methods=["GET"])
@app.durable_client_input(client_name="client")
async def orchestrator_status(
    req: func.HttpRequest,
    client: df.DurableOrchestrationClient,
) -> func.HttpResponse:
    """Return the status of a specific orchestrator instance."""
    instance_id = req.route_params.get("instance_id", "")
    if not instance_id:
        return func.HttpResponse("Missing instance_id", status_code=400)

    status = await client.get_status(instance_id)
    if not status:
        return func.HttpResponse("Instance not found", status_code=404)

    return client.create_check_status_response(req, instance_id)


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------


@app.function_name(INVOKE_TASK_ACTIVITY)
@app.activity_trigger(input_name="activityInput")
def invoke_task_activity(activityInput: str) -> dict[str, object]:  # noqa: N803
    """Durable Functions activity: run one task attempt over HTTP.

    Input:
        JSON string (or dict when replaying) containing an
        ``InvokeTaskInput`` (``task_name``, ``node``, ``payload``).

    Returns:
        ``InvokeTaskOutput`` envelope (``ok`` plus ``result`` or ``error``).
    """
    from account_closure.activities.invoke_task import build_handler_registry, invoke_task
    from account_closure.core.config import WorkflowConfig

    payload = deserialize_activity_input(activityInput)
    handlers = build_handler_registry(WorkflowConfig.from_env())
    return dict(invoke_task(payload, handlers=handlers))
