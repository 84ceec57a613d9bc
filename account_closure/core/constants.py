"""Shared workflow constants — single source of truth.

Centralises task handler names, node names, status flags, and context
key paths used by the graph definition, the merge, and both execution
drivers.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Task handler names (one external function per task)
# ---------------------------------------------------------------------------

FUNC_MOVE_TO_SUSPENDED = "FUNC_MOVE_TO_SUSPENDED"
FUNC_CLOSE_AWS_ACCOUNT = "FUNC_CLOSE_AWS_ACCOUNT"
FUNC_CHECK_ORG_ACCOUNT_STATUS = "FUNC_CHECK_ORG_ACCOUNT_STATUS"
FUNC_OFFBOARD_FROM_OIL = "FUNC_OFFBOARD_FROM_OIL"
FUNC_OFFBOARD_FROM_DEVELOPER_SERVICE = "FUNC_OFFBOARD_FROM_DEVELOPER_SERVICE"
FUNC_OFFBOARD_FROM_STACKSET = "FUNC_OFFBOARD_FROM_STACKSET"
FUNC_STATUS_HANDLER = "FUNC_STATUS_HANDLER"

ALL_TASKS: tuple[str, ...] = (
    FUNC_MOVE_TO_SUSPENDED,
    FUNC_CLOSE_AWS_ACCOUNT,
    FUNC_CHECK_ORG_ACCOUNT_STATUS,
    FUNC_OFFBOARD_FROM_OIL,
    FUNC_OFFBOARD_FROM_DEVELOPER_SERVICE,
    FUNC_OFFBOARD_FROM_STACKSET,
    FUNC_STATUS_HANDLER,
)

# ---------------------------------------------------------------------------
# Node names
# ---------------------------------------------------------------------------

MOVE_TO_SUSPEND = "move_to_suspended_task"
CHOICE_MOVED_TO_SUSPENDED = "Move to suspended OU?"
AWS_ACCOUNT_CLOSE = "close_account_task"
CHOICE_ACCOUNT_CLOSED = "Account Closed or not ?"
WAIT_BEFORE_STATUS = "Wait_Y_Seconds"
ORG_ACCOUNT_STATUS = "check_org_account_status_task"
CHOICE_ORG_UPDATED = "Account Suspended updated in Org ?"
CHOICE_RETRY_STATUS = "Account not suspended"
WAIT_BETWEEN_STATUS = "Wait_X_Seconds"
DEPENDENT_SERVICE_OFFBOARDING = "dependent_service_offboarding"
OFFBOARD_FROM_OIL = "Offboard_from_OIL_task"
OFFBOARD_FROM_DEVELOPER_SERVICE = "Offboard_from_devportal_task"
OFFBOARD_FROM_STACKSET = "Offboard_from_stackset_task"
STATUS_HANDLER = "status_handler_task"
END_FLOW = "endflow"

# ---------------------------------------------------------------------------
# Status flags (written once by the owning task under ``sf_status``)
# ---------------------------------------------------------------------------

FLAG_MOVE_TO_SUSPENDED = "move_to_suspended"
FLAG_CLOSE_AWS_ACCOUNT = "close_aws_account"
FLAG_CHECK_ORG_ACCOUNT_STATUS = "check_org_account_status"
FLAG_OFFBOARD_FROM_OIL = "offboard_from_oil"
FLAG_OFFBOARD_FROM_DEVELOPER_SERVICE = "offboard_from_developer_service"
FLAG_OFFBOARD_FROM_STACKSET = "offboard_from_stackset"

STATUS_FLAGS: tuple[str, ...] = (
    FLAG_MOVE_TO_SUSPENDED,
    FLAG_CLOSE_AWS_ACCOUNT,
    FLAG_CHECK_ORG_ACCOUNT_STATUS,
    FLAG_OFFBOARD_FROM_OIL,
    FLAG_OFFBOARD_FROM_DEVELOPER_SERVICE,
    FLAG_OFFBOARD_FROM_STACKSET,
)

# ---------------------------------------------------------------------------
# Context layout
# ---------------------------------------------------------------------------

#: Key under which every task result is wrapped.
PAYLOAD_KEY = "Payload"
SF_STATUS_KEY = "sf_status"
ACCOUNT_ID_KEY = "account_id"
RETRY_COUNT_KEY = "check_status_retry_count"

ROOT_PATH = "$"
PAYLOAD_PATH = f"$.{PAYLOAD_KEY}"
RETRY_COUNT_PATH = f"$.{PAYLOAD_KEY}.{RETRY_COUNT_KEY}"


def status_flag_path(flag: str) -> str:
    """Return the context path of a status flag (``$.Payload.sf_status.<flag>``)."""
    return f"$.{PAYLOAD_KEY}.{SF_STATUS_KEY}.{flag}"


# ---------------------------------------------------------------------------
# Durable Functions names
# ---------------------------------------------------------------------------

ORCHESTRATOR_FUNCTION = "account_closure_orchestrator"
BRANCH_SUBORCHESTRATOR = "parallel_branch_suborchestrator"
INVOKE_TASK_ACTIVITY = "invoke_task"
