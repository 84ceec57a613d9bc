"""The account-closure workflow graph.

Flow::

    move_to_suspended_task
      └─ Move to suspended OU?  (move_to_suspended == true)
           ├─ close_account_task  [retry TASK_TIMEOUT]
           │    └─ Account Closed or not ?  (close_aws_account)
           │         ├─ true  → Wait_Y_Seconds → check_org_account_status_task
           │         │           └─ Account Suspended updated in Org ?
           │         │                ├─ true  → dependent_service_offboarding ─┐
           │         │                └─ false → Account not suspended          │
           │         │                            ├─ retry_count < 5 → Wait_X_Seconds
           │         │                            │                    └─ (loop to status check)
           │         │                            └─ otherwise ─────────────────┤
           │         └─ false ──────────────────────────────────────────────────┤
           └─ otherwise ────────────────────────────────────────────────────────┤
                                                                  status_handler_task
                                                                        └─ endflow

The parallel stage fans out to the OIL, developer-service, and
StackSet offboarding tasks and merges their status flags by branch
name into ``{"Payload": {"sf_status": {...}, "account_id": ...}}``.
"""

from __future__ import annotations

from account_closure.core import constants as c
from account_closure.core.config import WorkflowConfig
from account_closure.core.exceptions import TaskTimeoutError
from account_closure.workflow.graph import Branch, WorkflowGraph
from account_closure.workflow.merge import MergeSlot, MergeSpec
from account_closure.workflow.nodes import (
    BooleanEquals,
    ChoiceNode,
    ChoiceRule,
    NumericLessThan,
    ParallelNode,
    PassNode,
    RetryPolicy,
    TaskNode,
    WaitNode,
)

#: Branch names of the offboarding stage, in declaration order.
BRANCH_OIL = "offboard_from_oil"
BRANCH_DEVELOPER_SERVICE = "offboard_from_developer_service"
BRANCH_STACKSET = "offboard_from_stackset"

_ACCOUNT_ID_PATH = f"$.{c.PAYLOAD_KEY}.{c.ACCOUNT_ID_KEY}"


def offboarding_merge_spec() -> MergeSpec:
    """Slots rebuilding ``sf_status`` and ``account_id`` after offboarding.

    Flags recorded before the stage are carried through the OIL branch
    (falling back to the pre-stage context); each offboarding flag is
    read from the branch that owns it.
    """
    flag_sources = (
        (c.FLAG_MOVE_TO_SUSPENDED, BRANCH_OIL),
        (c.FLAG_CLOSE_AWS_ACCOUNT, BRANCH_OIL),
        (c.FLAG_CHECK_ORG_ACCOUNT_STATUS, BRANCH_OIL),
        (c.FLAG_OFFBOARD_FROM_OIL, BRANCH_OIL),
        (c.FLAG_OFFBOARD_FROM_DEVELOPER_SERVICE, BRANCH_DEVELOPER_SERVICE),
        (c.FLAG_OFFBOARD_FROM_STACKSET, BRANCH_STACKSET),
    )
    slots = [
        MergeSlot(
            target=c.status_flag_path(flag),
            branch=branch,
            source=c.status_flag_path(flag),
        )
        for flag, branch in flag_sources
    ]
    slots.append(MergeSlot(target=_ACCOUNT_ID_PATH, branch=BRANCH_OIL, source=_ACCOUNT_ID_PATH))
    return MergeSpec(slots=tuple(slots))


def _single_task_branch(branch: str, node: str, task: str) -> Branch:
    return Branch(
        name=branch,
        graph=WorkflowGraph.from_nodes(
            branch,
            node,
            [TaskNode(name=node, task=task, input_path=c.PAYLOAD_PATH)],
        ),
    )


def build_account_closure_graph(config: WorkflowConfig | None = None) -> WorkflowGraph:
    """Construct and validate the account-closure workflow graph.

    Args:
        config: Timing and retry settings.  Defaults to ``WorkflowConfig()``.

    Returns:
        The validated ``WorkflowGraph``.
    """
    config = config or WorkflowConfig()

    close_retry = RetryPolicy(
        error_codes=(TaskTimeoutError.default_code,),
        max_attempts=config.close_retry_max_attempts,
        interval_seconds=config.close_retry_interval_seconds,
        backoff_rate=config.close_retry_backoff_rate,
    )

    offboarding = ParallelNode(
        name=c.DEPENDENT_SERVICE_OFFBOARDING,
        branches=(
            _single_task_branch(BRANCH_OIL, c.OFFBOARD_FROM_OIL, c.FUNC_OFFBOARD_FROM_OIL),
            _single_task_branch(
                BRANCH_DEVELOPER_SERVICE,
                c.OFFBOARD_FROM_DEVELOPER_SERVICE,
                c.FUNC_OFFBOARD_FROM_DEVELOPER_SERVICE,
            ),
            _single_task_branch(
                BRANCH_STACKSET, c.OFFBOARD_FROM_STACKSET, c.FUNC_OFFBOARD_FROM_STACKSET
            ),
        ),
        merge=offboarding_merge_spec(),
        next=c.STATUS_HANDLER,
    )

    nodes = [
        TaskNode(
            name=c.MOVE_TO_SUSPEND,
            task=c.FUNC_MOVE_TO_SUSPENDED,
            input_path=c.ROOT_PATH,
            next=c.CHOICE_MOVED_TO_SUSPENDED,
        ),
        ChoiceNode(
            name=c.CHOICE_MOVED_TO_SUSPENDED,
            choices=(
                ChoiceRule(
                    BooleanEquals(c.status_flag_path(c.FLAG_MOVE_TO_SUSPENDED), True),
                    c.AWS_ACCOUNT_CLOSE,
                ),
            ),
            default=c.STATUS_HANDLER,
        ),
        TaskNode(
            name=c.AWS_ACCOUNT_CLOSE,
            task=c.FUNC_CLOSE_AWS_ACCOUNT,
            input_path=c.PAYLOAD_PATH,
            retry=close_retry,
            next=c.CHOICE_ACCOUNT_CLOSED,
        ),
        ChoiceNode(
            name=c.CHOICE_ACCOUNT_CLOSED,
            choices=(
                ChoiceRule(
                    BooleanEquals(c.status_flag_path(c.FLAG_CLOSE_AWS_ACCOUNT), True),
                    c.WAIT_BEFORE_STATUS,
                ),
                ChoiceRule(
                    BooleanEquals(c.status_flag_path(c.FLAG_CLOSE_AWS_ACCOUNT), False),
                    c.STATUS_HANDLER,
                ),
            ),
            default=c.STATUS_HANDLER,
        ),
        WaitNode(
            name=c.WAIT_BEFORE_STATUS,
            seconds=config.status_wait_seconds,
            next=c.ORG_ACCOUNT_STATUS,
        ),
        TaskNode(
            name=c.ORG_ACCOUNT_STATUS,
            task=c.FUNC_CHECK_ORG_ACCOUNT_STATUS,
            input_path=c.PAYLOAD_PATH,
            increment_path=c.RETRY_COUNT_PATH,
            next=c.CHOICE_ORG_UPDATED,
        ),
        ChoiceNode(
            name=c.CHOICE_ORG_UPDATED,
            choices=(
                ChoiceRule(
                    BooleanEquals(c.status_flag_path(c.FLAG_CHECK_ORG_ACCOUNT_STATUS), True),
                    c.DEPENDENT_SERVICE_OFFBOARDING,
                ),
                ChoiceRule(
                    BooleanEquals(c.status_flag_path(c.FLAG_CHECK_ORG_ACCOUNT_STATUS), False),
                    c.CHOICE_RETRY_STATUS,
                ),
            ),
            default=c.STATUS_HANDLER,
        ),
        ChoiceNode(
            name=c.CHOICE_RETRY_STATUS,
            choices=(
                ChoiceRule(
                    NumericLessThan(c.RETRY_COUNT_PATH, config.max_status_checks),
                    c.WAIT_BETWEEN_STATUS,
                ),
            ),
            default=c.STATUS_HANDLER,
        ),
        WaitNode(
            name=c.WAIT_BETWEEN_STATUS,
            seconds=config.status_wait_seconds,
            next=c.ORG_ACCOUNT_STATUS,
        ),
        offboarding,
        TaskNode(
            name=c.STATUS_HANDLER,
            task=c.FUNC_STATUS_HANDLER,
            input_path=c.PAYLOAD_PATH,
            next=c.END_FLOW,
        ),
        PassNode(name=c.END_FLOW),
    ]

    return WorkflowGraph.from_nodes(
        config.workflow_name,
        c.MOVE_TO_SUSPEND,
        nodes,
        timeout_seconds=config.timeout_seconds,
    )
