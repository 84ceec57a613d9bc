"""Tests for the in-process orchestrator over the account-closure graph.

Task handlers are scripted stubs and time is virtual (``clock``
fixture), so Wait steps and retry backoff complete instantly while
still counting toward the 5-minute ceiling.

Covers:
- Routing when the account is not moved to the suspended OU
- Status-check loop bounded at five checks
- Parallel offboarding entered once with all three branches
- Fail-fast branch failure with no merged context reaching the handler
- Global timeout while suspended in a Wait step or inside a slow handler
- End-to-end terminal context
"""

from __future__ import annotations

import logging
import threading
import time

import pytest

from account_closure.core import constants as c
from account_closure.core.config import WorkflowConfig
from account_closure.core.exceptions import TaskFailedError, TaskTimeoutError
from account_closure.engine.orchestrator import Orchestrator
from account_closure.models.execution import ExecutionStatus
from account_closure.workflow.account_closure import (
    BRANCH_DEVELOPER_SERVICE,
    BRANCH_OIL,
    BRANCH_STACKSET,
    build_account_closure_graph,
)

INITIAL = {"account_id": "123", "payload": {}}

ALL_TRUE = {
    c.FLAG_MOVE_TO_SUSPENDED: True,
    c.FLAG_CLOSE_AWS_ACCOUNT: True,
    c.FLAG_CHECK_ORG_ACCOUNT_STATUS: True,
    c.FLAG_OFFBOARD_FROM_OIL: True,
    c.FLAG_OFFBOARD_FROM_DEVELOPER_SERVICE: True,
    c.FLAG_OFFBOARD_FROM_STACKSET: True,
}


def _orchestrator(handlers, clock, config: WorkflowConfig | None = None, **kwargs) -> Orchestrator:
    return Orchestrator(
        build_account_closure_graph(config),
        handlers.registry(),
        clock=clock.now,
        wait=clock.wait,
        **kwargs,
    )


class TestEndToEnd:
    def test_happy_path_terminal_context(self, scripted, clock) -> None:
        handlers = scripted()
        record = _orchestrator(handlers, clock).run(INITIAL, instance_id="inst-1")

        assert record.status is ExecutionStatus.SUCCEEDED
        assert record.succeeded
        assert record.failure is None
        assert record.context == {"Payload": {"sf_status": ALL_TRUE, "account_id": "123"}}
        assert record.current_node == c.END_FLOW
        assert record.finished_at is not None

    def test_happy_path_visits_in_order(self, scripted, clock) -> None:
        record = _orchestrator(scripted(), clock).run(INITIAL)
        main_path = [v.node for v in record.visits if not v.branch]
        assert main_path == [
            c.MOVE_TO_SUSPEND,
            c.CHOICE_MOVED_TO_SUSPENDED,
            c.AWS_ACCOUNT_CLOSE,
            c.CHOICE_ACCOUNT_CLOSED,
            c.WAIT_BEFORE_STATUS,
            c.ORG_ACCOUNT_STATUS,
            c.CHOICE_ORG_UPDATED,
            c.DEPENDENT_SERVICE_OFFBOARDING,
            c.STATUS_HANDLER,
            c.END_FLOW,
        ]

    def test_first_task_receives_whole_input(self, scripted, clock) -> None:
        handlers = scripted()
        _orchestrator(handlers, clock).run(INITIAL)
        assert handlers.payloads(c.FUNC_MOVE_TO_SUSPENDED) == [INITIAL]

    def test_initial_context_not_mutated(self, scripted, clock) -> None:
        initial = {"account_id": "123", "payload": {}}
        _orchestrator(scripted(), clock).run(initial)
        assert initial == {"account_id": "123", "payload": {}}

    def test_generated_instance_id(self, scripted, clock) -> None:
        record = _orchestrator(scripted(), clock).run(INITIAL)
        assert record.instance_id
        assert record.workflow == "aws-account-closure-dev"


class TestRouting:
    def test_not_suspended_skips_close(self, scripted, clock, flag) -> None:
        script = {
            c.FUNC_MOVE_TO_SUSPENDED: [flag(c.FLAG_MOVE_TO_SUSPENDED, False)],
            c.FUNC_STATUS_HANDLER: [lambda payload: dict(payload)],
        }
        handlers = scripted(script)
        record = _orchestrator(handlers, clock).run(INITIAL)

        assert record.status is ExecutionStatus.SUCCEEDED
        assert handlers.count(c.FUNC_CLOSE_AWS_ACCOUNT) == 0
        assert handlers.count(c.FUNC_STATUS_HANDLER) == 1

    def test_missing_suspend_flag_routes_to_status_handler(self, scripted, clock) -> None:
        script = {
            c.FUNC_MOVE_TO_SUSPENDED: [{"account_id": "123"}],
            c.FUNC_STATUS_HANDLER: [lambda payload: dict(payload)],
        }
        handlers = scripted(script)
        record = _orchestrator(handlers, clock).run(INITIAL)
        assert record.status is ExecutionStatus.SUCCEEDED
        assert handlers.count(c.FUNC_CLOSE_AWS_ACCOUNT) == 0

    def test_close_failed_skips_status_checks(self, scripted, clock, flag) -> None:
        script = {
            c.FUNC_MOVE_TO_SUSPENDED: [flag(c.FLAG_MOVE_TO_SUSPENDED)],
            c.FUNC_CLOSE_AWS_ACCOUNT: [flag(c.FLAG_CLOSE_AWS_ACCOUNT, False)],
            c.FUNC_STATUS_HANDLER: [lambda payload: dict(payload)],
        }
        handlers = scripted(script)
        record = _orchestrator(handlers, clock).run(INITIAL)

        assert handlers.count(c.FUNC_CHECK_ORG_ACCOUNT_STATUS) == 0
        assert record.visit_count(c.WAIT_BEFORE_STATUS) == 0
        assert handlers.count(c.FUNC_STATUS_HANDLER) == 1

    def test_status_check_loop_stops_after_five(self, scripted, clock, flag) -> None:
        handlers = scripted()
        handlers.set(
            c.FUNC_CHECK_ORG_ACCOUNT_STATUS, flag(c.FLAG_CHECK_ORG_ACCOUNT_STATUS, False)
        )
        record = _orchestrator(handlers, clock).run(INITIAL)

        assert record.status is ExecutionStatus.SUCCEEDED
        assert handlers.count(c.FUNC_CHECK_ORG_ACCOUNT_STATUS) == 5
        assert record.visit_count(c.ORG_ACCOUNT_STATUS) == 5
        assert record.visit_count(c.WAIT_BETWEEN_STATUS) == 4
        assert record.visit_count(c.DEPENDENT_SERVICE_OFFBOARDING) == 0
        assert handlers.count(c.FUNC_STATUS_HANDLER) == 1
        payloads = handlers.payloads(c.FUNC_CHECK_ORG_ACCOUNT_STATUS)
        counts = [p.get(c.RETRY_COUNT_KEY, 0) for p in payloads]
        assert counts == [0, 1, 2, 3, 4]

    def test_status_check_succeeds_on_third_attempt(self, scripted, clock, flag) -> None:
        handlers = scripted()
        handlers.set(
            c.FUNC_CHECK_ORG_ACCOUNT_STATUS,
            flag(c.FLAG_CHECK_ORG_ACCOUNT_STATUS, False),
            flag(c.FLAG_CHECK_ORG_ACCOUNT_STATUS, False),
            flag(c.FLAG_CHECK_ORG_ACCOUNT_STATUS, True),
        )
        record = _orchestrator(handlers, clock).run(INITIAL)

        assert handlers.count(c.FUNC_CHECK_ORG_ACCOUNT_STATUS) == 3
        assert record.visit_count(c.DEPENDENT_SERVICE_OFFBOARDING) == 1
        assert record.context["Payload"]["sf_status"] == ALL_TRUE


class TestParallelOffboarding:
    def test_entered_once_with_all_branches(self, scripted, clock) -> None:
        handlers = scripted()
        record = _orchestrator(handlers, clock).run(INITIAL)

        assert record.visit_count(c.DEPENDENT_SERVICE_OFFBOARDING) == 1
        assert handlers.count(c.FUNC_OFFBOARD_FROM_OIL) == 1
        assert handlers.count(c.FUNC_OFFBOARD_FROM_DEVELOPER_SERVICE) == 1
        assert handlers.count(c.FUNC_OFFBOARD_FROM_STACKSET) == 1
        branches = {v.branch for v in record.visits if v.branch}
        assert branches == {BRANCH_OIL, BRANCH_DEVELOPER_SERVICE, BRANCH_STACKSET}

    def test_branch_failure_fails_fast(self, scripted, clock) -> None:
        handlers = scripted()
        handlers.set(c.FUNC_OFFBOARD_FROM_STACKSET, TaskFailedError("stackset removal failed"))
        record = _orchestrator(handlers, clock).run(INITIAL)

        assert record.status is ExecutionStatus.FAILED
        assert handlers.count(c.FUNC_STATUS_HANDLER) == 0
        assert record.failure is not None
        assert record.failure.code == "BRANCH_FAILED"
        assert record.failure.node == c.DEPENDENT_SERVICE_OFFBOARDING
        assert record.failure.error["branch"] == BRANCH_STACKSET
        assert record.failure.error["cause"]["code"] == "TASK_FAILED"
        # Last-known context is the pre-stage context, not a partial merge.
        assert c.FLAG_OFFBOARD_FROM_OIL not in record.failure.context["Payload"]["sf_status"]


class TestRetryAndTimeout:
    def test_close_timeout_retried_once(self, scripted, clock, flag) -> None:
        handlers = scripted()
        handlers.set(
            c.FUNC_CLOSE_AWS_ACCOUNT,
            TaskTimeoutError("close timed out"),
            flag(c.FLAG_CLOSE_AWS_ACCOUNT),
        )
        record = _orchestrator(handlers, clock).run(INITIAL)

        assert record.status is ExecutionStatus.SUCCEEDED
        assert record.attempts[c.AWS_ACCOUNT_CLOSE] == 2
        assert clock.waits[0] == 10

    def test_close_timeout_twice_fails(self, scripted, clock) -> None:
        handlers = scripted()
        handlers.set(c.FUNC_CLOSE_AWS_ACCOUNT, TaskTimeoutError("close timed out"))
        record = _orchestrator(handlers, clock).run(INITIAL)

        assert record.status is ExecutionStatus.FAILED
        assert record.failure is not None
        assert record.failure.code == "RETRY_EXHAUSTED"
        assert record.failure.node == c.AWS_ACCOUNT_CLOSE
        assert record.failure.kind == "permanent"
        assert handlers.count(c.FUNC_CLOSE_AWS_ACCOUNT) == 2
        assert handlers.count(c.FUNC_STATUS_HANDLER) == 0

    def test_wait_past_ceiling_times_out(self, scripted, clock, flag) -> None:
        config = WorkflowConfig(status_wait_seconds=100)
        handlers = scripted()
        handlers.set(
            c.FUNC_CHECK_ORG_ACCOUNT_STATUS, flag(c.FLAG_CHECK_ORG_ACCOUNT_STATUS, False)
        )
        record = _orchestrator(handlers, clock, config).run(INITIAL)

        assert record.status is ExecutionStatus.TIMED_OUT
        assert record.failure is not None
        assert record.failure.code == "WORKFLOW_TIMEOUT"
        assert record.failure.node == c.WAIT_BETWEEN_STATUS
        assert handlers.count(c.FUNC_CHECK_ORG_ACCOUNT_STATUS) == 2
        assert sum(clock.waits) == pytest.approx(300)

    def test_slow_handler_cut_off_at_ceiling(self, scripted) -> None:
        release = threading.Event()

        def hang(payload: object) -> dict[str, object]:
            release.wait(2)
            return {"sf_status": ALL_TRUE}

        handlers = scripted()
        handlers.set(c.FUNC_CLOSE_AWS_ACCOUNT, hang)
        orchestrator = Orchestrator(
            build_account_closure_graph(WorkflowConfig(timeout_seconds=0.3)),
            handlers.registry(),
        )
        started = time.monotonic()
        try:
            record = orchestrator.run(INITIAL)
        finally:
            release.set()

        assert time.monotonic() - started < 1.5
        assert record.status is ExecutionStatus.TIMED_OUT
        assert record.failure is not None
        assert record.failure.code == "WORKFLOW_TIMEOUT"
        assert record.failure.node == c.AWS_ACCOUNT_CLOSE
        assert handlers.count(c.FUNC_STATUS_HANDLER) == 0

    def test_terminal_task_failure_reports_node(self, scripted, clock) -> None:
        handlers = scripted()
        handlers.set(c.FUNC_STATUS_HANDLER, RuntimeError("handler crashed"))
        record = _orchestrator(handlers, clock).run(INITIAL)

        assert record.status is ExecutionStatus.FAILED
        assert record.failure is not None
        assert record.failure.code == "TASK_FAILED"
        assert record.failure.node == c.STATUS_HANDLER
        assert record.failure.context["Payload"]["sf_status"] == ALL_TRUE


class TestObservability:
    def test_listener_sees_every_visit(self, scripted, clock) -> None:
        seen: list[str] = []
        orchestrator = _orchestrator(
            scripted(), clock, listener=lambda record, visit: seen.append(visit.node)
        )
        record = orchestrator.run(INITIAL)
        assert seen == [v.node for v in record.visits]

    def test_summary_shape(self, scripted, clock) -> None:
        summary = _orchestrator(scripted(), clock).run(INITIAL, instance_id="inst-9").to_summary()
        assert summary["status"] == "succeeded"
        assert summary["instance_id"] == "inst-9"
        assert summary["failure"] is None
        assert summary["visits"][0] == c.MOVE_TO_SUSPEND

    def test_choice_logs_rules(self, scripted, clock, caplog) -> None:
        with caplog.at_level(logging.DEBUG, logger="account_closure.engine.orchestrator"):
            _orchestrator(scripted(), clock).run(INITIAL)
        choices = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Choice")]
        assert any(
            f"{c.FLAG_MOVE_TO_SUSPENDED} == true" in m and c.AWS_ACCOUNT_CLOSE in m for m in choices
        )

    def test_orchestrator_reusable_across_instances(self, scripted, clock) -> None:
        orchestrator = _orchestrator(scripted(), clock)
        first = orchestrator.run(INITIAL, instance_id="a")
        second = orchestrator.run(INITIAL, instance_id="b")
        assert first.context == second.context
        assert first.instance_id != second.instance_id
