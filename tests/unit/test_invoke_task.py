"""Tests for the invoke_task activity envelope and handler wiring."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from account_closure.activities.invoke_task import (
    build_handler_registry,
    invoke_task,
    remaining_budget,
)
from account_closure.core.config import ConfigValidationError, WorkflowConfig
from account_closure.core.exceptions import ContractError, TaskTimeoutError
from account_closure.engine.handlers import HandlerRegistry, HttpTaskHandler, call_budget


def _input(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "task_name": "FUNC_CLOSE_AWS_ACCOUNT",
        "node": "close_account_task",
        "payload": {"account_id": "123"},
        "attempt": 1,
        "instance_id": "inst-1",
    }
    payload.update(overrides)
    return payload


class TestInvokeTaskEnvelope:
    def test_success_envelope(self) -> None:
        registry = HandlerRegistry(
            {"FUNC_CLOSE_AWS_ACCOUNT": lambda name, payload: {**payload, "closed": True}}
        )
        assert invoke_task(_input(), handlers=registry) == {
            "ok": True,
            "result": {"account_id": "123", "closed": True},
        }

    def test_handler_error_returned_not_raised(self) -> None:
        def slow(name: str, payload: object) -> dict[str, object]:
            raise TaskTimeoutError("AWS call timed out")

        envelope = invoke_task(_input(), handlers=HandlerRegistry({"FUNC_CLOSE_AWS_ACCOUNT": slow}))

        assert envelope["ok"] is False
        error = envelope["error"]
        assert error["code"] == "TASK_TIMEOUT"
        assert error["category"] == "transient"
        assert error["stage"] == "close_account_task"
        assert error["correlation_id"] == "inst-1"

    def test_foreign_exception_classified(self) -> None:
        def broken(name: str, payload: object) -> dict[str, object]:
            raise KeyError("account_id")

        envelope = invoke_task(
            _input(), handlers=HandlerRegistry({"FUNC_CLOSE_AWS_ACCOUNT": broken})
        )
        assert envelope["ok"] is False
        assert envelope["error"]["retryable"] is False

    def test_unknown_task_is_error_envelope(self) -> None:
        envelope = invoke_task(_input(), handlers=HandlerRegistry())
        assert envelope["ok"] is False
        assert envelope["error"]["code"] == "UNKNOWN_TASK"

    def test_non_dict_result(self) -> None:
        registry = HandlerRegistry({"FUNC_CLOSE_AWS_ACCOUNT": lambda name, payload: "closed"})
        envelope = invoke_task(_input(), handlers=registry)
        assert envelope["ok"] is False
        assert envelope["error"]["code"] == "INVALID_TASK_RESPONSE"

    def test_missing_keys_raise(self) -> None:
        with pytest.raises(ContractError, match="task_name"):
            invoke_task({"node": "n", "payload": {}}, handlers=HandlerRegistry())

    def test_handler_budget_follows_deadline(self) -> None:
        seen: list[float | None] = []

        def budgeted(name: str, payload: object) -> dict[str, object]:
            seen.append(call_budget())
            return {}

        deadline = (datetime.now(tz=UTC) + timedelta(seconds=120)).isoformat()
        registry = HandlerRegistry({"FUNC_CLOSE_AWS_ACCOUNT": budgeted})
        invoke_task(_input(deadline=deadline), handlers=registry)
        invoke_task(_input(), handlers=registry)

        assert seen[0] is not None
        assert 100 < seen[0] <= 120
        assert seen[1] is None


class TestRemainingBudget:
    NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def test_seconds_until_deadline(self) -> None:
        assert remaining_budget("2026-01-01T12:01:30+00:00", now=self.NOW) == 90

    def test_naive_deadline_read_as_utc(self) -> None:
        assert remaining_budget("2026-01-01T12:00:10", now=self.NOW) == 10

    def test_passed_deadline_is_zero(self) -> None:
        assert remaining_budget("2026-01-01T11:00:00+00:00", now=self.NOW) == 0

    @pytest.mark.parametrize(
        "deadline", [None, "", datetime.max.replace(tzinfo=UTC).isoformat()]
    )
    def test_unbounded(self, deadline: str | None) -> None:
        assert remaining_budget(deadline, now=self.NOW) is None


class TestBuildHandlerRegistry:
    def test_requires_endpoint(self) -> None:
        with pytest.raises(ConfigValidationError, match="TASK_ENDPOINT_BASE_URL"):
            build_handler_registry(WorkflowConfig())

    def test_routes_every_task_to_http(self) -> None:
        registry = build_handler_registry(
            WorkflowConfig(task_endpoint_base_url="https://tasks.example.com/api/")
        )
        handler = registry.get("FUNC_STATUS_HANDLER")
        assert isinstance(handler, HttpTaskHandler)
        assert handler.base_url == "https://tasks.example.com/api"
        assert registry.get("FUNC_OFFBOARD_FROM_OIL") is handler

    def test_http_round_trip_through_envelope(self) -> None:
        seen: list[str] = []

        def respond(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json={"account_id": "123", "closed": True})

        client = httpx.Client(transport=httpx.MockTransport(respond))
        handler = HttpTaskHandler("https://tasks.example.com/api", client=client)
        envelope = invoke_task(_input(), handlers=HandlerRegistry.with_default(handler))

        assert envelope == {"ok": True, "result": {"account_id": "123", "closed": True}}
        assert seen == ["/api/FUNC_CLOSE_AWS_ACCOUNT"]
