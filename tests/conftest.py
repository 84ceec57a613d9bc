"""Shared pytest fixtures for the account-closure test suite."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

import pytest

from account_closure.core import constants as c
from account_closure.engine.handlers import HandlerRegistry

# ---------------------------------------------------------------------------
# Virtual time
# ---------------------------------------------------------------------------


class VirtualClock:
    """Monotonic clock advanced only by ``wait`` (or ``advance``).

    Passed to ``Deadline``/``Orchestrator`` as both ``clock`` and
    ``wait`` so that Wait steps and retry backoff complete instantly
    while the ceiling is still enforced.
    """

    def __init__(self, start: float = 1000.0) -> None:
        self._now = start
        self._lock = threading.Lock()
        self.waits: list[float] = []

    def now(self) -> float:
        with self._lock:
            return self._now

    def wait(self, seconds: float) -> None:
        with self._lock:
            self.waits.append(seconds)
            self._now += seconds

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds


@pytest.fixture()
def clock() -> VirtualClock:
    """Return a fresh virtual clock."""
    return VirtualClock()


# ---------------------------------------------------------------------------
# Scripted task handlers
# ---------------------------------------------------------------------------

Response = dict[str, Any] | BaseException | Callable[[Any], dict[str, Any]]


class ScriptedHandlers:
    """Task handlers that replay scripted responses and record every call.

    Each task name maps to a list of responses consumed one per call;
    the last response repeats once the list is exhausted.  A response
    is a dict (returned), an exception (raised), or a callable taking
    the payload.
    """

    def __init__(self, script: dict[str, list[Response]] | None = None) -> None:
        self._script: dict[str, list[Response]] = {k: list(v) for k, v in (script or {}).items()}
        self._lock = threading.Lock()
        self.calls: list[tuple[str, Any]] = []

    def set(self, task_name: str, *responses: Response) -> None:
        self._script[task_name] = list(responses)

    def __call__(self, task_name: str, payload: Any) -> dict[str, Any]:
        with self._lock:
            self.calls.append((task_name, payload))
            responses = self._script.get(task_name)
            if not responses:
                msg = f"No scripted response for {task_name}"
                raise AssertionError(msg)
            response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(payload)
        return dict(response)

    def count(self, task_name: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == task_name)

    def payloads(self, task_name: str) -> list[Any]:
        with self._lock:
            return [payload for name, payload in self.calls if name == task_name]

    def registry(self) -> HandlerRegistry:
        return HandlerRegistry({name: self for name in c.ALL_TASKS})


def flag_setter(flag: str, value: bool = True) -> Callable[[Any], dict[str, Any]]:
    """Return a handler response that echoes the payload with one status flag set."""

    def respond(payload: Any) -> dict[str, Any]:
        result = dict(payload) if isinstance(payload, dict) else {}
        status = dict(result.get(c.SF_STATUS_KEY, {}))
        status[flag] = value
        result[c.SF_STATUS_KEY] = status
        return result

    return respond


def happy_path_script() -> dict[str, list[Response]]:
    """Every task succeeds and sets its own status flag to ``True``."""
    return {
        c.FUNC_MOVE_TO_SUSPENDED: [
            lambda payload: {
                c.ACCOUNT_ID_KEY: payload[c.ACCOUNT_ID_KEY],
                c.SF_STATUS_KEY: {c.FLAG_MOVE_TO_SUSPENDED: True},
            }
        ],
        c.FUNC_CLOSE_AWS_ACCOUNT: [flag_setter(c.FLAG_CLOSE_AWS_ACCOUNT)],
        c.FUNC_CHECK_ORG_ACCOUNT_STATUS: [flag_setter(c.FLAG_CHECK_ORG_ACCOUNT_STATUS)],
        c.FUNC_OFFBOARD_FROM_OIL: [flag_setter(c.FLAG_OFFBOARD_FROM_OIL)],
        c.FUNC_OFFBOARD_FROM_DEVELOPER_SERVICE: [
            flag_setter(c.FLAG_OFFBOARD_FROM_DEVELOPER_SERVICE)
        ],
        c.FUNC_OFFBOARD_FROM_STACKSET: [flag_setter(c.FLAG_OFFBOARD_FROM_STACKSET)],
        c.FUNC_STATUS_HANDLER: [lambda payload: dict(payload)],
    }


@pytest.fixture()
def scripted() -> Callable[..., ScriptedHandlers]:
    """Factory for ``ScriptedHandlers``; defaults to the happy-path script."""

    def factory(script: dict[str, list[Response]] | None = None) -> ScriptedHandlers:
        return ScriptedHandlers(happy_path_script() if script is None else script)

    return factory


@pytest.fixture()
def flag() -> Callable[[str, bool], Callable[[Any], dict[str, Any]]]:
    """Expose ``flag_setter`` to tests."""
    return flag_setter
