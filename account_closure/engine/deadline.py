"""Instance-level deadline with cancellable, non-busy waits.

One ``Deadline`` is created per workflow instance from the graph's
ceiling.  Every suspension point — Wait steps, retry backoff, and the
parallel join — goes through it, so the ceiling is enforced across the
whole instance rather than per node.

Waits block on a ``threading.Event``; ``cancel()`` wakes every waiter
immediately.  Parallel stages derive a child scope so that a failing
branch can signal its siblings without cancelling the parent.

The clock and wait function are injectable so tests can drive the
deadline with virtual time.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from account_closure.core.exceptions import ExecutionCancelledError, WorkflowTimeoutError

Clock = Callable[[], float]
WaitFn = Callable[[float], object]


class Deadline:
    """Single ceiling shared by all suspension points of an instance.

    Args:
        timeout_seconds: Seconds from now until the ceiling; ``None``
            means no ceiling.
        clock: Monotonic clock returning seconds (default ``time.monotonic``).
        wait: Blocking wait taking a duration in seconds.  Defaults to
            waiting on this deadline's cancellation event.
    """

    def __init__(
        self,
        timeout_seconds: float | None,
        *,
        clock: Clock | None = None,
        wait: WaitFn | None = None,
    ) -> None:
        self._clock = clock or time.monotonic
        self._wait_fn = wait
        self._cancelled = threading.Event()
        self._children: list[Deadline] = []
        self._lock = threading.Lock()
        self.timeout_seconds = timeout_seconds
        self.started_at = self._clock()
        self.expires_at = None if timeout_seconds is None else self.started_at + timeout_seconds

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def elapsed(self) -> float:
        """Seconds since the deadline was created."""
        return self._clock() - self.started_at

    def remaining(self) -> float | None:
        """Seconds left before the ceiling (never negative), or ``None``."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    def check(self, node: str = "") -> None:
        """Raise if the instance was cancelled or the ceiling has passed.

        Raises:
            WorkflowTimeoutError: If the ceiling has passed.
            ExecutionCancelledError: If ``cancel()`` was called.
        """
        if self.expired:
            msg = f"Workflow timed out after {self.timeout_seconds:g}s"
            raise WorkflowTimeoutError(msg, stage=node)
        if self.cancelled:
            msg = "Execution cancelled"
            raise ExecutionCancelledError(msg, stage=node)

    def sleep(self, seconds: float, *, node: str = "") -> None:
        """Suspend for *seconds*, bounded by the ceiling.

        If the sleep would cross the ceiling, waits only until the
        ceiling and then raises.

        Raises:
            WorkflowTimeoutError: If the ceiling is reached while waiting.
            ExecutionCancelledError: If cancelled while waiting.
        """
        self.check(node)
        remaining = self.remaining()
        if remaining is not None and seconds >= remaining:
            self._wait(remaining)
            if not self.cancelled:
                msg = (
                    f"Workflow timed out after {self.timeout_seconds:g}s "
                    f"while waiting {seconds:g}s"
                )
                raise WorkflowTimeoutError(msg, stage=node)
            self.check(node)
        self._wait(seconds)
        self.check(node)

    def cancel(self) -> None:
        """Wake all waiters and fail subsequent checks (children included)."""
        self._cancelled.set()
        with self._lock:
            children = list(self._children)
        for child in children:
            child.cancel()

    def child(self) -> Deadline:
        """Return a scope sharing this ceiling with its own cancellation.

        Cancelling the parent cancels the child; not the other way round.
        """
        scope = Deadline(None, clock=self._clock, wait=self._wait_fn)
        scope.timeout_seconds = self.timeout_seconds
        scope.started_at = self.started_at
        scope.expires_at = self.expires_at
        with self._lock:
            self._children.append(scope)
        if self.cancelled:
            scope.cancel()
        return scope

    def _wait(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._wait_fn is None:
            self._cancelled.wait(seconds)
        else:
            self._wait_fn(seconds)
