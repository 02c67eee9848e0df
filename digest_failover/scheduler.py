"""scheduler.py — Poll-until-condition primitive and one-shot delayed actions.

``poll_until`` blocks its caller; ``delay`` runs on a daemon timer thread so
the action outlives whichever worker scheduled it.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from digest_failover.config import logger
from digest_failover.errors import PollTimeoutError
from digest_failover.serialization import _emit_structured_observability

__all__ = ["PollScheduler"]

T = TypeVar("T")


class PollScheduler:
    def __init__(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self._sleep = sleep
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._pending: Dict[int, tuple] = {}
        self._next_id = 0
        self._closed = False

    def poll_until(
        self,
        probe: Callable[[], Optional[T]],
        interval: float,
        timeout: float,
        label: str = "",
    ) -> T:
        """Call ``probe`` every ``interval`` seconds until it returns a value.

        ``None`` from the probe means "not yet". An exception raised by the
        probe ends the poll at once and propagates to the caller. When
        ``timeout`` elapses first, ``PollTimeoutError`` is raised.
        """
        if interval <= 0:
            raise ValueError(f"poll interval must be > 0, got {interval}")
        started = self._clock()
        deadline = started + max(0.0, timeout)
        attempt = 0
        while True:
            attempt += 1
            try:
                result = probe()
            except Exception as exc:
                _emit_structured_observability(
                    component="scheduler",
                    event="poll_aborted",
                    target=label,
                    attempt=attempt,
                    latency_ms=int((self._clock() - started) * 1000),
                    error_code=type(exc).__name__,
                )
                raise
            if result is not None:
                _emit_structured_observability(
                    component="scheduler",
                    event="poll_satisfied",
                    target=label,
                    attempt=attempt,
                    latency_ms=int((self._clock() - started) * 1000),
                )
                return result
            _emit_structured_observability(
                component="scheduler",
                event="poll_attempt",
                target=label,
                attempt=attempt,
                latency_ms=int((self._clock() - started) * 1000),
            )
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(interval, remaining))
            if self._clock() >= deadline:
                break

        _emit_structured_observability(
            component="scheduler",
            event="poll_timeout",
            target=label,
            attempt=attempt,
            latency_ms=int((self._clock() - started) * 1000),
            error_code="timeout",
        )
        raise PollTimeoutError(label, timeout)

    def delay(self, action: Callable[[], Any], after: float, label: str = "") -> None:
        """Run ``action`` once, ``after`` seconds from now, without blocking.

        After ``shutdown`` no timer outlives the call: the action runs at once
        on the calling thread.
        """
        with self._lock:
            closed = self._closed
            self._next_id += 1
            task_id = self._next_id
        if closed:
            logger.warning("scheduler is shut down, running '%s' now", label or "delayed action")
            self._run_action(action, label)
            return

        def _run() -> None:
            with self._lock:
                if self._pending.pop(task_id, None) is None:
                    return
            self._run_action(action, label)

        timer = self._timer_factory(max(0.0, after), _run)
        timer.daemon = True
        with self._lock:
            self._pending[task_id] = (timer, action, label)
        timer.start()
        logger.info("[INFO] scheduled '%s' to run in %ss", label or "delayed action", after)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def shutdown(self, run_pending: bool = True) -> None:
        """Cancel outstanding timers, optionally running their actions now."""
        with self._lock:
            self._closed = True
            pending = list(self._pending.values())
            self._pending.clear()
        for timer, action, label in pending:
            timer.cancel()
            if run_pending:
                self._run_action(action, label)

    @staticmethod
    def _run_action(action: Callable[[], Any], label: str) -> None:
        try:
            action()
        except Exception:
            logger.exception("delayed action '%s' failed", label or "delayed action")
