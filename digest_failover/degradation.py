"""Process-wide "primary service is degraded" flag.

Set by the OOM-notification queue handler, consumed by the failover
orchestrator before it provisions a replacement instance.
"""
from __future__ import annotations

import threading

from digest_failover.config import logger


class DegradationSignal:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reported = False

    def set_reported(self) -> None:
        with self._lock:
            self._reported = True
        logger.info("[INFO] degradation signal reported")

    def is_reported(self) -> bool:
        with self._lock:
            return self._reported

    def consume(self) -> bool:
        """Return whether the signal was set, clearing it in the same step."""
        with self._lock:
            reported = self._reported
            self._reported = False
        return reported
