"""serialization.py — JSON payload helpers, timestamps, structured observability."""
from __future__ import annotations

import datetime as dt
import json
from typing import Any, Dict, Optional

from digest_failover.config import logger

__all__ = [
    "_dumps",
    "_emit_structured_observability",
    "_loads",
    "_now_z",
]


def _now_z() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _dumps(payload: Any) -> str:
    """Serialize a payload for the wire; objects exposing ``to_dict`` are unwrapped."""
    if hasattr(payload, "to_dict"):
        payload = payload.to_dict()
    return json.dumps(payload, default=str)


def _loads(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ValueError(f"Invalid JSON payload: {exc}") from exc


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    target: Optional[str] = None,
    attempt: Optional[int] = None,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "target": str(target or ""),
        "attempt": int(attempt or 0),
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
