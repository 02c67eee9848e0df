"""models.py — Value types exchanged between the dispatcher components.

All types are frozen dataclasses built fully before use.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

__all__ = [
    "DigestRequest",
    "DigestResponse",
    "FallbackSetupParams",
    "SendingParams",
]


def _ignore_failure(message: str) -> None:
    return None


@dataclass(frozen=True)
class DigestRequest:
    """Digest job as received from the input queue."""
    algorithm: str
    object_key: str
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"algorithm": self.algorithm, "objectKey": self.object_key}
        if self.id is not None:
            payload["id"] = self.id
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DigestRequest":
        if not isinstance(data, dict):
            raise ValueError("digest request must be a JSON object")
        algorithm = str(data.get("algorithm") or "").strip()
        object_key = str(data.get("objectKey") or "").strip()
        if not algorithm or not object_key:
            raise ValueError("digest request requires 'algorithm' and 'objectKey'")
        request_id = data.get("id")
        return cls(algorithm=algorithm, object_key=object_key, id=str(request_id) if request_id else None)


@dataclass(frozen=True)
class DigestResponse:
    """Digest computed by the remote service."""
    algorithm: str
    object_key: str
    digest: str
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "algorithm": self.algorithm,
            "objectKey": self.object_key,
            "digest": self.digest,
        }
        if self.id is not None:
            payload["id"] = self.id
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DigestResponse":
        if not isinstance(data, dict):
            raise ValueError("digest response must be a JSON object")
        if "digest" not in data:
            raise ValueError("digest response is missing 'digest'")
        response_id = data.get("id")
        return cls(
            algorithm=str(data.get("algorithm") or ""),
            object_key=str(data.get("objectKey") or ""),
            digest=str(data["digest"]),
            id=str(response_id) if response_id else None,
        )


@dataclass(frozen=True)
class SendingParams:
    """Attempt budget for one RetryingSender.try_sending call."""
    max_attempts: int
    attempt_interval: float
    on_attempt_failure: Callable[[str], None] = field(default=_ignore_failure, compare=False)

    def __post_init__(self) -> None:
        if int(self.max_attempts) < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if float(self.attempt_interval) < 0:
            raise ValueError(f"attempt_interval must be >= 0, got {self.attempt_interval}")


@dataclass(frozen=True)
class FallbackSetupParams:
    """Everything needed to provision and reach one fallback instance."""
    label: str
    instance_type: str
    image_id: str
    service_context_path: str
    service_path: str = ""
    wait_for_degradation_signal: bool = False
    load_balancer_name: Optional[str] = None
    dns_name: Optional[str] = None

    @property
    def service_full_path(self) -> str:
        return self.service_context_path + self.service_path
