"""config.py — Environment-driven settings and the package logger.

Every value can be overridden through the environment of the process that
runs the controller.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Dict, Optional

__all__ = [
    "AWS_REGION",
    "DEFAULT_SERVICE_NAME",
    "DEGRADATION_POLL_SECONDS",
    "DEGRADATION_TIMEOUT_SECONDS",
    "FALLBACK_APP_PORT",
    "FALLBACK_ATTEMPT_INTERVAL_SECONDS",
    "FALLBACK_CLEANUP_DELAY_SECONDS",
    "FALLBACK_DNS_NAME",
    "FALLBACK_IAM_INSTANCE_PROFILE_ARN",
    "FALLBACK_IMAGE_ID",
    "FALLBACK_INSTANCE_TYPE",
    "FALLBACK_KEY_NAME",
    "FALLBACK_LOAD_BALANCER_NAME",
    "FALLBACK_MAX_ATTEMPTS",
    "FALLBACK_NAME_TAG",
    "FALLBACK_SECOND_IMAGE_ID",
    "FALLBACK_SECOND_INSTANCE_TYPE",
    "FALLBACK_SECURITY_GROUP_IDS",
    "FALLBACK_TAG_MANAGED_BY_VALUE",
    "FALLBACK_WAIT_FOR_DEGRADATION",
    "HEALTH_CHECK_MAX_CONSECUTIVE_ERRORS",
    "HEALTH_CHECK_PATH",
    "HEALTH_CHECK_POLL_SECONDS",
    "HEALTH_CHECK_TIMEOUT_SECONDS",
    "HTTP_TIMEOUT_SECONDS",
    "INSTANCE_READY_POLL_SECONDS",
    "INSTANCE_READY_TIMEOUT_SECONDS",
    "PRIMARY_ATTEMPT_INTERVAL_SECONDS",
    "PRIMARY_MAX_ATTEMPTS",
    "PRIMARY_SERVER_ADDRESS",
    "SERVICE_CONTEXT",
    "SERVICE_PATH",
    "SHUTDOWN_DRAIN_SECONDS",
    "SQS_MAX_MESSAGES",
    "SQS_POLL_SECONDS",
    "SQS_WAIT_TIME_SECONDS",
    "SQS_WORKER_POOL_SIZE",
    "_env_bool",
    "_service_conf_map",
    "logger",
]


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() == "true"


def _env_optional(name: str) -> Optional[str]:
    value = os.environ.get(name, "").strip()
    return value or None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

AWS_REGION = os.environ.get("AWS_REGION", os.environ.get("AWS_DEFAULT_REGION", "us-east-1"))
DEFAULT_SERVICE_NAME = os.environ.get("DIGEST_SERVICE_NAME", "digest-controller-service")

# Primary digest service
PRIMARY_SERVER_ADDRESS = os.environ.get("PRIMARY_SERVER_ADDRESS", "http://digest.adamsmolnik.com")
SERVICE_CONTEXT = os.environ.get("SERVICE_CONTEXT", "/digest-service")
SERVICE_PATH = os.environ.get("SERVICE_PATH", "/ds/digest")
PRIMARY_MAX_ATTEMPTS = int(os.environ.get("PRIMARY_MAX_ATTEMPTS", "7"))
PRIMARY_ATTEMPT_INTERVAL_SECONDS = float(os.environ.get("PRIMARY_ATTEMPT_INTERVAL_SECONDS", "10"))
HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "30"))

# Fallback tier(s)
FALLBACK_INSTANCE_TYPE = os.environ.get("FALLBACK_INSTANCE_TYPE", "t2.micro")
FALLBACK_IMAGE_ID = os.environ.get("FALLBACK_IMAGE_ID", "ami-e4ba1d8c")
FALLBACK_SECOND_INSTANCE_TYPE = _env_optional("FALLBACK_SECOND_INSTANCE_TYPE")
FALLBACK_SECOND_IMAGE_ID = os.environ.get("FALLBACK_SECOND_IMAGE_ID", FALLBACK_IMAGE_ID)
FALLBACK_LOAD_BALANCER_NAME = _env_optional("FALLBACK_LOAD_BALANCER_NAME")
FALLBACK_DNS_NAME = _env_optional("FALLBACK_DNS_NAME")
FALLBACK_WAIT_FOR_DEGRADATION = _env_bool("FALLBACK_WAIT_FOR_DEGRADATION")
FALLBACK_MAX_ATTEMPTS = int(os.environ.get("FALLBACK_MAX_ATTEMPTS", "6"))
FALLBACK_ATTEMPT_INTERVAL_SECONDS = float(os.environ.get("FALLBACK_ATTEMPT_INTERVAL_SECONDS", "5"))
FALLBACK_CLEANUP_DELAY_SECONDS = int(os.environ.get("FALLBACK_CLEANUP_DELAY_SECONDS", "900"))
FALLBACK_APP_PORT = int(os.environ.get("FALLBACK_APP_PORT", "8080"))
FALLBACK_KEY_NAME = _env_optional("FALLBACK_KEY_NAME")
FALLBACK_SECURITY_GROUP_IDS = tuple(
    part.strip()
    for part in os.environ.get("FALLBACK_SECURITY_GROUP_IDS", "").split(",")
    if part.strip()
)
FALLBACK_IAM_INSTANCE_PROFILE_ARN = _env_optional("FALLBACK_IAM_INSTANCE_PROFILE_ARN")
FALLBACK_NAME_TAG = os.environ.get("FALLBACK_NAME_TAG", "temporary fallback server for digest-service")
FALLBACK_TAG_MANAGED_BY_VALUE = os.environ.get("FALLBACK_TAG_MANAGED_BY_VALUE", "digest-failover")

# Wait windows (seconds)
DEGRADATION_POLL_SECONDS = float(os.environ.get("DEGRADATION_POLL_SECONDS", "15"))
DEGRADATION_TIMEOUT_SECONDS = float(os.environ.get("DEGRADATION_TIMEOUT_SECONDS", "300"))
INSTANCE_READY_POLL_SECONDS = float(os.environ.get("INSTANCE_READY_POLL_SECONDS", "15"))
INSTANCE_READY_TIMEOUT_SECONDS = float(os.environ.get("INSTANCE_READY_TIMEOUT_SECONDS", "600"))
HEALTH_CHECK_POLL_SECONDS = float(os.environ.get("HEALTH_CHECK_POLL_SECONDS", "15"))
HEALTH_CHECK_TIMEOUT_SECONDS = float(os.environ.get("HEALTH_CHECK_TIMEOUT_SECONDS", "300"))
HEALTH_CHECK_PATH = os.environ.get("HEALTH_CHECK_PATH", "/hc")
HEALTH_CHECK_MAX_CONSECUTIVE_ERRORS = int(os.environ.get("HEALTH_CHECK_MAX_CONSECUTIVE_ERRORS", "2"))

# SQS endpoint
SQS_POLL_SECONDS = float(os.environ.get("SQS_POLL_SECONDS", "10"))
SQS_WAIT_TIME_SECONDS = int(os.environ.get("SQS_WAIT_TIME_SECONDS", "0"))
SQS_MAX_MESSAGES = int(os.environ.get("SQS_MAX_MESSAGES", "10"))
SQS_WORKER_POOL_SIZE = int(os.environ.get("SQS_WORKER_POOL_SIZE", "10"))
SHUTDOWN_DRAIN_SECONDS = float(os.environ.get("SHUTDOWN_DRAIN_SECONDS", "30"))


def _service_conf_map(service_name: str) -> Dict[str, Optional[str]]:
    """Return the queue configuration for ``service_name``.

    ``DIGEST_SERVICE_CONF_JSON`` holds a JSON object keyed by service name;
    the individual ``DIGEST_QUEUE_*`` variables are used when the service is
    not listed there.
    """
    raw = os.environ.get("DIGEST_SERVICE_CONF_JSON", "").strip()
    if raw:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid DIGEST_SERVICE_CONF_JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValueError("DIGEST_SERVICE_CONF_JSON must be an object")
        entry = parsed.get(service_name)
        if isinstance(entry, dict):
            return {
                "queueIn": entry.get("queueIn") or None,
                "queueOut": entry.get("queueOut") or None,
                "oomQueue": entry.get("oomQueue") or None,
            }
    return {
        "queueIn": _env_optional("DIGEST_QUEUE_IN"),
        "queueOut": _env_optional("DIGEST_QUEUE_OUT"),
        "oomQueue": _env_optional("DIGEST_OOM_QUEUE"),
    }


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("digest_failover")
logger.setLevel(logging.INFO)
