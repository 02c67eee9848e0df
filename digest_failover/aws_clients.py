"""digest_failover.aws_clients — Lazy-singleton AWS service clients.

Provides factory functions that create boto3 clients on first call and
cache them for subsequent calls, so the process only pays client
construction for the services it actually touches.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from digest_failover.config import AWS_REGION, logger

__all__ = [
    "_close_clients",
    "_error_code",
    "_get_ec2",
    "_get_elb",
    "_get_sqs",
]

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ec2 = None
_elb = None
_sqs = None


def _get_ec2(region: Optional[str] = None):
    """Get (or create) the EC2 client singleton."""
    global _ec2
    if _ec2 is None:
        _ec2 = boto3.client(
            "ec2",
            region_name=region or AWS_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _ec2


def _get_elb(region: Optional[str] = None):
    """Get (or create) the classic Elastic Load Balancing client singleton."""
    global _elb
    if _elb is None:
        _elb = boto3.client(
            "elb",
            region_name=region or AWS_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _elb


def _get_sqs(region: Optional[str] = None):
    """Get (or create) the SQS client singleton."""
    global _sqs
    if _sqs is None:
        _sqs = boto3.client(
            "sqs",
            region_name=region or AWS_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _sqs


def _close_clients() -> None:
    """Close every client created so far and drop the cached singletons."""
    global _ec2, _elb, _sqs
    for name, client in (("ec2", _ec2), ("elb", _elb), ("sqs", _sqs)):
        if client is None:
            continue
        try:
            client.close()
        except Exception as exc:
            logger.warning("failed closing %s client: %s", name, exc)
    _ec2 = None
    _elb = None
    _sqs = None


def _error_code(exc: BaseException) -> str:
    """Return the AWS error code of a ClientError, or an empty string."""
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return ""
