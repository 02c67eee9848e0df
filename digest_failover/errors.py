"""Error kinds raised by the digest dispatch and failover path.

TransportError and RetryExhaustedError are recovered inside the dispatcher
by escalating to the next tier. Everything the dispatcher lets escape
belongs to the ServiceError family.
"""

from __future__ import annotations

from typing import Optional


class DigestFailoverError(Exception):
    """Base exception for all digest_failover errors."""


class TransportError(DigestFailoverError):
    """A single request attempt against one URL failed."""

    def __init__(self, url: str, reason: str, status_code: Optional[int] = None):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"{url}: {reason}")


class RetryExhaustedError(DigestFailoverError):
    """Every attempt against one URL failed."""

    def __init__(self, url: str, attempts: int, last_error: BaseException):
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{attempts} attempt(s) against {url} failed, last error: {last_error}")


class ServiceError(DigestFailoverError):
    """A request could not be served after every fallback path was tried."""


class ProvisioningError(ServiceError):
    """A compute or load balancer operation needed for failover failed."""


class PollTimeoutError(ProvisioningError, TimeoutError):
    """A poll did not observe its condition before the deadline."""

    def __init__(self, label: str, timeout: float):
        self.label = label
        self.timeout = timeout
        super().__init__(f"{label or 'poll'} timed out after {timeout:g}s")
