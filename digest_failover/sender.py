"""sender.py — Single and retried delivery of a request to one service URL."""
from __future__ import annotations

import http.client
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from digest_failover.config import HTTP_TIMEOUT_SECONDS, logger
from digest_failover.errors import RetryExhaustedError, TransportError
from digest_failover.models import DigestResponse, SendingParams
from digest_failover.serialization import _dumps, _emit_structured_observability, _loads

__all__ = ["RetryingSender"]


class RetryingSender:
    """POSTs JSON requests and decodes JSON responses.

    ``encode`` turns a request into the JSON body, ``decode`` builds the
    response object from the parsed JSON. Both default to the digest
    payload types.
    """

    def __init__(
        self,
        *,
        encode: Callable[[Any], str] = _dumps,
        decode: Callable[[Dict[str, Any]], Any] = DigestResponse.from_dict,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        urlopen: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._encode = encode
        self._decode = decode
        self._timeout = timeout
        self._sleep = sleep
        self._urlopen = urlopen or urllib.request.urlopen

    def send(self, url: str, request: Any) -> Any:
        """Perform exactly one POST; any fault is raised as TransportError."""
        req = urllib.request.Request(
            url,
            method="POST",
            data=self._encode(request).encode("utf-8"),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )
        try:
            with self._urlopen(req, timeout=self._timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as exc:
            body = ""
            try:
                body = exc.read().decode("utf-8", errors="replace")[:500]
            except (OSError, ValueError, AttributeError):
                body = ""
            raise TransportError(url, f"HTTP {exc.code} {body}".strip(), status_code=exc.code) from exc
        except urllib.error.URLError as exc:
            raise TransportError(url, f"connection failed: {exc.reason}") from exc
        except (http.client.HTTPException, OSError) as exc:
            raise TransportError(url, f"{type(exc).__name__}: {exc}") from exc

        try:
            return self._decode(_loads(raw))
        except (ValueError, TypeError, KeyError) as exc:
            raise TransportError(url, f"invalid response body: {exc}") from exc

    def try_sending(self, url: str, request: Any, params: SendingParams) -> Any:
        """Attempt ``send`` up to ``params.max_attempts`` times."""
        last_error: Optional[TransportError] = None
        for attempt in range(1, params.max_attempts + 1):
            started = time.perf_counter()
            try:
                response = self.send(url, request)
            except TransportError as exc:
                last_error = exc
                _emit_structured_observability(
                    component="sender",
                    event="send_attempt_failed",
                    target=url,
                    attempt=attempt,
                    latency_ms=int((time.perf_counter() - started) * 1000),
                    error_code=str(exc.status_code or "transport"),
                )
                if attempt == params.max_attempts:
                    break
                params.on_attempt_failure(
                    f"Attempt ({attempt}) to send to {url} failed with reason: {exc}"
                )
                self._sleep(params.attempt_interval)
                continue
            if attempt > 1:
                logger.info("[INFO] send to %s succeeded on attempt %d", url, attempt)
            return response

        raise RetryExhaustedError(url, params.max_attempts, last_error) from last_error
