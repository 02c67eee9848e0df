"""sqs_endpoint.py — Fixed-period SQS polling feeding a bounded worker pool.

Messages are deleted as soon as they are handed to a worker, before the
handler runs. A handler that fails after that point loses its request.
"""
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from botocore.exceptions import BotoCoreError, ClientError

from digest_failover.aws_clients import _get_sqs
from digest_failover.config import (
    SQS_MAX_MESSAGES,
    SQS_POLL_SECONDS,
    SQS_WAIT_TIME_SECONDS,
    SQS_WORKER_POOL_SIZE,
    logger,
)
from digest_failover.serialization import _dumps, _loads

__all__ = ["SimpleSqsEndpoint", "Subscription"]


@dataclass(frozen=True)
class Subscription:
    """One input queue and what to do with its messages."""
    queue_in: str
    processor: Callable[[Any], Any]
    mapper: Callable[[str], Any]
    queue_out: Optional[str] = None


class SimpleSqsEndpoint:
    def __init__(
        self,
        *,
        sqs: Any = None,
        poll_seconds: float = SQS_POLL_SECONDS,
        wait_time_seconds: int = SQS_WAIT_TIME_SECONDS,
        max_messages: int = SQS_MAX_MESSAGES,
        workers: int = SQS_WORKER_POOL_SIZE,
    ) -> None:
        self._sqs_client = sqs
        self._poll_seconds = poll_seconds
        self._wait_time_seconds = wait_time_seconds
        self._max_messages = max_messages
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="sqs-worker")
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._poller: Optional[threading.Thread] = None
        self._inflight: Set[Future] = set()

    def _sqs(self):
        return self._sqs_client or _get_sqs()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def handle_string(
        self,
        processor: Callable[[str], Any],
        queue_in: str,
        queue_out: Optional[str] = None,
    ) -> Subscription:
        return self.handle(processor, lambda body: body, queue_in, queue_out)

    def handle_void(self, processor: Callable[[str], None], queue_in: str) -> Subscription:
        return self.handle(processor, lambda body: body, queue_in, None)

    def handle_json(
        self,
        processor: Callable[[Any], Any],
        from_dict: Callable[[Dict[str, Any]], Any],
        queue_in: str,
        queue_out: Optional[str] = None,
    ) -> Subscription:
        return self.handle(processor, lambda body: from_dict(_loads(body)), queue_in, queue_out)

    def handle(
        self,
        processor: Callable[[Any], Any],
        mapper: Callable[[str], Any],
        queue_in: str,
        queue_out: Optional[str] = None,
    ) -> Subscription:
        if not queue_in:
            raise ValueError("queue_in is required")
        subscription = Subscription(queue_in=queue_in, processor=processor, mapper=mapper, queue_out=queue_out)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.info("[INFO] subscribed to %s (output: %s)", queue_in, queue_out or "none")
        return subscription

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._poller is not None:
                return
            self._poller = threading.Thread(target=self._run, name="sqs-poller", daemon=True)
            self._poller.start()

    def _run(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            if self._stop.wait(self._poll_seconds):
                break

    def poll_once(self) -> int:
        """Run one polling cycle over every subscription; return messages dispatched."""
        with self._lock:
            subscriptions = list(self._subscriptions)
        dispatched = 0
        for subscription in subscriptions:
            try:
                dispatched += self._poll_subscription(subscription)
            except Exception:
                logger.exception("polling %s failed", subscription.queue_in)
        return dispatched

    def _poll_subscription(self, subscription: Subscription) -> int:
        sqs = self._sqs()
        kwargs: Dict[str, Any] = {
            "QueueUrl": subscription.queue_in,
            "MaxNumberOfMessages": self._max_messages,
        }
        if self._wait_time_seconds > 0:
            kwargs["WaitTimeSeconds"] = self._wait_time_seconds
        response = sqs.receive_message(**kwargs)
        dispatched = 0
        for message in response.get("Messages") or []:
            body = message.get("Body") or ""
            try:
                request = subscription.mapper(body)
            except (ValueError, TypeError, KeyError) as exc:
                logger.error(
                    "unreadable message %s on %s left on queue: %s",
                    message.get("MessageId"),
                    subscription.queue_in,
                    exc,
                )
                continue
            self._submit(subscription, request)
            sqs.delete_message(QueueUrl=subscription.queue_in, ReceiptHandle=message["ReceiptHandle"])
            dispatched += 1
        return dispatched

    def _submit(self, subscription: Subscription, request: Any) -> Future:
        future = self._executor.submit(self._process, subscription, request)
        with self._lock:
            self._inflight.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._inflight.discard(future)

    def _process(self, subscription: Subscription, request: Any) -> Any:
        try:
            result = subscription.processor(request)
        except Exception:
            logger.exception("handler for %s failed", subscription.queue_in)
            return None
        if subscription.queue_out:
            try:
                self._sqs().send_message(QueueUrl=subscription.queue_out, MessageBody=_dumps(result))
            except (BotoCoreError, ClientError, TypeError, ValueError) as exc:
                logger.error("failed publishing result to %s: %s", subscription.queue_out, exc)
        return result

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self, drain_seconds: float = 0.0) -> None:
        """Stop polling, drop queued work and close SQS.

        Running workers get up to ``drain_seconds`` to finish; the endpoint
        does not wait for them beyond that.
        """
        self._stop.set()
        poller = self._poller
        if poller is not None and poller is not threading.current_thread():
            poller.join(timeout=max(1.0, float(self._wait_time_seconds) + 1.0))
        self._executor.shutdown(wait=False, cancel_futures=True)
        with self._lock:
            inflight = [f for f in self._inflight if not f.done()]
        if inflight and drain_seconds > 0:
            _done, not_done = wait(inflight, timeout=drain_seconds)
            if not_done:
                logger.warning(
                    "%d worker(s) still running after %ss, not waiting any longer", len(not_done), drain_seconds
                )
        client = self._sqs_client
        if client is not None:
            try:
                client.close()
            except Exception as exc:
                logger.warning("failed closing SQS client: %s", exc)
        logger.info("[INFO] SQS endpoint shut down")
