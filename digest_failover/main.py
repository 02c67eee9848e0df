#!/usr/bin/env python3
"""digest-failover controller — wires the SQS endpoint to the digest dispatcher.

Subscriptions (queue URLs come from the per-service configuration map):
  queueIn   digest requests, answered on queueOut
  oomQueue  out-of-memory notifications from the primary service; each one
            sets the degradation signal a waiting failover consumes

Environment variables: see digest_failover/config.py.
"""
from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Optional

from digest_failover.aws_clients import _close_clients
from digest_failover.config import (
    DEFAULT_SERVICE_NAME,
    SHUTDOWN_DRAIN_SECONDS,
    SQS_POLL_SECONDS,
    SQS_WORKER_POOL_SIZE,
    _service_conf_map,
    logger,
)
from digest_failover.degradation import DegradationSignal
from digest_failover.dispatcher import DigestController
from digest_failover.fallback import Fallback
from digest_failover.models import DigestRequest
from digest_failover.scheduler import PollScheduler
from digest_failover.sender import RetryingSender
from digest_failover.sqs_endpoint import SimpleSqsEndpoint
from digest_failover.url_cache import ServiceUrlCache

__all__ = ["ControllerService", "build_parser", "build_service", "main"]


@dataclass
class ControllerService:
    """Everything one controller process owns."""
    endpoint: SimpleSqsEndpoint
    controller: DigestController
    scheduler: PollScheduler
    cache: ServiceUrlCache
    signal: DegradationSignal

    def setup(self, service_name: str) -> None:
        conf = _service_conf_map(service_name)
        queue_in = conf.get("queueIn")
        if not queue_in:
            raise ValueError(f"no input queue configured for service '{service_name}'")
        self.endpoint.handle_json(
            self.controller.execute,
            DigestRequest.from_dict,
            queue_in,
            conf.get("queueOut"),
        )
        oom_queue = conf.get("oomQueue")
        if oom_queue:
            self.endpoint.handle_void(lambda _body: self.signal.set_reported(), oom_queue)
        else:
            logger.warning("no OOM notification queue configured for '%s'", service_name)

    def start(self) -> None:
        self.endpoint.start()

    def shutdown(self, drain_seconds: float = SHUTDOWN_DRAIN_SECONDS) -> None:
        """Stop consuming, then tear down every fallback instance still tracked."""
        self.endpoint.shutdown(drain_seconds=drain_seconds)
        self.scheduler.shutdown(run_pending=True)
        _close_clients()


def build_service(*, poll_seconds: float = SQS_POLL_SECONDS, workers: int = SQS_WORKER_POOL_SIZE) -> ControllerService:
    scheduler = PollScheduler()
    cache = ServiceUrlCache()
    degradation = DegradationSignal()
    fallback = Fallback(scheduler, cache, degradation)
    controller = DigestController(RetryingSender(), fallback, cache)
    endpoint = SimpleSqsEndpoint(poll_seconds=poll_seconds, workers=workers)
    return ControllerService(
        endpoint=endpoint,
        controller=controller,
        scheduler=scheduler,
        cache=cache,
        signal=degradation,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dispatch SQS digest requests with EC2 failover for the digest service",
    )
    parser.add_argument("--service-name", default=DEFAULT_SERVICE_NAME)
    parser.add_argument("--log-level", default="INFO", choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    parser.add_argument("--poll-seconds", type=float, default=SQS_POLL_SECONDS)
    parser.add_argument("--workers", type=int, default=SQS_WORKER_POOL_SIZE)
    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    logger.setLevel(getattr(logging, args.log_level))

    service = build_service(poll_seconds=args.poll_seconds, workers=args.workers)
    try:
        service.setup(args.service_name)
    except ValueError as exc:
        logger.error("configuration error: %s", exc)
        service.shutdown()
        return 1

    stopped = threading.Event()

    def _stop(signum, _frame) -> None:
        logger.info("[INFO] received signal %s, shutting down", signum)
        stopped.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    service.start()
    logger.info("[INFO] %s started", args.service_name)
    while not stopped.wait(1.0):
        pass
    service.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
