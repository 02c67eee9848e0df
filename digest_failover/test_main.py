"""Unit tests for the controller wiring in main.py."""

from __future__ import annotations

import json
import logging
import os
import threading
import unittest
from unittest.mock import MagicMock, patch

from digest_failover.config import logger
from digest_failover.degradation import DegradationSignal
from digest_failover.main import ControllerService, build_parser, main
from digest_failover.models import DigestRequest
from digest_failover.scheduler import PollScheduler
from digest_failover.sqs_endpoint import SimpleSqsEndpoint
from digest_failover.url_cache import ServiceUrlCache

QUEUE_IN = "https://sqs.us-east-1.amazonaws.com/123456789012/digest-in"
QUEUE_OUT = "https://sqs.us-east-1.amazonaws.com/123456789012/digest-out"
OOM_QUEUE = "https://sqs.us-east-1.amazonaws.com/123456789012/digest-oom"

CONF = {"digest-controller-service": {"queueIn": QUEUE_IN, "queueOut": QUEUE_OUT, "oomQueue": OOM_QUEUE}}


class ControllerServiceTests(unittest.TestCase):
    def setUp(self):
        self.sqs = MagicMock()
        self.sqs.receive_message.return_value = {}
        self.controller = MagicMock()
        self.service = ControllerService(
            endpoint=SimpleSqsEndpoint(sqs=self.sqs, workers=1),
            controller=self.controller,
            scheduler=PollScheduler(),
            cache=ServiceUrlCache(),
            signal=DegradationSignal(),
        )

    def tearDown(self):
        with patch("digest_failover.main._close_clients"):
            self.service.shutdown()

    def test_setup_subscribes_request_and_oom_queues(self):
        with patch.dict(os.environ, {"DIGEST_SERVICE_CONF_JSON": json.dumps(CONF)}):
            self.service.setup("digest-controller-service")

        subscriptions = {s.queue_in: s for s in self.service.endpoint._subscriptions}
        self.assertEqual(set(subscriptions), {QUEUE_IN, OOM_QUEUE})
        self.assertEqual(subscriptions[QUEUE_IN].queue_out, QUEUE_OUT)
        self.assertIsNone(subscriptions[OOM_QUEUE].queue_out)

    def test_requests_reach_the_controller(self):
        with patch.dict(os.environ, {"DIGEST_SERVICE_CONF_JSON": json.dumps(CONF)}):
            self.service.setup("digest-controller-service")
        body = json.dumps({"algorithm": "SHA-256", "objectKey": "largefiles/file_sizedOf100000000"})
        self.sqs.receive_message.side_effect = lambda QueueUrl, **_kw: (
            {"Messages": [{"MessageId": "m-1", "ReceiptHandle": "rh-1", "Body": body}]} if QueueUrl == QUEUE_IN else {}
        )
        self.controller.execute.return_value = {"digest": "abc123"}

        self.service.endpoint.poll_once()
        self.service.endpoint._executor.shutdown(wait=True)

        self.controller.execute.assert_called_once_with(
            DigestRequest(algorithm="SHA-256", object_key="largefiles/file_sizedOf100000000")
        )
        self.assertEqual(self.sqs.send_message.call_args.kwargs["QueueUrl"], QUEUE_OUT)

    def test_oom_message_sets_degradation_signal(self):
        with patch.dict(os.environ, {"DIGEST_SERVICE_CONF_JSON": json.dumps(CONF)}):
            self.service.setup("digest-controller-service")
        self.sqs.receive_message.side_effect = lambda QueueUrl, **_kw: (
            {"Messages": [{"MessageId": "m-9", "ReceiptHandle": "rh-9", "Body": "OutOfMemoryError"}]}
            if QueueUrl == OOM_QUEUE
            else {}
        )

        self.service.endpoint.poll_once()
        self.service.endpoint._executor.shutdown(wait=True)

        self.assertTrue(self.service.signal.is_reported())
        self.controller.execute.assert_not_called()

    def test_missing_oom_queue_only_warns(self):
        conf = {"digest-controller-service": {"queueIn": QUEUE_IN}}
        with patch.dict(os.environ, {"DIGEST_SERVICE_CONF_JSON": json.dumps(conf)}):
            with self.assertLogs("digest_failover", level="WARNING"):
                self.service.setup("digest-controller-service")

        self.assertEqual([s.queue_in for s in self.service.endpoint._subscriptions], [QUEUE_IN])

    def test_missing_input_queue_is_a_config_error(self):
        conf = {"digest-controller-service": {"queueOut": QUEUE_OUT}}
        env = {"DIGEST_SERVICE_CONF_JSON": json.dumps(conf), "DIGEST_QUEUE_IN": ""}
        with patch.dict(os.environ, env):
            with self.assertRaises(ValueError):
                self.service.setup("digest-controller-service")

    def test_shutdown_runs_pending_cleanups_and_closes_clients(self):
        ran = []
        self.service.scheduler.delay(lambda: ran.append(True), 900, label="fallback cleanup i-1")

        with patch("digest_failover.main._close_clients") as mock_close:
            self.service.shutdown()

        self.assertEqual(ran, [True])
        mock_close.assert_called_once()
        self.sqs.close.assert_called()

    def _slow_request(self, release: threading.Event, started: threading.Event, ran: list):
        def _execute(_body):
            started.set()
            release.wait(5)
            self.service.scheduler.delay(lambda: ran.append("i-1 terminated"), 900, label="fallback cleanup i-1")
            return None

        self.service.endpoint.handle_string(_execute, QUEUE_IN)
        self.sqs.receive_message.return_value = {
            "Messages": [{"MessageId": "m-1", "ReceiptHandle": "rh-1", "Body": "digest"}]
        }
        self.service.endpoint.poll_once()
        self.assertTrue(started.wait(5))

    def test_shutdown_waits_for_running_failover_and_tears_it_down(self):
        release, started, ran = threading.Event(), threading.Event(), []
        self._slow_request(release, started, ran)
        threading.Timer(0.05, release.set).start()

        with patch("digest_failover.main._close_clients"):
            self.service.shutdown(drain_seconds=5)

        self.assertEqual(ran, ["i-1 terminated"])

    def test_failover_finishing_after_shutdown_is_torn_down_at_once(self):
        release, started, ran = threading.Event(), threading.Event(), []
        self._slow_request(release, started, ran)

        with patch("digest_failover.main._close_clients"):
            with self.assertLogs("digest_failover", level="WARNING"):
                self.service.shutdown(drain_seconds=0.01)
        self.assertEqual(ran, [])

        release.set()
        self.service.endpoint._executor.shutdown(wait=True)

        self.assertEqual(ran, ["i-1 terminated"])
        self.assertEqual(self.service.scheduler.pending_count(), 0)


class MainTests(unittest.TestCase):
    def test_parser_defaults(self):
        args = build_parser().parse_args([])
        self.assertEqual(args.service_name, "digest-controller-service")
        self.assertEqual(args.log_level, "INFO")

    def test_main_exits_nonzero_without_input_queue(self):
        env = {"DIGEST_SERVICE_CONF_JSON": "", "DIGEST_QUEUE_IN": ""}
        with patch.dict(os.environ, env), patch("digest_failover.main._close_clients"):
            self.assertEqual(main(["--service-name", "unconfigured-service", "--log-level", "ERROR"]), 1)
        logger.setLevel(logging.INFO)


if __name__ == "__main__":
    unittest.main()
