"""Unit tests for the shared modules: config, AWS clients, serialization, models."""

from __future__ import annotations

import json
import os
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

from digest_failover.aws_clients import _close_clients, _error_code, _get_ec2, _get_elb, _get_sqs
from digest_failover.config import _env_bool, _service_conf_map
from digest_failover.degradation import DegradationSignal
from digest_failover.models import DigestRequest, DigestResponse, FallbackSetupParams
from digest_failover.serialization import _dumps, _emit_structured_observability, _loads, _now_z


class ConfigTests(unittest.TestCase):
    def test_conf_map_from_json(self):
        conf = {
            "digest-controller-service": {
                "queueIn": "https://sqs/digest-in",
                "queueOut": "https://sqs/digest-out",
                "oomQueue": "https://sqs/digest-oom",
            }
        }
        with patch.dict(os.environ, {"DIGEST_SERVICE_CONF_JSON": json.dumps(conf)}):
            result = _service_conf_map("digest-controller-service")

        self.assertEqual(
            result,
            {"queueIn": "https://sqs/digest-in", "queueOut": "https://sqs/digest-out", "oomQueue": "https://sqs/digest-oom"},
        )

    def test_conf_map_falls_back_to_queue_variables(self):
        env = {
            "DIGEST_SERVICE_CONF_JSON": json.dumps({"other-service": {"queueIn": "https://sqs/other"}}),
            "DIGEST_QUEUE_IN": "https://sqs/env-in",
            "DIGEST_QUEUE_OUT": "",
            "DIGEST_OOM_QUEUE": "https://sqs/env-oom",
        }
        with patch.dict(os.environ, env):
            result = _service_conf_map("digest-controller-service")

        self.assertEqual(result, {"queueIn": "https://sqs/env-in", "queueOut": None, "oomQueue": "https://sqs/env-oom"})

    def test_conf_map_rejects_invalid_json(self):
        with patch.dict(os.environ, {"DIGEST_SERVICE_CONF_JSON": "{not json"}):
            with self.assertRaises(ValueError):
                _service_conf_map("digest-controller-service")

    def test_env_bool(self):
        with patch.dict(os.environ, {"FLAG_ON": "True", "FLAG_OFF": "no"}):
            self.assertTrue(_env_bool("FLAG_ON"))
            self.assertFalse(_env_bool("FLAG_OFF"))
            self.assertFalse(_env_bool("FLAG_MISSING"))


class AwsClientTests(unittest.TestCase):
    def tearDown(self):
        import digest_failover.aws_clients as clients

        clients._ec2 = None
        clients._elb = None
        clients._sqs = None

    @patch("digest_failover.aws_clients.boto3")
    def test_get_sqs_singleton(self, mock_boto3):
        import digest_failover.aws_clients as clients

        clients._sqs = None  # Reset singleton
        mock_client = MagicMock()
        mock_boto3.client.return_value = mock_client

        result1 = _get_sqs()
        result2 = _get_sqs()

        # Same object returned both times.
        self.assertIs(result1, result2)
        # boto3.client called only once.
        mock_boto3.client.assert_called_once()
        self.assertEqual(mock_boto3.client.call_args.args[0], "sqs")

    @patch("digest_failover.aws_clients.boto3")
    def test_load_balancer_client_is_classic_elb(self, mock_boto3):
        _get_elb()
        self.assertEqual(mock_boto3.client.call_args.args[0], "elb")

    @patch("digest_failover.aws_clients.boto3")
    def test_close_clients_resets_singletons(self, mock_boto3):
        ec2 = MagicMock()
        sqs = MagicMock()
        sqs.close.side_effect = RuntimeError("already closed")
        mock_boto3.client.side_effect = [ec2, sqs, MagicMock()]

        _get_ec2()
        _get_sqs()
        with self.assertLogs("digest_failover", level="WARNING"):
            _close_clients()

        ec2.close.assert_called_once()
        self.assertIsNot(_get_ec2(), ec2)

    def test_error_code(self):
        exc = ClientError({"Error": {"Code": "InvalidInstanceID.NotFound", "Message": "gone"}}, "TerminateInstances")
        self.assertEqual(_error_code(exc), "InvalidInstanceID.NotFound")
        self.assertEqual(_error_code(RuntimeError("x")), "")


class SerializationTests(unittest.TestCase):
    def test_dumps_unwraps_models(self):
        request = DigestRequest(algorithm="MD5", object_key="files/a.bin")
        self.assertEqual(json.loads(_dumps(request)), {"algorithm": "MD5", "objectKey": "files/a.bin"})

    def test_loads_accepts_bytes(self):
        self.assertEqual(_loads(b'{"a": 1}'), {"a": 1})

    def test_loads_rejects_invalid_json(self):
        with self.assertRaises(ValueError):
            _loads("{")

    def test_now_z_format(self):
        self.assertRegex(_now_z(), r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z")

    def test_observability_line(self):
        with self.assertLogs("digest_failover", level="INFO") as logs:
            _emit_structured_observability(
                component="sender",
                event="send_attempt_failed",
                target="http://digest.example.com",
                attempt=2,
                latency_ms=-5,
                error_code="503",
                extra={"tier": "primary"},
            )

        line = logs.output[0].split("[OBSERVABILITY] ", 1)[1]
        payload = json.loads(line)
        self.assertEqual(payload["component"], "sender")
        self.assertEqual(payload["attempt"], 2)
        self.assertEqual(payload["latency_ms"], 0)
        self.assertEqual(payload["tier"], "primary")


class ModelTests(unittest.TestCase):
    def test_request_from_dict(self):
        request = DigestRequest.from_dict({"algorithm": "SHA-256", "objectKey": "files/a.bin", "id": 42})
        self.assertEqual(request, DigestRequest("SHA-256", "files/a.bin", "42"))

    def test_request_requires_algorithm_and_key(self):
        for payload in ({"algorithm": "SHA-256"}, {"objectKey": "files/a.bin"}, ["SHA-256"]):
            with self.assertRaises(ValueError):
                DigestRequest.from_dict(payload)

    def test_response_requires_digest(self):
        with self.assertRaises(ValueError):
            DigestResponse.from_dict({"algorithm": "SHA-256", "objectKey": "files/a.bin"})

    def test_response_round_trip_keeps_wire_names(self):
        data = {"algorithm": "SHA-256", "objectKey": "files/a.bin", "digest": "abc", "id": "r-1"}
        self.assertEqual(DigestResponse.from_dict(data).to_dict(), data)

    def test_fallback_setup_full_path(self):
        params = FallbackSetupParams(
            label="fallback",
            instance_type="t2.micro",
            image_id="ami-e4ba1d8c",
            service_context_path="/digest-service",
            service_path="/ds/digest",
        )
        self.assertEqual(params.service_full_path, "/digest-service/ds/digest")


class DegradationSignalTests(unittest.TestCase):
    def test_consume_clears_the_signal(self):
        signal = DegradationSignal()
        self.assertFalse(signal.consume())

        signal.set_reported()
        self.assertTrue(signal.is_reported())
        self.assertTrue(signal.consume())
        self.assertFalse(signal.is_reported())
        self.assertFalse(signal.consume())


if __name__ == "__main__":
    unittest.main()
