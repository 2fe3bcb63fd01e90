"""test_retry.py — execute_with_retry and botocore error classification."""

from __future__ import annotations

import os
import sys
import unittest

from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))

from hunt_shared.errors import DependencyTimeoutError, TransientDependencyError, ValidationError
from hunt_shared.retry import classify_aws_error, execute_with_retry, is_retryable_error


def _client_error(code, status=400):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "PutObject",
    )


class Flaky:
    """Fails with the queued errors, then returns ``result``."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class ExecuteWithRetryTests(unittest.TestCase):
    def setUp(self):
        self.sleeps = []

    def _run(self, op, **kwargs):
        kwargs.setdefault("delays_ms", (500, 1000, 2000))
        return execute_with_retry(op, sleep=self.sleeps.append, operation_name="test op", **kwargs)

    def test_first_attempt_success_does_not_sleep(self):
        op = Flaky([])
        self.assertEqual(self._run(op), "ok")
        self.assertEqual(op.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_recovers_after_transient_failures(self):
        op = Flaky([TransientDependencyError("blip"), TransientDependencyError("blip")])
        self.assertEqual(self._run(op), "ok")
        self.assertEqual(op.calls, 3)
        self.assertEqual(self.sleeps, [0.5, 1.0])

    def test_exhaustion_raises_last_error(self):
        last = DependencyTimeoutError("slow 3")
        op = Flaky([TransientDependencyError("1"), TransientDependencyError("2"), last])
        with self.assertRaises(DependencyTimeoutError) as ctx:
            self._run(op)
        self.assertIs(ctx.exception, last)
        self.assertEqual(op.calls, 3)
        self.assertEqual(self.sleeps, [0.5, 1.0])

    def test_non_retryable_error_is_raised_immediately(self):
        op = Flaky([ValidationError("bad")])
        with self.assertRaises(ValidationError):
            self._run(op)
        self.assertEqual(op.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_last_delay_is_reused(self):
        op = Flaky([TransientDependencyError("x")] * 3)
        self.assertEqual(self._run(op, delays_ms=(100,), max_attempts=4), "ok")
        self.assertEqual(self.sleeps, [0.1, 0.1, 0.1])

    def test_custom_should_retry(self):
        op = Flaky([KeyError("x")])
        self.assertEqual(self._run(op, should_retry=lambda exc: isinstance(exc, KeyError)), "ok")

    def test_single_attempt_raises_without_sleeping(self):
        op = Flaky([TransientDependencyError("once")])
        with self.assertRaises(TransientDependencyError):
            self._run(op, max_attempts=0)
        self.assertEqual(op.calls, 1)
        self.assertEqual(self.sleeps, [])


class ClassificationTests(unittest.TestCase):
    def test_throttling_is_transient(self):
        classified = classify_aws_error(_client_error("ThrottlingException"), "database")
        self.assertIsInstance(classified, TransientDependencyError)
        self.assertEqual(classified.dependency, "database")

    def test_server_error_status_is_transient(self):
        classified = classify_aws_error(_client_error("SomethingOdd", status=503), "storage-provider")
        self.assertIsInstance(classified, TransientDependencyError)

    def test_timeouts_map_to_dependency_timeout(self):
        classified = classify_aws_error(ReadTimeoutError(endpoint_url="https://s3.example"), "storage-provider")
        self.assertIsInstance(classified, DependencyTimeoutError)
        self.assertEqual(classified.status_code, 504)

    def test_connection_errors_are_transient(self):
        classified = classify_aws_error(EndpointConnectionError(endpoint_url="https://ddb.example"), "database")
        self.assertIsInstance(classified, TransientDependencyError)
        self.assertNotIsInstance(classified, DependencyTimeoutError)

    def test_client_faults_pass_through(self):
        err = _client_error("AccessDenied", status=403)
        self.assertIs(classify_aws_error(err, "storage-provider"), err)

    def test_classified_message_omits_botocore_text(self):
        endpoint = "https://private-bucket.s3.us-west-2.amazonaws.com/key"
        classified = classify_aws_error(ReadTimeoutError(endpoint_url=endpoint), "storage-provider")
        self.assertNotIn("amazonaws.com", classified.message)
        self.assertIn(endpoint, classified.cause)
        self.assertEqual(classified.details, {})

        throttled = classify_aws_error(_client_error("ThrottlingException"), "database")
        self.assertNotIn("ThrottlingException", throttled.message)
        self.assertIn("ThrottlingException", throttled.cause)

    def test_is_retryable_error(self):
        self.assertTrue(is_retryable_error(TransientDependencyError("x")))
        self.assertTrue(is_retryable_error(TimeoutError()))
        self.assertTrue(is_retryable_error(_client_error("SlowDown", status=503)))
        self.assertFalse(is_retryable_error(_client_error("AccessDenied", status=403)))
        self.assertFalse(is_retryable_error(ValidationError("x")))
        self.assertFalse(is_retryable_error(RuntimeError("x")))


if __name__ == "__main__":
    unittest.main()
