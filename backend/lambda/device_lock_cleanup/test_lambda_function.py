"""Unit tests for the scheduled device lock sweep."""

from __future__ import annotations

import importlib.util
import os
import unittest
from unittest.mock import patch

from hunt_shared.device_locks import DeviceLock, DeviceLockStore

_SPEC = importlib.util.spec_from_file_location(
    "device_lock_cleanup_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
cleanup = importlib.util.module_from_spec(_SPEC)
assert _SPEC.loader is not None
_SPEC.loader.exec_module(cleanup)

NOW = 1_700_000_000


class InMemoryLockRecords:
    def __init__(self, locks):
        self.rows = {lock.device_fingerprint: lock for lock in locks}
        self.scan_error = None

    def delete(self, device_fingerprint):
        self.rows.pop(device_fingerprint, None)

    def scan_expired(self, now):
        if self.scan_error is not None:
            raise self.scan_error
        return [fp for fp, lock in self.rows.items() if lock.expires_at <= now]


class CleanupHandlerTests(unittest.TestCase):
    def setUp(self):
        self.records = InMemoryLockRecords(
            [
                DeviceLock("aaaa", "alpha", NOW - 10, NOW - 86410),
                DeviceLock("bbbb", "beta", NOW, NOW - 86400),
                DeviceLock("cccc", "gamma", NOW + 3600, NOW - 100),
            ]
        )
        self.store = DeviceLockStore(self.records, policy="lenient", clock=lambda: NOW)

    def test_deletes_only_expired_locks(self):
        with patch.object(cleanup, "_lock_store", self.store):
            result = cleanup.lambda_handler({"id": "evt-1", "source": "aws.events"}, None)

        self.assertEqual(result, {"success": True, "deleted": 2})
        self.assertEqual(list(self.records.rows), ["cccc"])

    def test_nothing_to_delete(self):
        self.records.rows.pop("aaaa")
        self.records.rows.pop("bbbb")
        with patch.object(cleanup, "_lock_store", self.store):
            result = cleanup.lambda_handler({}, None)

        self.assertEqual(result["deleted"], 0)

    def test_scan_failure_reports_zero(self):
        from botocore.exceptions import EndpointConnectionError

        self.records.scan_error = EndpointConnectionError(endpoint_url="https://dynamodb.example")
        with patch.object(cleanup, "_lock_store", self.store):
            result = cleanup.lambda_handler(None, None)

        self.assertEqual(result, {"success": True, "deleted": 0})
        self.assertEqual(len(self.records.rows), 3)


if __name__ == "__main__":
    unittest.main()
