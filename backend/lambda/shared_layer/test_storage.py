"""test_storage.py — boto3 adapters against MagicMock clients."""

from __future__ import annotations

import os
import sys
import unittest
from unittest.mock import MagicMock

from botocore.exceptions import ClientError, ReadTimeoutError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))

from hunt_shared.errors import DependencyTimeoutError, TransientDependencyError
from hunt_shared.serialization import _serialize
from hunt_shared.storage import (
    DynamoProgressStore,
    DynamoTeamDirectory,
    HuntLabels,
    S3AssetStore,
    StoredAsset,
    TeamCodeMapping,
    TeamRecord,
)


def _client_error(code, status=400, operation="GetItem"):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


def _item(**attrs):
    return {k: _serialize(v) for k, v in attrs.items()}


class S3AssetStoreTests(unittest.TestCase):
    def setUp(self):
        self.s3 = MagicMock()
        self.store = S3AssetStore(
            bucket="hunt-photos",
            prefix="scavenger/entries/",
            public_base_url="https://cdn.example.com/",
            client=self.s3,
        )

    def test_upload_writes_deterministic_key(self):
        asset = self.store.upload(
            b"jpeg",
            "covered-bridge_s1_abcd",
            {"session-id": "s1", "team-name": "Équipe", "empty": ""},
            "image/jpeg",
        )
        self.assertEqual(
            asset,
            StoredAsset("covered-bridge_s1_abcd", "https://cdn.example.com/scavenger/entries/covered-bridge_s1_abcd"),
        )
        kwargs = self.s3.put_object.call_args[1]
        self.assertEqual(kwargs["Bucket"], "hunt-photos")
        self.assertEqual(kwargs["Key"], "scavenger/entries/covered-bridge_s1_abcd")
        self.assertEqual(kwargs["ContentType"], "image/jpeg")
        self.assertEqual(kwargs["Metadata"], {"session-id": "s1", "team-name": "?quipe"})

    def test_default_url_is_virtual_hosted_s3(self):
        store = S3AssetStore(bucket="hunt-photos", prefix="p", public_base_url="", client=self.s3)
        self.assertTrue(store.url_for("x_y_z").startswith("https://hunt-photos.s3."))
        self.assertTrue(store.url_for("x_y_z").endswith("/p/x_y_z"))

    def test_upload_throttle_is_transient(self):
        self.s3.put_object.side_effect = _client_error("SlowDown", 503, "PutObject")
        with self.assertRaises(TransientDependencyError):
            self.store.upload(b"jpeg", "pid", {})

    def test_upload_timeout(self):
        self.s3.put_object.side_effect = ReadTimeoutError(endpoint_url="https://s3.example")
        with self.assertRaises(DependencyTimeoutError):
            self.store.upload(b"jpeg", "pid", {})

    def test_exists(self):
        self.assertTrue(self.store.exists("pid"))
        self.s3.head_object.assert_called_once_with(Bucket="hunt-photos", Key="scavenger/entries/pid")

    def test_exists_missing_object(self):
        self.s3.head_object.side_effect = _client_error("404", 404, "HeadObject")
        self.assertFalse(self.store.exists("pid"))

    def test_exists_server_error_is_transient(self):
        self.s3.head_object.side_effect = _client_error("InternalError", 500, "HeadObject")
        with self.assertRaises(TransientDependencyError):
            self.store.exists("pid")

    def test_delete(self):
        self.store.delete("pid")
        self.s3.delete_object.assert_called_once_with(Bucket="hunt-photos", Key="scavenger/entries/pid")

    def test_delete_access_denied_passes_through(self):
        self.s3.delete_object.side_effect = _client_error("AccessDenied", 403, "DeleteObject")
        with self.assertRaises(ClientError):
            self.store.delete("pid")


class DynamoTeamDirectoryTests(unittest.TestCase):
    def setUp(self):
        self.ddb = MagicMock()
        self.directory = DynamoTeamDirectory("team-codes", "teams", "organization-name-index", client=self.ddb)

    def test_get_team_code_mapping(self):
        self.ddb.get_item.return_value = {
            "Item": _item(
                code="ALPHA01",
                team_id="alpha",
                team_name="Team Alpha",
                is_active=True,
                organization_id="org-1",
                hunt_id="hunt-1",
            )
        }
        mapping = self.directory.get_team_code_mapping("ALPHA01")
        self.assertEqual(mapping, TeamCodeMapping("alpha", "Team Alpha", True, "org-1", "hunt-1"))
        self.assertEqual(self.ddb.get_item.call_args[1]["Key"], {"code": {"S": "ALPHA01"}})

    def test_unknown_code(self):
        self.ddb.get_item.return_value = {}
        self.assertIsNone(self.directory.get_team_code_mapping("NOPE"))

    def test_inactive_code_is_flagged(self):
        self.ddb.get_item.return_value = {"Item": _item(code="OLD", team_id="t", team_name="T", is_active=False)}
        self.assertFalse(self.directory.get_team_code_mapping("OLD").is_active)

    def test_lookup_throttle_is_transient(self):
        self.ddb.get_item.side_effect = _client_error("ProvisionedThroughputExceededException")
        with self.assertRaises(TransientDependencyError):
            self.directory.get_team_code_mapping("ALPHA01")

    def test_find_team_by_id(self):
        self.ddb.get_item.return_value = {
            "Item": _item(team_id="alpha", team_name="Team Alpha", organization_id="org-1", hunt_id="hunt-1")
        }
        self.assertEqual(self.directory.find_team("org-1", "hunt-1", "alpha"), "alpha")
        self.ddb.query.assert_not_called()

    def test_find_team_by_name_uses_gsi(self):
        self.ddb.get_item.return_value = {}
        self.ddb.query.return_value = {
            "Items": [_item(team_id="alpha", team_name="Team Alpha", organization_id="org-1", hunt_id="hunt-1")]
        }
        self.assertEqual(self.directory.find_team("org-1", "hunt-1", "Team Alpha"), "alpha")
        kwargs = self.ddb.query.call_args[1]
        self.assertEqual(kwargs["IndexName"], "organization-name-index")
        self.assertEqual(kwargs["ExpressionAttributeValues"][":name"], {"S": "Team Alpha"})

    def test_find_team_outside_org_is_not_found(self):
        self.ddb.get_item.return_value = {
            "Item": _item(team_id="alpha", team_name="Team Alpha", organization_id="org-2", hunt_id="hunt-1")
        }
        self.ddb.query.return_value = {"Items": []}
        self.assertIsNone(self.directory.find_team("org-1", "hunt-1", "alpha"))

    def test_ensure_team_creates_missing_row(self):
        self.ddb.get_item.return_value = {}
        team = self.directory.ensure_team(TeamCodeMapping("alpha", "Team Alpha", True, "org-1", "hunt-1"))
        self.assertEqual(team, TeamRecord("alpha", "Team Alpha", "org-1", "hunt-1"))
        kwargs = self.ddb.put_item.call_args[1]
        self.assertEqual(kwargs["ConditionExpression"], "attribute_not_exists(team_id)")

    def test_ensure_team_tolerates_concurrent_create(self):
        self.ddb.get_item.return_value = {}
        self.ddb.put_item.side_effect = _client_error("ConditionalCheckFailedException", operation="PutItem")
        team = self.directory.ensure_team(TeamCodeMapping("alpha", "Team Alpha", True))
        self.assertEqual(team.team_id, "alpha")

    def test_ensure_team_returns_existing_row(self):
        self.ddb.get_item.return_value = {"Item": _item(team_id="alpha", team_name="Alpha Renamed")}
        team = self.directory.ensure_team(TeamCodeMapping("alpha", "Team Alpha", True))
        self.assertEqual(team.team_name, "Alpha Renamed")
        self.ddb.put_item.assert_not_called()

    def test_describe_hunt_reads_names(self):
        self.ddb.get_item.side_effect = [
            {"Item": _item(name="Riverside Scouts")},
            {"Item": _item(name="Fall Bridge Hunt")},
        ]
        labels = self.directory.describe_hunt("org-1", "hunt-1")
        self.assertEqual(labels, HuntLabels("Riverside Scouts", "Fall Bridge Hunt"))
        org_call, hunt_call = self.ddb.get_item.call_args_list
        self.assertEqual(org_call[1]["TableName"], "organizations")
        self.assertEqual(hunt_call[1]["TableName"], "hunts")
        self.assertEqual(hunt_call[1]["Key"], {"organization_id": {"S": "org-1"}, "hunt_id": {"S": "hunt-1"}})

    def test_describe_hunt_falls_back_to_ids(self):
        self.ddb.get_item.return_value = {}
        self.assertEqual(self.directory.describe_hunt("org-1", "hunt-1"), HuntLabels("org-1", "hunt-1"))


class DynamoProgressStoreTests(unittest.TestCase):
    def setUp(self):
        self.ddb = MagicMock()
        self.store = DynamoProgressStore("hunt-progress", client=self.ddb)

    def test_upsert_progress(self):
        self.ddb.update_item.return_value = {
            "Attributes": _item(
                team_id="alpha",
                location_id="covered-bridge",
                photo_url="https://cdn/x",
                done=True,
                revealed_hints=0,
            )
        }
        record = self.store.upsert_progress(
            "alpha",
            "covered-bridge",
            {"photo_url": "https://cdn/x", "done": True, "completed_at": "2026-01-01T00:00:00Z"},
        )
        self.assertEqual(record["revealed_hints"], 0)
        self.assertTrue(record["done"])

        kwargs = self.ddb.update_item.call_args[1]
        self.assertEqual(kwargs["TableName"], "hunt-progress")
        self.assertEqual(kwargs["Key"], {"team_id": {"S": "alpha"}, "location_id": {"S": "covered-bridge"}})
        self.assertEqual(kwargs["ReturnValues"], "ALL_NEW")
        self.assertIn("revealed_hints = if_not_exists(revealed_hints, :zero)", kwargs["UpdateExpression"])
        self.assertIn("photo_url = :photo_url", kwargs["UpdateExpression"])
        self.assertNotIn("notes", kwargs["UpdateExpression"])
        self.assertEqual(kwargs["ExpressionAttributeValues"][":done"], {"BOOL": True})

    def test_upsert_timeout(self):
        self.ddb.update_item.side_effect = ReadTimeoutError(endpoint_url="https://ddb.example")
        with self.assertRaises(DependencyTimeoutError):
            self.store.upsert_progress("alpha", "loc", {"done": True})


if __name__ == "__main__":
    unittest.main()
