"""Unit tests for photo_upload_orchestrated: multipart intake, saga outcomes, error mapping."""

from __future__ import annotations

import base64
import importlib.util
import json
import os
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, ReadTimeoutError

from hunt_shared import config
from hunt_shared.circuit_breaker import CircuitBreakerRegistry
from hunt_shared.config import DEPENDENCY_DATABASE, DEPENDENCY_STORAGE, BreakerSettings
from hunt_shared.errors import DependencyTimeoutError, TransientDependencyError
from hunt_shared.lock_tokens import LockTokenService
from hunt_shared.storage import DynamoProgressStore, HuntLabels, S3AssetStore, StoredAsset
from hunt_shared.upload_saga import UploadOrchestrator

_SPEC = importlib.util.spec_from_file_location(
    "photo_upload_orchestrated_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
photo_upload = importlib.util.module_from_spec(_SPEC)
assert _SPEC.loader is not None
_SPEC.loader.exec_module(photo_upload)

BOUNDARY = "----hunt-upload-boundary"
PHOTO = b"\xff\xd8\xff\xe0fake-jpeg-payload"


class FakeAssetStore:
    def __init__(self):
        self.objects = {}
        self.upload_error = None
        self.uploads = []
        self.deletes = []

    def upload(self, data, public_id, metadata, content_type="application/octet-stream"):
        self.uploads.append(public_id)
        if self.upload_error is not None:
            raise self.upload_error
        self.objects[public_id] = data
        return StoredAsset(public_id, f"https://cdn.test/entries/{public_id}")

    def exists(self, public_id):
        return public_id in self.objects

    def delete(self, public_id):
        self.deletes.append(public_id)
        self.objects.pop(public_id, None)


class FakeProgressStore:
    def __init__(self):
        self.rows = {}
        self.error = None

    def upsert_progress(self, team_row_id, location_id, fields):
        if self.error is not None:
            raise self.error
        row = self.rows.setdefault((team_row_id, location_id), {"revealed_hints": 0})
        row.update(fields)
        return dict(row)


class FakeTeamDirectory:
    def find_team(self, org_id, hunt_id, team_id_or_name):
        return "alpha" if team_id_or_name in ("alpha", "Team Alpha") else None

    def describe_hunt(self, org_id, hunt_id):
        return HuntLabels(organization_name=org_id, hunt_name=hunt_id)


@pytest.fixture
def env(monkeypatch):
    assets = FakeAssetStore()
    progress = FakeProgressStore()
    settings = BreakerSettings(failure_threshold=5, open_timeout_ms=30_000, failure_window_ms=60_000)
    breakers = CircuitBreakerRegistry({DEPENDENCY_STORAGE: settings, DEPENDENCY_DATABASE: settings})
    orchestrator = UploadOrchestrator(
        assets,
        progress,
        FakeTeamDirectory(),
        breakers,
        sleep=lambda _seconds: None,
        upload_delays_ms=(500, 1000, 2000),
        persist_delays_ms=(500, 1000, 2000),
        max_attempts=3,
    )
    tokens = LockTokenService("unit-test-secret", 86400)
    monkeypatch.setattr(photo_upload, "_orchestrator", orchestrator)
    monkeypatch.setattr(photo_upload, "_token_service", tokens)
    return SimpleNamespace(assets=assets, progress=progress, breakers=breakers, tokens=tokens)


def _form_fields(**overrides):
    fields = {
        "locationTitle": "Covered Bridge",
        "sessionId": "s1",
        "teamId": "alpha",
        "orgId": "org-1",
        "huntId": "hunt-1",
        "teamName": "Team Alpha",
    }
    fields.update(overrides)
    return {k: v for k, v in fields.items() if v is not None}


def _upload_event(fields=None, photo=PHOTO, headers=None, method="POST", content_type=None):
    chunks = []
    for name, value in (fields if fields is not None else _form_fields()).items():
        chunks.append(
            f'--{BOUNDARY}\r\nContent-Disposition: form-data; name="{name}"\r\n\r\n{value}\r\n'.encode("utf-8")
        )
    if photo is not None:
        chunks.append(
            (
                f'--{BOUNDARY}\r\nContent-Disposition: form-data; name="photo"; filename="bridge.jpg"\r\n'
                "Content-Type: image/jpeg\r\n\r\n"
            ).encode("utf-8")
            + photo
            + b"\r\n"
        )
    chunks.append(f"--{BOUNDARY}--\r\n".encode("utf-8"))
    return {
        "requestContext": {"http": {"method": method}},
        "rawPath": "/photo-upload-orchestrated",
        "headers": {
            "content-type": content_type or f"multipart/form-data; boundary={BOUNDARY}",
            "x-request-id": "req-upload-1",
            **(headers or {}),
        },
        "body": base64.b64encode(b"".join(chunks)).decode("ascii"),
        "isBase64Encoded": True,
    }


def _body(resp):
    return json.loads(resp["body"])


def test_successful_upload(env):
    resp = photo_upload.lambda_handler(_upload_event(), None)

    assert resp["statusCode"] == 200
    assert resp["headers"]["X-Request-ID"] == "req-upload-1"
    payload = _body(resp)
    assert payload["requestId"] == "req-upload-1"
    assert payload["locationSlug"] == "covered-bridge"
    assert payload["locationId"] == "covered-bridge"
    assert payload["title"] == "Covered Bridge"
    assert payload["publicId"] == f"covered-bridge_s1_{payload['idempotencyKey']}"
    assert payload["photoUrl"].endswith(payload["publicId"])
    assert payload["progress"]["done"] is True
    assert env.progress.rows[("alpha", "covered-bridge")]["photo_url"] == payload["photoUrl"]


def test_retried_request_reuses_public_id(env):
    first = _body(photo_upload.lambda_handler(_upload_event(), None))
    second = _body(photo_upload.lambda_handler(_upload_event(), None))

    assert first["publicId"] == second["publicId"]
    assert len(env.assets.objects) == 1
    assert list(env.progress.rows) == [("alpha", "covered-bridge")]


def test_team_from_lock_header(env):
    token = env.tokens.generate_lock_token("alpha").token
    event = _upload_event(fields=_form_fields(teamId=None), headers={"x-team-lock": token})

    resp = photo_upload.lambda_handler(event, None)

    assert resp["statusCode"] == 200


def test_missing_team_context_is_400(env):
    resp = photo_upload.lambda_handler(_upload_event(fields=_form_fields(teamId=None)), None)

    assert resp["statusCode"] == 400
    assert _body(resp)["field"] == "teamId"
    assert env.assets.uploads == []


def test_missing_photo_is_400(env):
    resp = photo_upload.lambda_handler(_upload_event(photo=None), None)

    assert resp["statusCode"] == 400
    assert _body(resp)["field"] == "photo"


def test_missing_required_field_is_400(env):
    resp = photo_upload.lambda_handler(_upload_event(fields=_form_fields(orgId=None)), None)

    assert resp["statusCode"] == 400
    assert "orgId" in _body(resp)["error"]


def test_non_multipart_is_400(env):
    resp = photo_upload.lambda_handler(_upload_event(content_type="application/json"), None)

    assert resp["statusCode"] == 400
    assert "multipart/form-data" in _body(resp)["error"]


def test_oversized_body_is_413(env, monkeypatch):
    monkeypatch.setattr(config, "MAX_UPLOAD_BYTES", 64)

    resp = photo_upload.lambda_handler(_upload_event(), None)

    assert resp["statusCode"] == 413
    assert _body(resp)["error_envelope"]["code"] == "PAYLOAD_TOO_LARGE"
    assert env.assets.uploads == []


def test_open_breaker_is_503_with_retry_after(env):
    for _ in range(5):
        env.breakers.record_failure(DEPENDENCY_STORAGE)

    resp = photo_upload.lambda_handler(_upload_event(), None)

    assert resp["statusCode"] == 503
    assert resp["headers"]["Retry-After"] == "30"
    payload = _body(resp)
    assert payload["error_envelope"]["code"] == "CIRCUIT_OPEN"
    assert payload["retryAfterSeconds"] == 30


def test_persistence_failure_is_500_and_photo_removed(env):
    env.progress.error = TransientDependencyError("database error ThrottlingException", dependency="database")

    resp = photo_upload.lambda_handler(_upload_event(), None)

    assert resp["statusCode"] == 500
    payload = _body(resp)
    assert payload["error_envelope"]["code"] == "PERSISTENCE_FAILED"
    assert payload["requestId"] == "req-upload-1"
    assert len(env.assets.deletes) == 1
    assert env.assets.objects == {}


def test_unknown_team_is_404(env):
    resp = photo_upload.lambda_handler(_upload_event(fields=_form_fields(teamId="ghost")), None)

    assert resp["statusCode"] == 404
    assert len(env.assets.deletes) == 1


def test_upload_timeout_is_504(env):
    env.assets.upload_error = DependencyTimeoutError("storage-provider timed out", dependency="storage-provider")

    resp = photo_upload.lambda_handler(_upload_event(), None)

    assert resp["statusCode"] == 504
    assert _body(resp)["error_envelope"]["code"] == "TIMEOUT"


@pytest.fixture
def aws_env(monkeypatch):
    s3 = MagicMock()
    ddb = MagicMock()
    assets = S3AssetStore(
        bucket="hunt-photos-private",
        prefix="scavenger/entries/",
        public_base_url="https://cdn.example.com/",
        client=s3,
    )
    settings = BreakerSettings(failure_threshold=5, open_timeout_ms=30_000, failure_window_ms=60_000)
    orchestrator = UploadOrchestrator(
        assets,
        DynamoProgressStore("hunt-progress", client=ddb),
        FakeTeamDirectory(),
        CircuitBreakerRegistry({DEPENDENCY_STORAGE: settings, DEPENDENCY_DATABASE: settings}),
        sleep=lambda _seconds: None,
        upload_delays_ms=(0,),
        persist_delays_ms=(0,),
        max_attempts=2,
    )
    monkeypatch.setattr(photo_upload, "_orchestrator", orchestrator)
    monkeypatch.setattr(photo_upload, "_token_service", LockTokenService("unit-test-secret", 86400))
    return SimpleNamespace(s3=s3, ddb=ddb)


def test_s3_read_timeout_body_hides_endpoint(aws_env):
    endpoint = "https://hunt-photos-private.s3.us-west-2.amazonaws.com/scavenger/entries/x"
    aws_env.s3.put_object.side_effect = ReadTimeoutError(endpoint_url=endpoint)

    resp = photo_upload.lambda_handler(_upload_event(), None)

    assert resp["statusCode"] == 504
    payload = _body(resp)
    assert payload["error_envelope"]["code"] == "TIMEOUT"
    assert payload["error"] == "Photo storage timed out"
    assert "amazonaws.com" not in resp["body"]
    assert "hunt-photos-private" not in resp["body"]


def test_dynamo_server_error_body_hides_table_arn(aws_env):
    arn = "arn:aws:dynamodb:us-west-2:123456789012:table/hunt-progress"
    aws_env.ddb.update_item.side_effect = ClientError(
        {
            "Error": {"Code": "InternalServerError", "Message": f"Internal failure on {arn}"},
            "ResponseMetadata": {"HTTPStatusCode": 500},
        },
        "UpdateItem",
    )

    resp = photo_upload.lambda_handler(_upload_event(), None)

    assert resp["statusCode"] == 500
    payload = _body(resp)
    assert payload["error_envelope"]["code"] == "PERSISTENCE_FAILED"
    assert payload["error"] == "Failed to record progress"
    assert "arn:aws" not in resp["body"]
    assert "InternalServerError" not in resp["body"]
    assert aws_env.ddb.update_item.call_count == 2
    aws_env.s3.delete_object.assert_called_once()


def test_options_and_method_guard(env):
    assert photo_upload.lambda_handler(_upload_event(method="OPTIONS"), None)["statusCode"] == 200
    assert photo_upload.lambda_handler(_upload_event(method="GET"), None)["statusCode"] == 405
