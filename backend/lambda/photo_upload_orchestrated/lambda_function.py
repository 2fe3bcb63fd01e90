"""photo_upload_orchestrated/lambda_function.py

Stores a stop photo and records the stop as done, as one saga.

Routes (via API Gateway proxy):
    POST    /photo-upload-orchestrated   — multipart/form-data
    OPTIONS /photo-upload-orchestrated   — CORS preflight

Form fields:
    photo (file, required), locationTitle, sessionId, teamId, orgId, huntId (required);
    teamName, locationName, eventName, idempotencyKey, locationId (optional).
    teamId may be omitted when a valid X-Team-Lock header is sent.

Responses:
    200  {"photoUrl", "publicId", "locationSlug", "locationId", "title", "uploadedAt",
          "idempotencyKey", "progress", "requestId"}
    400  missing/invalid fields        413  payload too large
    404  team not found                500  upload or persistence failure
    503  circuit open (Retry-After)    504  dependency timeout

Breaker state lives in ``_BREAKERS`` for the lifetime of the container and is
not shared with other containers.

Environment variables:
    PHOTO_BUCKET            default: scavenger-hunt-photos
    PHOTO_UPLOAD_PREFIX     default: scavenger/entries
    PHOTO_PUBLIC_BASE_URL   default: virtual-hosted S3 URL
    HUNT_PROGRESS_TABLE     default: hunt-progress
    TEAMS_TABLE             default: teams
    MAX_UPLOAD_BYTES        default: 15728640
    CIRCUIT_<DEPENDENCY>_*  breaker overrides (see hunt_shared.config)
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from hunt_shared.circuit_breaker import CircuitBreakerRegistry
from hunt_shared.config import default_breaker_settings, logger
from hunt_shared.errors import HuntError, ValidationError
from hunt_shared.http_utils import (
    _cors_headers,
    _error,
    _error_from_exception,
    _header,
    _path_method,
    _request_id,
    _response,
)
from hunt_shared.lock_tokens import LockTokenService
from hunt_shared.multipart_form import MultipartForm, parse_multipart_event
from hunt_shared.storage import DynamoProgressStore, DynamoTeamDirectory, S3AssetStore
from hunt_shared.upload_saga import UploadOrchestrator, UploadRequest

_BREAKERS = CircuitBreakerRegistry(default_breaker_settings())

_orchestrator: Optional[UploadOrchestrator] = None
_token_service: Optional[LockTokenService] = None


def _get_orchestrator() -> UploadOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = UploadOrchestrator(
            S3AssetStore(),
            DynamoProgressStore(),
            DynamoTeamDirectory(),
            _BREAKERS,
        )
    return _orchestrator


def _get_token_service() -> LockTokenService:
    global _token_service
    if _token_service is None:
        _token_service = LockTokenService()
    return _token_service


def _team_from_lock_header(event: Dict[str, Any]) -> str:
    token = _header(event, "x-team-lock").strip()
    if not token:
        return ""
    claims = _get_token_service().verify_lock_token(token)
    return claims.team_id if claims else ""


def _build_request(event: Dict[str, Any], form: MultipartForm) -> UploadRequest:
    photo = form.files.get("photo")
    if photo is None or not photo.data:
        raise ValidationError("No photo data provided", field="photo")

    team_id = form.value("teamId") or _team_from_lock_header(event)
    if not team_id:
        raise ValidationError("Team context required: send teamId or a valid X-Team-Lock header", field="teamId")

    return UploadRequest(
        photo=photo.data,
        location_title=form.value("locationTitle"),
        session_id=form.value("sessionId"),
        team_id=team_id,
        org_id=form.value("orgId"),
        hunt_id=form.value("huntId"),
        team_name=form.value("teamName"),
        location_name=form.value("locationName"),
        event_name=form.value("eventName"),
        idempotency_key=form.value("idempotencyKey") or None,
        location_id=form.value("locationId") or None,
        content_type=photo.content_type,
    )


def _handle_upload(event: Dict[str, Any], request_id: str) -> Dict[str, Any]:
    form = parse_multipart_event(event)
    upload = _build_request(event, form)
    result = _get_orchestrator().run(upload, request_id)
    return {**result.to_response(), "requestId": request_id}


def lambda_handler(event: Dict, context: Any) -> Dict:
    method, _path = _path_method(event)

    if method == "OPTIONS":
        return {"statusCode": 200, "headers": _cors_headers(), "body": ""}
    if method != "POST":
        return _error(405, f"Method {method} not allowed.")

    request_id = _request_id(event)
    try:
        payload = _handle_upload(event, request_id)
    except HuntError as exc:
        logger.warning("[%s] orchestrated upload failed: %s %s", request_id, exc.code, exc.message)
        return _error_from_exception(exc, request_id)
    except Exception as exc:
        logger.exception("[%s] orchestrated upload error: %s", request_id, exc)
        return _error_from_exception(HuntError("An unexpected error occurred"), request_id)

    return _response(200, payload, headers={"X-Request-ID": request_id})
