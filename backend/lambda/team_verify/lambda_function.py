"""team_verify/lambda_function.py

Lambda API that exchanges a team code for a team lock token.

Routes (via API Gateway proxy):
    POST    /team-verify      — body {"code": "...", "deviceHint": "..."}
    OPTIONS /team-verify      — CORS preflight

Flow:
    normalise code -> resolve team code mapping -> device lock conflict check
    -> mint lock token -> store device lock (last verification wins)

A device already bound to the same team may re-verify at any time; each
verification mints a fresh token and does not extend the existing lock
beyond the new token's expiry. A failed lock write is logged and does not
fail the verification.

Environment variables:
    TEAM_CODES_TABLE              default: team-codes
    TEAMS_TABLE                   default: teams
    DEVICE_LOCKS_TABLE            default: device-locks
    TEAM_LOCK_SECRET              HMAC secret for lock tokens
    TEAM_LOCK_TTL_SECONDS         default: 86400
    DEVICE_HINT_SEED              mixed into device fingerprints
    DEVICE_LOCK_CONFLICT_POLICY   lenient | strict (default: lenient)
    DEVICE_LOCK_ATOMIC_CLAIM      true | false (default: false)
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from hunt_shared import config
from hunt_shared.config import logger
from hunt_shared.device_locks import DeviceLockStore, generate_device_fingerprint
from hunt_shared.errors import AuthConflict, HuntError, StorageError, TeamCodeInvalidError, ValidationError
from hunt_shared.http_utils import (
    _client_ip,
    _cors_headers,
    _error,
    _error_from_exception,
    _header,
    _json_body,
    _path_method,
    _request_id,
    _response,
)
from hunt_shared.lock_tokens import LockTokenService
from hunt_shared.observability import log_lock_operation, log_verification_attempt
from hunt_shared.storage import DynamoTeamDirectory, TeamDirectory

# ---------------------------------------------------------------------------
# Collaborators (built once per container)
# ---------------------------------------------------------------------------

_team_directory: Optional[TeamDirectory] = None
_lock_store: Optional[DeviceLockStore] = None
_token_service: Optional[LockTokenService] = None


def _get_team_directory() -> TeamDirectory:
    global _team_directory
    if _team_directory is None:
        _team_directory = DynamoTeamDirectory()
    return _team_directory


def _get_lock_store() -> DeviceLockStore:
    global _lock_store
    if _lock_store is None:
        _lock_store = DeviceLockStore()
    return _lock_store


def _get_token_service() -> LockTokenService:
    global _token_service
    if _token_service is None:
        _token_service = LockTokenService()
    return _token_service


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def _parse_request(event: Dict[str, Any]) -> Dict[str, Any]:
    try:
        body = _json_body(event)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    code = body.get("code")
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("Team code is required", field="code")
    device_hint = body.get("deviceHint")
    if device_hint is not None and not isinstance(device_hint, str):
        raise ValidationError("'deviceHint' must be a string", field="deviceHint")
    return {"code": code.strip().upper(), "device_hint": (device_hint or "")[:256]}


def _verify(event: Dict[str, Any]) -> Dict[str, Any]:
    params = _parse_request(event)
    code = params["code"]
    fingerprint = generate_device_fingerprint(
        _header(event, "user-agent"),
        _client_ip(event),
        params["device_hint"],
    )

    directory = _get_team_directory()
    try:
        mapping = directory.get_team_code_mapping(code)
    except (HuntError, BotoCoreError, ClientError) as exc:
        logger.error("[team-verify] team code lookup failed: %s", exc)
        log_verification_attempt(code, "error", details="team code lookup failed")
        raise StorageError("Team lookup failed. Please try again.") from exc

    if mapping is None or not mapping.is_active:
        log_verification_attempt(code, "invalid_code")
        raise TeamCodeInvalidError()

    try:
        team = directory.ensure_team(mapping)
    except (HuntError, BotoCoreError, ClientError) as exc:
        logger.error("[team-verify] team row lookup failed for %s: %s", mapping.team_id, exc)
        log_verification_attempt(code, "error", mapping.team_id, details="team row lookup failed")
        raise StorageError("Team lookup failed. Please try again.") from exc

    lock_store = _get_lock_store()
    tokens = _get_token_service()

    if config.DEVICE_LOCK_ATOMIC_CLAIM:
        issued = tokens.generate_lock_token(team.team_id)
        conflict = lock_store.claim_lock(fingerprint, team.team_id, issued.expires_at)
    else:
        conflict = lock_store.check_conflict(fingerprint, team.team_id)
        issued = None

    if conflict is not None:
        log_verification_attempt(code, "conflict", conflict.team_id)
        raise AuthConflict(conflict.team_id, conflict.remaining_ttl_seconds)

    if issued is None:
        issued = tokens.generate_lock_token(team.team_id)
        if not lock_store.store_lock(fingerprint, team.team_id, issued.expires_at):
            logger.warning("[team-verify] device lock not stored for team %s; continuing", team.team_id)

    log_verification_attempt(code, "success", team.team_id)
    log_lock_operation("issued", team.team_id, device_fingerprint=fingerprint)

    return {
        "teamId": team.team_id,
        "teamName": team.team_name or mapping.team_name,
        "lockToken": issued.token,
        "ttlSeconds": issued.ttl_seconds,
    }


# ---------------------------------------------------------------------------
# Lambda entry point
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict, context: Any) -> Dict:
    method, _path = _path_method(event)

    if method == "OPTIONS":
        return {"statusCode": 200, "headers": _cors_headers(), "body": ""}
    if method != "POST":
        return _error(405, f"Method {method} not allowed.")

    request_id = _request_id(event)
    try:
        payload = _verify(event)
    except HuntError as exc:
        return _error_from_exception(exc, request_id)
    except Exception as exc:
        logger.exception("[team-verify] unexpected error: %s", exc)
        return _error_from_exception(StorageError("Team verification failed. Please try again."), request_id)

    return _response(200, payload, headers={"X-Request-ID": request_id})
