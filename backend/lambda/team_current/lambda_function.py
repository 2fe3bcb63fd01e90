"""team_current/lambda_function.py

Returns the team bound to the caller's lock token.

Routes (via API Gateway proxy):
    GET     /team-current     — header X-Team-Lock: <lock token>
    OPTIONS /team-current     — CORS preflight

Responses:
    200  {"teamId", "teamName", "expiresAt", "remainingTtlSeconds"}
    401  INVALID_TOKEN        missing, malformed, or forged token
    419  TEAM_LOCK_EXPIRED    genuine token past its expiry
    500  STORAGE_ERROR        team row unavailable
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from hunt_shared.config import logger
from hunt_shared.errors import HuntError, InvalidTokenError, LockExpiredError, StorageError
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
from hunt_shared.serialization import _iso_from_epoch
from hunt_shared.storage import DynamoTeamDirectory, TeamDirectory

_team_directory: Optional[TeamDirectory] = None
_token_service: Optional[LockTokenService] = None


def _get_team_directory() -> TeamDirectory:
    global _team_directory
    if _team_directory is None:
        _team_directory = DynamoTeamDirectory()
    return _team_directory


def _get_token_service() -> LockTokenService:
    global _token_service
    if _token_service is None:
        _token_service = LockTokenService()
    return _token_service


def _current_team(event: Dict[str, Any]) -> Dict[str, Any]:
    token = _header(event, "x-team-lock").strip()
    if not token:
        raise InvalidTokenError()

    tokens = _get_token_service()
    claims = tokens.verify_lock_token(token, allow_expired=True)
    if claims is None:
        raise InvalidTokenError()
    if tokens.is_token_expired(claims.expires_at):
        raise LockExpiredError()

    try:
        team = _get_team_directory().get_team(claims.team_id)
    except (HuntError, BotoCoreError, ClientError) as exc:
        logger.error("[team-current] team lookup failed for %s: %s", claims.team_id, exc)
        raise StorageError("Team lookup failed. Please try again.") from exc
    if team is None:
        raise StorageError("Team data not found")

    return {
        "teamId": team.team_id,
        "teamName": team.team_name,
        "expiresAt": _iso_from_epoch(claims.expires_at),
        "remainingTtlSeconds": max(0, claims.expires_at - int(time.time())),
    }


def lambda_handler(event: Dict, context: Any) -> Dict:
    method, _path = _path_method(event)

    if method == "OPTIONS":
        return {"statusCode": 200, "headers": _cors_headers(), "body": ""}
    if method != "GET":
        return _error(405, f"Method {method} not allowed.")

    request_id = _request_id(event)
    try:
        payload = _current_team(event)
    except HuntError as exc:
        return _error_from_exception(exc, request_id)
    except Exception as exc:
        logger.exception("[team-current] unexpected error: %s", exc)
        return _error_from_exception(StorageError("Team lookup failed. Please try again."), request_id)

    return _response(200, payload, headers={"X-Request-ID": request_id})
