"""hunt_shared.http_utils — HTTP response building, body parsing, header access.

Standard response envelope and error formatting used by all hunt Lambda
functions. Works with both API Gateway HTTP API (v2) and REST (v1) proxy events.
"""

from __future__ import annotations

import base64
import json
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from hunt_shared import config
from hunt_shared.errors import HuntError

__all__ = [
    "_client_ip",
    "_cors_headers",
    "_error",
    "_error_from_exception",
    "_header",
    "_json_body",
    "_path_method",
    "_raw_body",
    "_request_id",
    "_response",
]

# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def _cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": config.CORS_ORIGIN,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, X-Team-Lock, X-Request-Id",
        "Access-Control-Expose-Headers": "Retry-After, X-Request-ID",
    }


def _response(status_code: int, payload: Any, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    def _json_default(obj: Any) -> Any:
        if isinstance(obj, Decimal):
            if obj % 1 == 0:
                return int(obj)
            return float(obj)
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")

    return {
        "statusCode": status_code,
        "headers": {
            **_cors_headers(),
            "Content-Type": "application/json",
            "Cache-Control": "no-store",
            **(headers or {}),
        },
        "body": json.dumps(payload, default=_json_default),
    }


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    headers = extra.pop("headers", None)
    code = str(extra.pop("code", "") or "").strip().upper()
    if not code:
        if status_code == 400:
            code = "INVALID_REQUEST"
        elif status_code == 401:
            code = "PERMISSION_DENIED"
        elif status_code == 404:
            code = "NOT_FOUND"
        elif status_code == 405:
            code = "METHOD_NOT_ALLOWED"
        elif status_code == 409:
            code = "CONFLICT"
        else:
            code = "INTERNAL_ERROR"
    retryable = bool(extra.pop("retryable", status_code >= 500))
    details = {k: v for k, v in extra.items() if v is not None}
    body: Dict[str, Any] = {
        "success": False,
        "error": message,
        "error_envelope": {
            "code": code,
            "message": message,
            "retryable": retryable,
            "details": details,
        },
    }
    body.update(details)
    return _response(status_code, body, headers=headers)


def _error_from_exception(exc: HuntError, request_id: Optional[str] = None) -> Dict[str, Any]:
    headers = dict(exc.headers())
    if request_id:
        headers["X-Request-ID"] = request_id
    return _error(
        exc.status_code,
        exc.message,
        code=exc.code,
        retryable=exc.retryable,
        headers=headers,
        requestId=request_id,
        **exc.details,
    )


def _raw_body(event: Dict[str, Any]) -> bytes:
    raw = event.get("body")
    if raw in (None, ""):
        return b""
    if event.get("isBase64Encoded"):
        return base64.b64decode(raw)
    if isinstance(raw, bytes):
        return raw
    return str(raw).encode("utf-8")


def _json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    raw = _raw_body(event)
    if not raw:
        return {}

    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Invalid JSON body: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ValueError("JSON body must be an object")
    return parsed


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    http = (event.get("requestContext") or {}).get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "").upper()
    path = event.get("rawPath") or event.get("path") or http.get("path") or "/"
    return method, path


def _header(event: Dict[str, Any], name: str) -> str:
    """Case-insensitive header lookup; API Gateway v2 lowercases, v1 does not."""
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted and value is not None:
            return str(value)
    return ""


def _request_id(event: Dict[str, Any]) -> str:
    explicit = _header(event, "x-request-id").strip()
    if explicit:
        return explicit[:128]
    context_id = str((event.get("requestContext") or {}).get("requestId") or "").strip()
    if context_id:
        return context_id
    return f"req_{uuid.uuid4().hex[:16]}"


def _client_ip(event: Dict[str, Any]) -> str:
    forwarded = _header(event, "x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    http = (event.get("requestContext") or {}).get("http") or {}
    identity = (event.get("requestContext") or {}).get("identity") or {}
    return str(http.get("sourceIp") or identity.get("sourceIp") or "unknown")
