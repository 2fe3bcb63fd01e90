"""hunt_shared.observability — Structured log events and team-safe logging helpers."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional

from hunt_shared.config import logger
from hunt_shared.serialization import _now_z

__all__ = [
    "_emit_structured_observability",
    "hash_team_code",
    "log_lock_operation",
    "log_verification_attempt",
]


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    request_id: Optional[str] = None,
    dependency: Optional[str] = None,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "request_id": str(request_id or ""),
        "dependency": str(dependency or ""),
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))


def hash_team_code(code: str) -> str:
    """Short SHA-256 prefix so team codes never appear in logs."""
    return hashlib.sha256(str(code).encode("utf-8")).hexdigest()[:12]


def log_verification_attempt(code: str, outcome: str, team_id: Optional[str] = None, **details: Any) -> None:
    _emit_structured_observability(
        component="team_verify",
        event=f"verification_{outcome}",
        extra={
            "hashed_code_prefix": hash_team_code(code),
            "team_id": team_id or "unknown",
            **details,
        },
    )


def log_lock_operation(operation: str, team_id: Optional[str], **details: Any) -> None:
    _emit_structured_observability(
        component="team_lock",
        event=operation,
        extra={"team_id": team_id or "unknown", **details},
    )
