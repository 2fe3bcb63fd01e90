"""hunt_shared.idempotency — Content-derived idempotency keys for photo uploads.

The key is a SHA-256 digest over ``file bytes + session id + context string``
truncated to 16 hex chars. It becomes part of the stored object's public id,
so a client retry of the same photo overwrites the same object.
"""

from __future__ import annotations

import hashlib
import re
import uuid
from typing import Optional

from hunt_shared.config import logger
from hunt_shared.errors import ValidationError
from hunt_shared.observability import _emit_structured_observability

__all__ = [
    "IDEMPOTENCY_KEY_LENGTH",
    "derive_idempotency_key",
    "resolve_idempotency_key",
]

IDEMPOTENCY_KEY_LENGTH = 16
_EXPLICIT_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def derive_idempotency_key(
    file_bytes: bytes,
    session_id: str,
    context: str,
    *,
    request_id: Optional[str] = None,
) -> str:
    try:
        digest = hashlib.sha256()
        digest.update(file_bytes)
        digest.update(session_id.encode("utf-8"))
        digest.update(context.encode("utf-8"))
        return digest.hexdigest()[:IDEMPOTENCY_KEY_LENGTH]
    except (TypeError, ValueError, AttributeError) as exc:
        # A random key keeps the upload moving but a client retry will now
        # create a second object instead of overwriting the first.
        fallback = uuid.uuid4().hex[:IDEMPOTENCY_KEY_LENGTH]
        logger.warning(
            "[WARNING] idempotency key digest failed, using random key (idempotency lost): %s",
            exc,
        )
        _emit_structured_observability(
            component="idempotency",
            event="idempotency_key_fallback",
            request_id=request_id,
            error_code="digest_failed",
            extra={"idempotency_guaranteed": False, "error": str(exc)},
        )
        return fallback


def resolve_idempotency_key(
    explicit: Optional[str],
    file_bytes: bytes,
    session_id: str,
    context: str,
    *,
    request_id: Optional[str] = None,
) -> str:
    """Use the caller's key when one is supplied, otherwise derive one."""
    if explicit is not None and explicit != "":
        key = explicit.strip()
        if not _EXPLICIT_KEY_RE.match(key):
            raise ValidationError(
                "'idempotencyKey' must be 1-128 characters of letters, digits, '_' or '-'",
                field="idempotencyKey",
            )
        return key
    return derive_idempotency_key(file_bytes, session_id, context, request_id=request_id)
