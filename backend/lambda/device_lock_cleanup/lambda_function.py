"""device_lock_cleanup/lambda_function.py

Scheduled (EventBridge) sweep that deletes expired device locks.

Expired locks are already ignored and deleted lazily when read; this sweep
only keeps the table small between reads. DynamoDB TTL on ``expires_epoch``
eventually removes anything both of these miss.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

from hunt_shared.config import logger
from hunt_shared.device_locks import DeviceLockStore
from hunt_shared.observability import _emit_structured_observability

_lock_store: Optional[DeviceLockStore] = None


def _get_lock_store() -> DeviceLockStore:
    global _lock_store
    if _lock_store is None:
        _lock_store = DeviceLockStore()
    return _lock_store


def lambda_handler(event: Dict, context: Any) -> Dict:
    started = time.monotonic()
    deleted = _get_lock_store().cleanup_expired()
    latency_ms = int((time.monotonic() - started) * 1000)

    logger.info("[INFO] device lock cleanup finished: deleted=%d", deleted)
    _emit_structured_observability(
        component="device_lock_cleanup",
        event="cleanup_completed",
        request_id=str((event or {}).get("id") or ""),
        latency_ms=latency_ms,
        extra={"deleted": deleted},
    )
    return {"success": True, "deleted": deleted}
