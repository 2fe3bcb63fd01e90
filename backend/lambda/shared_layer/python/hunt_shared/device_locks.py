"""hunt_shared.device_locks — One active team per device.

A device lock binds a device fingerprint to a team until ``expires_at``.
Expired locks are treated as absent and deleted lazily on the next read;
``cleanup_expired`` is only a maintenance sweep.

``check_conflict`` followed by ``store_lock`` is not atomic: two verifications
racing from the same device can both pass the check before either stores.
That race is accepted for human-paced team check-in. ``claim_lock`` is the
single conditional write (insert if absent, owned, or expired) for callers
that need the stronger guarantee.

Lock-store failures during the conflict check follow ``ConflictPolicy``:
LENIENT fails open (no conflict reported); STRICT surfaces ``StorageError``.
"""

from __future__ import annotations

import enum
import hashlib
import math
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Union

from botocore.exceptions import BotoCoreError, ClientError

from hunt_shared import config
from hunt_shared.aws_clients import _get_ddb
from hunt_shared.config import logger
from hunt_shared.errors import StorageError, TransientDependencyError
from hunt_shared.observability import _emit_structured_observability, log_lock_operation
from hunt_shared.serialization import _deserialize, _iso_from_epoch, _now_z, _serialize, _to_item

__all__ = [
    "ConflictPolicy",
    "DeviceLock",
    "DeviceLockStore",
    "DynamoDeviceLockTable",
    "LockConflict",
    "LockRecordStore",
    "generate_device_fingerprint",
]

# Errors a lock-record store may raise that the conflict policy applies to.
_LOCK_STORE_ERRORS = (BotoCoreError, ClientError, StorageError, TransientDependencyError)


class ConflictPolicy(str, enum.Enum):
    LENIENT = "lenient"
    STRICT = "strict"

    @classmethod
    def parse(cls, value: Union[str, "ConflictPolicy", None]) -> "ConflictPolicy":
        if isinstance(value, ConflictPolicy):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            logger.warning("Unknown DEVICE_LOCK_CONFLICT_POLICY %r; using lenient", value)
            return cls.LENIENT


@dataclass(frozen=True)
class DeviceLock:
    device_fingerprint: str
    team_id: str
    expires_at: int
    created_at: int


@dataclass(frozen=True)
class LockConflict:
    team_id: str
    remaining_ttl_seconds: int


def generate_device_fingerprint(
    user_agent: str,
    ip: str,
    device_hint: Optional[str] = None,
    seed: Optional[str] = None,
) -> str:
    seed = seed if seed is not None else config.DEVICE_HINT_SEED
    combined = f"{user_agent or ''}:{ip or 'unknown'}:{(device_hint or '').strip()}:{seed}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:16]


class LockRecordStore(Protocol):
    def get(self, device_fingerprint: str) -> Optional[DeviceLock]: ...

    def put(self, lock: DeviceLock) -> None: ...

    def delete(self, device_fingerprint: str) -> None: ...

    def claim(self, lock: DeviceLock, now: int) -> bool: ...

    def scan_expired(self, now: int) -> List[str]: ...


# ---------------------------------------------------------------------------
# DynamoDB-backed lock records
# ---------------------------------------------------------------------------


class DynamoDeviceLockTable:
    """``device-locks`` table keyed by ``device_fingerprint``.

    ``expires_epoch`` is also the table's TTL attribute, so DynamoDB removes
    stale rows eventually even if nothing reads them.
    """

    def __init__(self, table_name: Optional[str] = None, client=None) -> None:
        self.table_name = table_name or config.DEVICE_LOCKS_TABLE
        self._client = client

    @property
    def client(self):
        return self._client or _get_ddb()

    def get(self, device_fingerprint: str) -> Optional[DeviceLock]:
        resp = self.client.get_item(
            TableName=self.table_name,
            Key={"device_fingerprint": _serialize(device_fingerprint)},
            ConsistentRead=True,
        )
        raw = resp.get("Item")
        if not raw:
            return None
        item = _deserialize(raw)
        return DeviceLock(
            device_fingerprint=str(item["device_fingerprint"]),
            team_id=str(item.get("team_id") or ""),
            expires_at=int(item.get("expires_epoch") or 0),
            created_at=int(item.get("created_epoch") or 0),
        )

    def _item(self, lock: DeviceLock) -> dict:
        return _to_item(
            {
                "device_fingerprint": lock.device_fingerprint,
                "team_id": lock.team_id,
                "expires_epoch": int(lock.expires_at),
                "expires_at": _iso_from_epoch(lock.expires_at),
                "created_epoch": int(lock.created_at),
                "created_at": _iso_from_epoch(lock.created_at),
                "updated_at": _now_z(),
            }
        )

    def put(self, lock: DeviceLock) -> None:
        self.client.put_item(TableName=self.table_name, Item=self._item(lock))

    def delete(self, device_fingerprint: str) -> None:
        self.client.delete_item(
            TableName=self.table_name,
            Key={"device_fingerprint": _serialize(device_fingerprint)},
        )

    def claim(self, lock: DeviceLock, now: int) -> bool:
        try:
            self.client.put_item(
                TableName=self.table_name,
                Item=self._item(lock),
                ConditionExpression=(
                    "attribute_not_exists(device_fingerprint) OR team_id = :team OR expires_epoch <= :now"
                ),
                ExpressionAttributeValues={
                    ":team": _serialize(lock.team_id),
                    ":now": _serialize(int(now)),
                },
            )
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return False
            raise

    def scan_expired(self, now: int) -> List[str]:
        fingerprints: List[str] = []
        last_evaluated_key = None
        while True:
            kwargs = {
                "TableName": self.table_name,
                "FilterExpression": "expires_epoch <= :now",
                "ProjectionExpression": "device_fingerprint",
                "ExpressionAttributeValues": {":now": _serialize(int(now))},
            }
            if last_evaluated_key:
                kwargs["ExclusiveStartKey"] = last_evaluated_key
            resp = self.client.scan(**kwargs)
            for raw in resp.get("Items", []):
                fingerprint = _deserialize(raw).get("device_fingerprint")
                if fingerprint:
                    fingerprints.append(str(fingerprint))
            last_evaluated_key = resp.get("LastEvaluatedKey")
            if not last_evaluated_key:
                break
        return fingerprints


# ---------------------------------------------------------------------------
# Lock coordination
# ---------------------------------------------------------------------------


class DeviceLockStore:
    def __init__(
        self,
        records: Optional[LockRecordStore] = None,
        *,
        policy: Union[str, ConflictPolicy, None] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.records = records if records is not None else DynamoDeviceLockTable()
        self.policy = ConflictPolicy.parse(policy if policy is not None else config.DEVICE_LOCK_CONFLICT_POLICY)
        self._clock = clock

    def check_conflict(self, device_fingerprint: str, requested_team_id: str) -> Optional[LockConflict]:
        """Return the conflicting binding, or ``None`` when the team may proceed.

        Re-verifying the team the device is already bound to is never a conflict.
        """
        try:
            lock = self.records.get(device_fingerprint)
        except _LOCK_STORE_ERRORS as exc:
            return self._on_store_error("check_conflict", device_fingerprint, exc)

        if lock is None:
            return None

        now = self._clock()
        if lock.expires_at <= now:
            self._delete_quietly(device_fingerprint, reason="expired_on_read")
            return None

        if lock.team_id == requested_team_id:
            return None

        remaining = max(1, math.ceil(lock.expires_at - now))
        _emit_structured_observability(
            component="device_locks",
            event="lock_conflict",
            extra={
                "device_fingerprint": device_fingerprint,
                "bound_team_id": lock.team_id,
                "requested_team_id": requested_team_id,
                "remaining_ttl_seconds": remaining,
            },
        )
        return LockConflict(team_id=lock.team_id, remaining_ttl_seconds=remaining)

    def store_lock(self, device_fingerprint: str, team_id: str, expires_at: int) -> bool:
        """Upsert the binding; the latest verification always wins."""
        lock = DeviceLock(
            device_fingerprint=device_fingerprint,
            team_id=team_id,
            expires_at=int(expires_at),
            created_at=int(self._clock()),
        )
        try:
            self.records.put(lock)
        except _LOCK_STORE_ERRORS as exc:
            logger.error("Failed to store device lock for %s: %s", device_fingerprint, exc)
            return False
        log_lock_operation("stored", team_id, device_fingerprint=device_fingerprint, expires_at=int(expires_at))
        return True

    def claim_lock(self, device_fingerprint: str, team_id: str, expires_at: int) -> Optional[LockConflict]:
        """Bind the device in one conditional write; return the conflict if another team holds it."""
        now = int(self._clock())
        lock = DeviceLock(
            device_fingerprint=device_fingerprint,
            team_id=team_id,
            expires_at=int(expires_at),
            created_at=now,
        )
        try:
            if self.records.claim(lock, now):
                log_lock_operation("claimed", team_id, device_fingerprint=device_fingerprint)
                return None
        except _LOCK_STORE_ERRORS as exc:
            return self._on_store_error("claim_lock", device_fingerprint, exc)

        conflict = self.check_conflict(device_fingerprint, team_id)
        if conflict is None:
            # The holder expired or was released between the two calls.
            self.store_lock(device_fingerprint, team_id, expires_at)
        return conflict

    def delete_lock(self, device_fingerprint: str) -> bool:
        try:
            self.records.delete(device_fingerprint)
        except _LOCK_STORE_ERRORS as exc:
            logger.error("Failed to delete device lock for %s: %s", device_fingerprint, exc)
            return False
        return True

    def cleanup_expired(self) -> int:
        now = int(self._clock())
        try:
            expired = self.records.scan_expired(now)
        except _LOCK_STORE_ERRORS as exc:
            logger.error("Failed to scan expired device locks: %s", exc)
            return 0

        deleted = 0
        for fingerprint in expired:
            if self.delete_lock(fingerprint):
                deleted += 1
        if deleted:
            logger.info("[INFO] removed %d expired device locks", deleted)
        return deleted

    # ------------------------------------------------------------------

    def _delete_quietly(self, device_fingerprint: str, *, reason: str) -> None:
        if self.delete_lock(device_fingerprint):
            log_lock_operation("deleted", None, device_fingerprint=device_fingerprint, reason=reason)

    def _on_store_error(self, operation: str, device_fingerprint: str, exc: BaseException) -> Optional[LockConflict]:
        if self.policy == ConflictPolicy.STRICT:
            raise StorageError("Device lock lookup failed") from exc
        logger.warning(
            "Device lock %s failed for %s; failing open under lenient policy: %s",
            operation,
            device_fingerprint,
            exc,
        )
        _emit_structured_observability(
            component="device_locks",
            event="lock_check_failed_open",
            error_code=type(exc).__name__,
            extra={"device_fingerprint": device_fingerprint, "operation": operation},
        )
        return None
