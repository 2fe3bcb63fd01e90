"""hunt_shared.upload_saga — Upload -> verify -> persist, with compensation.

One ``UploadOrchestrator.run`` call drives one request through:

    RECEIVED -> UPLOADING -> UPLOADED -> VERIFYING -> VERIFIED -> PERSISTING -> PERSISTED
                                                                 PERSISTING -> COMPENSATING -> COMPENSATED | FAILED

Any state before PERSISTING may also end in FAILED (validation, open breaker,
exhausted retries). A success result is only returned after the progress
upsert succeeded. If the database breaker is open or the progress write fails
after the photo was stored, the photo is an orphan until compensation deletes
it; when compensation is skipped (open breaker) or fails, the orphan stays
and is logged as ``orphaned_asset``.
"""

from __future__ import annotations

import enum
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from hunt_shared import config
from hunt_shared.circuit_breaker import CircuitBreakerRegistry
from hunt_shared.config import DEPENDENCY_DATABASE, DEPENDENCY_STORAGE, logger
from hunt_shared.errors import (
    DependencyTimeoutError,
    HuntError,
    NotFound,
    PersistenceErrorAfterCompensation,
    StorageError,
    TransientDependencyError,
    ValidationError,
)
from hunt_shared.idempotency import resolve_idempotency_key
from hunt_shared.observability import _emit_structured_observability
from hunt_shared.retry import execute_with_retry
from hunt_shared.serialization import _iso_from_epoch
from hunt_shared.storage import AssetStore, HuntLabels, ProgressStore, StoredAsset, TeamDirectory

__all__ = [
    "SagaState",
    "UploadOrchestrator",
    "UploadRequest",
    "UploadResult",
    "slugify",
]

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


class SagaState(str, enum.Enum):
    RECEIVED = "RECEIVED"
    UPLOADING = "UPLOADING"
    UPLOADED = "UPLOADED"
    VERIFYING = "VERIFYING"
    VERIFIED = "VERIFIED"
    PERSISTING = "PERSISTING"
    PERSISTED = "PERSISTED"
    COMPENSATING = "COMPENSATING"
    COMPENSATED = "COMPENSATED"
    FAILED = "FAILED"


_TRANSITIONS = {
    SagaState.RECEIVED: {SagaState.UPLOADING, SagaState.FAILED},
    SagaState.UPLOADING: {SagaState.UPLOADED, SagaState.FAILED},
    SagaState.UPLOADED: {SagaState.VERIFYING},
    SagaState.VERIFYING: {SagaState.VERIFIED, SagaState.FAILED},
    SagaState.VERIFIED: {SagaState.PERSISTING, SagaState.FAILED},
    SagaState.PERSISTING: {SagaState.PERSISTED, SagaState.COMPENSATING},
    SagaState.PERSISTED: set(),
    SagaState.COMPENSATING: {SagaState.COMPENSATED, SagaState.FAILED},
    SagaState.COMPENSATED: set(),
    SagaState.FAILED: set(),
}


def slugify(title: str) -> str:
    slug = str(title or "").lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip().strip("-")


@dataclass
class UploadRequest:
    photo: bytes
    location_title: str
    session_id: str
    team_id: str
    org_id: str
    hunt_id: str
    team_name: str = ""
    location_name: str = ""
    event_name: str = ""
    idempotency_key: Optional[str] = None
    location_id: Optional[str] = None
    content_type: str = "application/octet-stream"

    def validate(self) -> None:
        if not self.photo:
            raise ValidationError("No photo data provided", field="photo")
        missing = [
            name
            for name, value in (
                ("locationTitle", self.location_title),
                ("sessionId", self.session_id),
                ("teamId", self.team_id),
                ("orgId", self.org_id),
                ("huntId", self.hunt_id),
            )
            if not str(value or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)
        if not _SESSION_ID_RE.match(self.session_id):
            raise ValidationError(
                "'sessionId' must be 1-128 characters of letters, digits, '.', '_' or '-'",
                field="sessionId",
            )
        if not slugify(self.location_title):
            raise ValidationError("'locationTitle' must contain letters or digits", field="locationTitle")


@dataclass
class UploadResult:
    photo_url: str
    public_id: str
    location_slug: str
    location_id: str
    title: str
    uploaded_at: str
    idempotency_key: str
    progress: Dict[str, Any]
    state_history: List[Dict[str, Any]] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {
            "photoUrl": self.photo_url,
            "publicId": self.public_id,
            "locationSlug": self.location_slug,
            "locationId": self.location_id,
            "title": self.title,
            "uploadedAt": self.uploaded_at,
            "idempotencyKey": self.idempotency_key,
            "progress": self.progress,
        }


class _AssetNotVisible(TransientDependencyError):
    """The object store has not confirmed the uploaded object yet."""


class _SagaRun:
    """Per-request state and transition history."""

    def __init__(self, request_id: str, clock: Callable[[], float]) -> None:
        self.request_id = request_id
        self.state = SagaState.RECEIVED
        self.history: List[Dict[str, Any]] = []
        self.public_id = ""
        self._clock = clock

    def transition(self, next_state: SagaState, reason: str, **meta: Any) -> None:
        prev = self.state
        if next_state not in _TRANSITIONS[prev]:
            raise ValueError(f"Invalid saga transition {prev.value} -> {next_state.value}")
        entry: Dict[str, Any] = {
            "timestamp": _iso_from_epoch(self._clock()),
            "from": prev.value,
            "to": next_state.value,
            "reason": reason,
        }
        if meta:
            entry["meta"] = meta
        self.history.append(entry)
        self.state = next_state
        _emit_structured_observability(
            component="upload_saga",
            event="state_transition",
            request_id=self.request_id,
            error_code=str(meta.get("error_code") or ""),
            extra={
                "from_state": prev.value,
                "to_state": next_state.value,
                "reason": reason,
                "public_id": self.public_id,
            },
        )

    def fail(self, reason: str, exc: BaseException) -> None:
        if SagaState.FAILED in _TRANSITIONS[self.state]:
            self.transition(SagaState.FAILED, reason, error_code=getattr(exc, "code", type(exc).__name__))


class UploadOrchestrator:
    """Coordinates the photo store and the progress table for one upload.

    The breaker registry is injected; handlers keep one per container so
    breaker state survives across invocations.
    """

    def __init__(
        self,
        asset_store: AssetStore,
        progress_store: ProgressStore,
        team_directory: TeamDirectory,
        breakers: CircuitBreakerRegistry,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        upload_delays_ms: Optional[Sequence[int]] = None,
        persist_delays_ms: Optional[Sequence[int]] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.asset_store = asset_store
        self.progress_store = progress_store
        self.team_directory = team_directory
        self.breakers = breakers
        self._clock = clock
        self._sleep = sleep
        self.upload_delays_ms = tuple(upload_delays_ms if upload_delays_ms is not None else config.UPLOAD_RETRY_DELAYS_MS)
        self.persist_delays_ms = tuple(
            persist_delays_ms if persist_delays_ms is not None else config.PERSIST_RETRY_DELAYS_MS
        )
        self.max_attempts = int(max_attempts if max_attempts is not None else config.MAX_RETRY_ATTEMPTS)

    def run(self, request: UploadRequest, request_id: str = "") -> UploadResult:
        """Execute the saga; raise a ``HuntError`` describing the single terminal failure."""
        saga = _SagaRun(request_id, self._clock)
        try:
            return self._execute(saga, request)
        except HuntError:
            raise
        except Exception as exc:
            logger.exception("[%s] unexpected orchestrated upload failure in state %s", request_id, saga.state.value)
            saga.fail("unexpected_error", exc)
            raise HuntError("An unexpected error occurred") from exc

    # ------------------------------------------------------------------

    def _execute(self, saga: _SagaRun, request: UploadRequest) -> UploadResult:
        try:
            request.validate()
        except ValidationError as exc:
            saga.fail("validation_failed", exc)
            raise

        try:
            idempotency_key = resolve_idempotency_key(
                request.idempotency_key,
                request.photo,
                request.session_id,
                request.location_title,
                request_id=saga.request_id,
            )
        except ValidationError as exc:
            saga.fail("validation_failed", exc)
            raise

        location_slug = slugify(request.location_title)
        location_id = (request.location_id or "").strip() or location_slug
        public_id = f"{location_slug}_{request.session_id}_{idempotency_key}"
        saga.public_id = public_id

        logger.info(
            "[INFO] [%s] starting orchestrated upload location=%s session=%s team=%s key=%s... size=%.2fKB",
            saga.request_id,
            location_id,
            request.session_id,
            request.team_id,
            idempotency_key[:8],
            len(request.photo) / 1024.0,
        )

        stored = self._upload(saga, request, public_id, location_id, idempotency_key)
        self._verify(saga, public_id)
        self.breakers.record_success(DEPENDENCY_STORAGE)

        uploaded_at = _iso_from_epoch(self._clock())
        progress = self._persist(saga, request, stored, location_id, uploaded_at)

        logger.info("[INFO] [%s] orchestrated upload completed public_id=%s", saga.request_id, public_id)
        return UploadResult(
            photo_url=stored.url,
            public_id=public_id,
            location_slug=location_slug,
            location_id=location_id,
            title=request.location_title,
            uploaded_at=uploaded_at,
            idempotency_key=idempotency_key,
            progress=progress,
            state_history=list(saga.history),
        )

    def _upload(
        self,
        saga: _SagaRun,
        request: UploadRequest,
        public_id: str,
        location_id: str,
        idempotency_key: str,
    ) -> StoredAsset:
        try:
            self.breakers.check(DEPENDENCY_STORAGE)
        except HuntError as exc:
            saga.fail("storage_circuit_open", exc)
            raise

        saga.transition(SagaState.UPLOADING, "upload_started")
        labels = self._hunt_labels(saga, request)
        metadata = {
            "idempotency-key": idempotency_key,
            "session-id": request.session_id,
            "location-id": location_id,
            "location-title": request.location_title,
            "location-name": request.location_name,
            "team-id": request.team_id,
            "team-name": request.team_name,
            "event-name": request.event_name,
            "org-id": request.org_id,
            "org-name": labels.organization_name,
            "hunt-id": request.hunt_id,
            "hunt-name": labels.hunt_name,
        }
        started = time.monotonic()
        try:
            stored = execute_with_retry(
                lambda: self.asset_store.upload(request.photo, public_id, metadata, request.content_type),
                delays_ms=self.upload_delays_ms,
                max_attempts=self.max_attempts,
                operation_name="photo upload",
                sleep=self._sleep,
            )
        except Exception as exc:
            self.breakers.record_failure(DEPENDENCY_STORAGE)
            failure = self._storage_failure("Photo upload failed", exc)
            saga.fail("upload_failed", failure)
            self._emit_step(saga, "upload_failed", DEPENDENCY_STORAGE, started, failure.code)
            if failure is exc:
                raise
            raise failure from exc

        self._emit_step(saga, "upload_succeeded", DEPENDENCY_STORAGE, started)
        saga.transition(SagaState.UPLOADED, "upload_succeeded")
        return stored

    def _hunt_labels(self, saga: _SagaRun, request: UploadRequest) -> HuntLabels:
        """Organisation and hunt names for the asset metadata; lookup failures fall back to the ids."""
        try:
            return self.team_directory.describe_hunt(request.org_id, request.hunt_id)
        except Exception as exc:
            logger.warning("[WARNING] [%s] hunt name lookup failed, using ids: %s", saga.request_id, exc)
            return HuntLabels(organization_name=request.org_id, hunt_name=request.hunt_id)

    def _verify(self, saga: _SagaRun, public_id: str) -> None:
        saga.transition(SagaState.VERIFYING, "verify_started")

        def _check_visible() -> bool:
            if not self.asset_store.exists(public_id):
                raise _AssetNotVisible(f"Uploaded photo {public_id} not visible yet", dependency=DEPENDENCY_STORAGE)
            return True

        started = time.monotonic()
        try:
            execute_with_retry(
                _check_visible,
                delays_ms=self.upload_delays_ms,
                max_attempts=self.max_attempts,
                operation_name="photo verify",
                sleep=self._sleep,
            )
        except Exception as exc:
            self.breakers.record_failure(DEPENDENCY_STORAGE)
            failure = self._storage_failure("Failed to verify uploaded photo", exc)
            saga.fail("verify_failed", failure)
            self._emit_step(saga, "verify_failed", DEPENDENCY_STORAGE, started, failure.code)
            if failure is exc:
                raise
            raise failure from exc

        saga.transition(SagaState.VERIFIED, "verify_succeeded")

    def _persist(
        self,
        saga: _SagaRun,
        request: UploadRequest,
        stored: StoredAsset,
        location_id: str,
        uploaded_at: Optional[str],
    ) -> Dict[str, Any]:
        try:
            self.breakers.check(DEPENDENCY_DATABASE)
        except HuntError as exc:
            saga.fail("database_circuit_open", exc)
            logger.warning(
                "[WARNING] [%s] database breaker open after upload; photo %s left without progress row",
                saga.request_id,
                stored.public_id,
            )
            _emit_structured_observability(
                component="upload_saga",
                event="orphaned_asset",
                request_id=saga.request_id,
                dependency=DEPENDENCY_DATABASE,
                error_code=exc.code,
                extra={"public_id": stored.public_id, "reason": "database_circuit_open"},
            )
            raise

        saga.transition(SagaState.PERSISTING, "persist_started")

        def _write_progress() -> Dict[str, Any]:
            team_row_id = self.team_directory.find_team(request.org_id, request.hunt_id, request.team_id)
            if not team_row_id:
                raise NotFound(f"Team not found: {request.team_id}", teamId=request.team_id)
            return self.progress_store.upsert_progress(
                team_row_id,
                location_id,
                {"photo_url": stored.url, "done": True, "completed_at": uploaded_at},
            )

        started = time.monotonic()
        try:
            progress = execute_with_retry(
                _write_progress,
                delays_ms=self.persist_delays_ms,
                max_attempts=self.max_attempts,
                operation_name="progress upsert",
                sleep=self._sleep,
            )
        except Exception as exc:
            if isinstance(exc, HuntError) and 400 <= exc.status_code < 500:
                # The database answered; the request was wrong.
                self.breakers.record_success(DEPENDENCY_DATABASE)
            else:
                self.breakers.record_failure(DEPENDENCY_DATABASE)
            self._emit_step(saga, "persist_failed", DEPENDENCY_DATABASE, started, getattr(exc, "code", type(exc).__name__))
            logger.error("[%s] progress write failed, compensating: %s", saga.request_id, exc)
            saga.transition(SagaState.COMPENSATING, "persist_failed", error_code=getattr(exc, "code", type(exc).__name__))
            compensation = self._compensate(saga, stored.public_id)
            raise PersistenceErrorAfterCompensation(exc, stored.public_id, compensation) from exc

        self.breakers.record_success(DEPENDENCY_DATABASE)
        self._emit_step(saga, "persist_succeeded", DEPENDENCY_DATABASE, started)
        saga.transition(SagaState.PERSISTED, "persist_succeeded")
        return progress

    def _compensate(self, saga: _SagaRun, public_id: str) -> Dict[str, Any]:
        """Best-effort delete of the uploaded photo; never raises."""
        logger.info("[INFO] [%s] compensation: deleting uploaded photo %s", saga.request_id, public_id)
        outcome: Dict[str, Any] = {"attempted": True, "succeeded": False, "error": None}
        try:
            self.asset_store.delete(public_id)
            outcome["succeeded"] = True
        except Exception as exc:
            outcome["error"] = str(exc)
            logger.warning("[WARNING] [%s] compensation failed for %s: %s", saga.request_id, public_id, exc)

        _emit_structured_observability(
            component="upload_saga",
            event="compensation_succeeded" if outcome["succeeded"] else "orphaned_asset",
            request_id=saga.request_id,
            dependency=DEPENDENCY_STORAGE,
            error_code="" if outcome["succeeded"] else "compensation_failed",
            extra={"public_id": public_id},
        )
        if outcome["succeeded"]:
            saga.transition(SagaState.COMPENSATED, "asset_deleted")
        else:
            saga.transition(SagaState.FAILED, "compensation_failed", error_code="compensation_failed")
        return outcome

    @staticmethod
    def _storage_failure(message: str, exc: BaseException) -> HuntError:
        if isinstance(exc, ValidationError):
            return exc
        if isinstance(exc, DependencyTimeoutError):
            return DependencyTimeoutError("Photo storage timed out", dependency=DEPENDENCY_STORAGE, cause=exc.cause)
        return StorageError(message, dependency=DEPENDENCY_STORAGE)

    @staticmethod
    def _emit_step(
        saga: _SagaRun,
        event: str,
        dependency: str,
        started: float,
        error_code: Optional[str] = None,
    ) -> None:
        _emit_structured_observability(
            component="upload_saga",
            event=event,
            request_id=saga.request_id,
            dependency=dependency,
            latency_ms=int((time.monotonic() - started) * 1000),
            error_code=error_code,
            extra={"public_id": saga.public_id},
        )
