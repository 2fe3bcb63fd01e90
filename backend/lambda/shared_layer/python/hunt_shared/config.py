"""hunt_shared.config — Environment variables, constants, logging.

Every tunable is read once at import time. Handlers and tests may override
module attributes after import; classes that need them take explicit
constructor arguments defaulting to these values.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, Tuple

__all__ = [
    "CORS_ORIGIN",
    "DEFAULT_DEPENDENCIES",
    "DEPENDENCY_DATABASE",
    "DEPENDENCY_STORAGE",
    "DEVICE_HINT_SEED",
    "DEV_LOCK_SECRET",
    "DEVICE_LOCKS_TABLE",
    "DEVICE_LOCK_ATOMIC_CLAIM",
    "DEVICE_LOCK_CONFLICT_POLICY",
    "DYNAMODB_REGION",
    "HUNTS_TABLE",
    "HUNT_PROGRESS_TABLE",
    "MAX_RETRY_ATTEMPTS",
    "MAX_UPLOAD_BYTES",
    "ORGANIZATIONS_TABLE",
    "PERSIST_RETRY_DELAYS_MS",
    "PHOTO_BUCKET",
    "PHOTO_PUBLIC_BASE_URL",
    "PHOTO_UPLOAD_PREFIX",
    "S3_REGION",
    "TEAMS_GSI_NAME",
    "TEAMS_TABLE",
    "TEAM_CODES_TABLE",
    "TEAM_LOCK_SECRET",
    "TEAM_LOCK_TTL_SECONDS",
    "UPLOAD_RETRY_DELAYS_MS",
    "BreakerSettings",
    "breaker_settings_for",
    "default_breaker_settings",
    "logger",
]


def _parse_delays(raw: str, fallback: Tuple[int, ...]) -> Tuple[int, ...]:
    delays = tuple(int(part.strip()) for part in str(raw or "").split(",") if part.strip())
    return delays or fallback


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DYNAMODB_REGION = os.environ.get("DYNAMODB_REGION", "us-west-2")
S3_REGION = os.environ.get("S3_REGION", DYNAMODB_REGION)
CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")

DEVICE_LOCKS_TABLE = os.environ.get("DEVICE_LOCKS_TABLE", "device-locks")
TEAM_CODES_TABLE = os.environ.get("TEAM_CODES_TABLE", "team-codes")
TEAMS_TABLE = os.environ.get("TEAMS_TABLE", "teams")
TEAMS_GSI_NAME = os.environ.get("TEAMS_GSI_NAME", "organization-name-index")
HUNT_PROGRESS_TABLE = os.environ.get("HUNT_PROGRESS_TABLE", "hunt-progress")
ORGANIZATIONS_TABLE = os.environ.get("ORGANIZATIONS_TABLE", "organizations")
HUNTS_TABLE = os.environ.get("HUNTS_TABLE", "hunts")

PHOTO_BUCKET = os.environ.get("PHOTO_BUCKET", "scavenger-hunt-photos")
PHOTO_UPLOAD_PREFIX = os.environ.get("PHOTO_UPLOAD_PREFIX", "scavenger/entries")
PHOTO_PUBLIC_BASE_URL = os.environ.get("PHOTO_PUBLIC_BASE_URL", "")
MAX_UPLOAD_BYTES = int(os.environ.get("MAX_UPLOAD_BYTES", str(15 * 1024 * 1024)))

DEV_LOCK_SECRET = "default-dev-secret"
TEAM_LOCK_SECRET = os.environ.get("TEAM_LOCK_SECRET", DEV_LOCK_SECRET)
TEAM_LOCK_TTL_SECONDS = int(os.environ.get("TEAM_LOCK_TTL_SECONDS", "86400"))
DEVICE_HINT_SEED = os.environ.get("DEVICE_HINT_SEED", "default-seed")

# lenient: a lock-store error during the conflict check lets the request through.
# strict: the same error fails the verification with STORAGE_ERROR.
DEVICE_LOCK_CONFLICT_POLICY = os.environ.get("DEVICE_LOCK_CONFLICT_POLICY", "lenient").strip().lower()
DEVICE_LOCK_ATOMIC_CLAIM = os.environ.get("DEVICE_LOCK_ATOMIC_CLAIM", "false").lower() == "true"

MAX_RETRY_ATTEMPTS = int(os.environ.get("MAX_RETRY_ATTEMPTS", "3"))
UPLOAD_RETRY_DELAYS_MS = _parse_delays(os.environ.get("UPLOAD_RETRY_DELAYS_MS", ""), (500, 1000, 2000))
PERSIST_RETRY_DELAYS_MS = _parse_delays(os.environ.get("PERSIST_RETRY_DELAYS_MS", ""), (500, 1000, 2000))

# ---------------------------------------------------------------------------
# Circuit breaker settings (one entry per guarded dependency)
# ---------------------------------------------------------------------------

DEPENDENCY_STORAGE = "storage-provider"
DEPENDENCY_DATABASE = "database"
DEFAULT_DEPENDENCIES = (DEPENDENCY_STORAGE, DEPENDENCY_DATABASE)


@dataclass(frozen=True)
class BreakerSettings:
    failure_threshold: int = 5
    open_timeout_ms: int = 30_000
    failure_window_ms: int = 60_000


def breaker_settings_for(dependency_name: str) -> BreakerSettings:
    """Read CIRCUIT_<NAME>_* overrides, e.g. CIRCUIT_STORAGE_PROVIDER_FAILURE_THRESHOLD."""
    prefix = "CIRCUIT_" + dependency_name.upper().replace("-", "_")
    defaults = BreakerSettings()
    return BreakerSettings(
        failure_threshold=int(os.environ.get(f"{prefix}_FAILURE_THRESHOLD", str(defaults.failure_threshold))),
        open_timeout_ms=int(os.environ.get(f"{prefix}_OPEN_TIMEOUT_MS", str(defaults.open_timeout_ms))),
        failure_window_ms=int(os.environ.get(f"{prefix}_FAILURE_WINDOW_MS", str(defaults.failure_window_ms))),
    )


def default_breaker_settings() -> Dict[str, BreakerSettings]:
    return {name: breaker_settings_for(name) for name in DEFAULT_DEPENDENCIES}


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)
