"""hunt_shared.lock_tokens — Signed, time-bounded team lock tokens.

Token layout: ``base64url(claims_json) + "." + base64url(HMAC-SHA256(secret, claims_segment))``
with claims ``{"sub": "team-lock", "teamId": ..., "iat": ..., "exp": ...}``.
Any edit to the claims segment breaks the signature. Verification never
raises: forged, malformed and expired tokens all come back as ``None``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from hunt_shared import config
from hunt_shared.config import logger

__all__ = [
    "IssuedToken",
    "LockClaims",
    "LockTokenService",
    "TOKEN_SUBJECT",
]

TOKEN_SUBJECT = "team-lock"


@dataclass(frozen=True)
class LockClaims:
    team_id: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: int
    ttl_seconds: int


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class LockTokenService:
    def __init__(
        self,
        secret: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        secret = secret if secret is not None else config.TEAM_LOCK_SECRET
        if not secret:
            raise ValueError("TEAM_LOCK_SECRET must not be empty")
        if secret == config.DEV_LOCK_SECRET:
            logger.warning("TEAM_LOCK_SECRET not configured; signing lock tokens with the development secret")
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = int(ttl_seconds if ttl_seconds is not None else config.TEAM_LOCK_TTL_SECONDS)
        self._clock = clock

    def generate_lock_token(self, team_id: str) -> IssuedToken:
        if not team_id:
            raise ValueError("team_id is required to issue a lock token")
        now = int(self._clock())
        expires_at = now + self.ttl_seconds
        claims = {"sub": TOKEN_SUBJECT, "teamId": str(team_id), "iat": now, "exp": expires_at}
        payload = _b64encode(json.dumps(claims, sort_keys=True, separators=(",", ":")).encode("utf-8"))
        return IssuedToken(
            token=f"{payload}.{self._sign(payload)}",
            expires_at=expires_at,
            ttl_seconds=self.ttl_seconds,
        )

    def verify_lock_token(self, token: Optional[str], *, allow_expired: bool = False) -> Optional[LockClaims]:
        """Return the claims for a genuine token, else ``None``.

        ``allow_expired`` still requires a valid signature; callers use it to
        tell an expired session apart from a forged token.
        """
        if not token or not isinstance(token, str) or token.count(".") != 1:
            return None
        payload, signature = token.split(".", 1)
        if not hmac.compare_digest(self._sign(payload).encode("ascii"), signature.encode("utf-8")):
            logger.warning("[TeamLock] token signature mismatch")
            return None

        try:
            claims: Dict[str, Any] = json.loads(_b64decode(payload).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return None
        if not isinstance(claims, dict) or claims.get("sub") != TOKEN_SUBJECT:
            return None

        team_id = claims.get("teamId")
        issued_at = claims.get("iat")
        expires_at = claims.get("exp")
        if not isinstance(team_id, str) or not team_id:
            return None
        if not isinstance(issued_at, int) or not isinstance(expires_at, int):
            return None
        if not allow_expired and self.is_token_expired(expires_at):
            return None
        return LockClaims(team_id=team_id, issued_at=issued_at, expires_at=expires_at)

    def is_token_expired(self, expires_at: int, now: Optional[float] = None) -> bool:
        current = self._clock() if now is None else now
        return int(expires_at) <= int(current)

    def _sign(self, payload_segment: str) -> str:
        mac = hmac.new(self._secret, payload_segment.encode("ascii", errors="replace"), hashlib.sha256)
        return _b64encode(mac.digest())
