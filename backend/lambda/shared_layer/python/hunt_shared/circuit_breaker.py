"""hunt_shared.circuit_breaker — Per-dependency circuit breakers.

State machine per dependency name:

    CLOSED    -> OPEN       failure_count >= failure_threshold inside the failure window
    OPEN      -> HALF_OPEN  on the first check after open_timeout has elapsed
    HALF_OPEN -> CLOSED     the single trial call succeeded (failure_count reset)
    HALF_OPEN -> OPEN       the trial call failed
    any       -> CLOSED     lazily, once failure_window has passed since the last failure

State lives in memory on the registry instance. A Lambda container keeps one
registry for its lifetime and concurrent requests in the container share it;
separate containers have independent breakers.
"""

from __future__ import annotations

import enum
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Mapping, Optional

from hunt_shared.config import BreakerSettings, breaker_settings_for, logger
from hunt_shared.errors import CircuitOpenError
from hunt_shared.observability import _emit_structured_observability

__all__ = [
    "BreakerState",
    "CircuitBreakerRegistry",
    "CircuitState",
]


class BreakerState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitState:
    failure_count: int = 0
    last_failure_at: Optional[float] = None
    state: BreakerState = BreakerState.CLOSED
    trial_in_flight: bool = False


class CircuitBreakerRegistry:
    """Breaker state for every dependency, created lazily on first use."""

    def __init__(
        self,
        settings: Optional[Mapping[str, BreakerSettings]] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings: Dict[str, BreakerSettings] = dict(settings or {})
        self._clock = clock
        self._states: Dict[str, CircuitState] = {}
        self._lock = threading.Lock()

    def settings_for(self, dependency: str) -> BreakerSettings:
        settings = self._settings.get(dependency)
        if settings is None:
            settings = breaker_settings_for(dependency)
            self._settings[dependency] = settings
        return settings

    def snapshot(self, dependency: str) -> CircuitState:
        """Copy of the current state, without applying lazy transitions."""
        with self._lock:
            return replace(self._state(dependency))

    def check(self, dependency: str) -> BreakerState:
        """Return the state a call may proceed under, or raise ``CircuitOpenError``."""
        settings = self.settings_for(dependency)
        with self._lock:
            breaker = self._state(dependency)
            now_ms = self._clock() * 1000.0

            if breaker.last_failure_at is not None:
                since_failure_ms = now_ms - breaker.last_failure_at * 1000.0
                if since_failure_ms > settings.failure_window_ms and (
                    breaker.failure_count or breaker.state != BreakerState.CLOSED
                ):
                    self._transition(dependency, breaker, BreakerState.CLOSED, "failure_window_elapsed")
                    breaker.failure_count = 0
                    breaker.trial_in_flight = False

            if breaker.state == BreakerState.OPEN:
                since_failure_ms = now_ms - (breaker.last_failure_at or 0) * 1000.0
                if since_failure_ms > settings.open_timeout_ms:
                    self._transition(dependency, breaker, BreakerState.HALF_OPEN, "open_timeout_elapsed")
                    breaker.trial_in_flight = True
                    return breaker.state
                raise CircuitOpenError(dependency, self._retry_after(settings, since_failure_ms))

            if breaker.state == BreakerState.HALF_OPEN:
                if breaker.trial_in_flight:
                    # Only the one trial call is allowed through while half-open.
                    raise CircuitOpenError(dependency, max(1, math.ceil(settings.open_timeout_ms / 1000.0)))
                breaker.trial_in_flight = True

            return breaker.state

    def record_success(self, dependency: str) -> None:
        with self._lock:
            breaker = self._state(dependency)
            if breaker.state == BreakerState.HALF_OPEN:
                self._transition(dependency, breaker, BreakerState.CLOSED, "trial_succeeded")
                breaker.failure_count = 0
            breaker.trial_in_flight = False

    def record_failure(self, dependency: str) -> None:
        settings = self.settings_for(dependency)
        with self._lock:
            breaker = self._state(dependency)
            now = self._clock()
            if (
                breaker.last_failure_at is not None
                and (now - breaker.last_failure_at) * 1000.0 > settings.failure_window_ms
                and breaker.state == BreakerState.CLOSED
            ):
                breaker.failure_count = 0
            breaker.failure_count += 1
            breaker.last_failure_at = now
            breaker.trial_in_flight = False

            if breaker.state == BreakerState.HALF_OPEN:
                self._transition(dependency, breaker, BreakerState.OPEN, "trial_failed")
            elif breaker.state == BreakerState.CLOSED and breaker.failure_count >= settings.failure_threshold:
                self._transition(dependency, breaker, BreakerState.OPEN, "failure_threshold_reached")

    def reset(self, dependency: Optional[str] = None) -> None:
        with self._lock:
            if dependency is None:
                self._states.clear()
            else:
                self._states.pop(dependency, None)

    # ------------------------------------------------------------------

    def _state(self, dependency: str) -> CircuitState:
        breaker = self._states.get(dependency)
        if breaker is None:
            breaker = CircuitState()
            self._states[dependency] = breaker
        return breaker

    @staticmethod
    def _retry_after(settings: BreakerSettings, since_failure_ms: float) -> int:
        remaining_ms = max(0.0, settings.open_timeout_ms - since_failure_ms)
        return max(1, math.ceil(remaining_ms / 1000.0))

    @staticmethod
    def _transition(dependency: str, breaker: CircuitState, next_state: BreakerState, reason: str) -> None:
        prev = breaker.state
        if prev == next_state:
            return
        breaker.state = next_state
        logger.info(
            "[CircuitBreaker] %s %s -> %s (%s, failures=%d)",
            dependency,
            prev.value,
            next_state.value,
            reason,
            breaker.failure_count,
        )
        _emit_structured_observability(
            component="circuit_breaker",
            event="state_transition",
            dependency=dependency,
            extra={
                "from_state": prev.value,
                "to_state": next_state.value,
                "reason": reason,
                "failure_count": breaker.failure_count,
            },
        )
