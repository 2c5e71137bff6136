"""Circuit breaker guarding calls to an unreliable backend.

Every transition is a pure function of the current state, the supplied time
and the event, so replaying the same (event, time) sequence always gives the
same state trace. Time defaults to the injected clock when not passed.
"""

import logging
import time
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

from bounce_protocol.constants import (
    CIRCUIT_BREAKER_COOLDOWN_SECONDS,
    CIRCUIT_BREAKER_FAILURE_THRESHOLD,
)

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitSnapshot(BaseModel):
    """Point-in-time view of a breaker."""

    state: CircuitState
    consecutive_failures: int
    opened_at: Optional[float] = None
    retry_in_seconds: float = 0.0


class CircuitBreaker:
    """Closed -> open after ``failure_threshold`` consecutive failures.

    While open every request is refused until ``cooldown_seconds`` have passed
    since opening; then exactly one trial request is admitted (half-open). A success
    closes the breaker, a failure while half-open reopens it at once.
    """

    def __init__(
        self,
        failure_threshold: int = CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        cooldown_seconds: float = CIRCUIT_BREAKER_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        name: str = "",
    ):
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_seconds = cooldown_seconds
        self.name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    @property
    def state(self) -> CircuitState:
        return self._state

    def allow_request(self, now: Optional[float] = None) -> bool:
        """Return True if a request may proceed."""
        now = self._now(now)
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            if now - self._opened_at < self.cooldown_seconds:
                return False
            self._state = CircuitState.HALF_OPEN
            logger.info(f"Circuit '{self.name}' half-open, admitting one trial request")
            return True
        # Half-open: the single trial request has already been handed out
        return False

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"Circuit '{self.name}' closed")
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None

    def record_failure(self, now: Optional[float] = None) -> None:
        now = self._now(now)
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or (
            self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold
        ):
            self._state = CircuitState.OPEN
            self._opened_at = now
            logger.warning(
                f"Circuit '{self.name}' opened after {self._failures} consecutive failures"
            )

    def snapshot(self, now: Optional[float] = None) -> CircuitSnapshot:
        now = self._now(now)
        retry_in = 0.0
        if self._state == CircuitState.OPEN:
            retry_in = max(0.0, self._opened_at + self.cooldown_seconds - now)
        return CircuitSnapshot(
            state=self._state,
            consecutive_failures=self._failures,
            opened_at=self._opened_at,
            retry_in_seconds=retry_in,
        )
