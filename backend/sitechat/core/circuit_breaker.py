"""
Circuit breaker for the completion provider.

After `failure_threshold` consecutive failed provider calls the breaker
opens and replies fall back immediately instead of waiting out another
timeout. Once `recovery_timeout` seconds have passed a single trial call is
let through: success closes the breaker, failure opens it again.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 60.0  # seconds


class CircuitBreaker:
    """Tracks provider health for one named dependency."""

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN:
            elapsed = time.monotonic() - (self._opened_at or 0.0)
            if elapsed >= self.config.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info("Circuit breaker half-open, allowing a trial call", name=self.name)
        return self._state

    def can_execute(self) -> bool:
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            logger.info("Circuit breaker closed, provider recovered", name=self.name)
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_in_flight = False

    def record_failure(self, reason: str) -> None:
        self._failures += 1

        if self._state is CircuitState.HALF_OPEN:
            self._open()
            logger.warning("Circuit breaker reopened, trial call failed", name=self.name, reason=reason)
        elif self._state is CircuitState.CLOSED and self._failures >= self.config.failure_threshold:
            self._open()
            logger.warning(
                "Circuit breaker opened",
                name=self.name,
                failures=self._failures,
                reason=reason,
            )

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = time.monotonic()
        self._trial_in_flight = False
