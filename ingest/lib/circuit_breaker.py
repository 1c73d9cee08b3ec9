"""Circuit breaker pattern implementation.

This module provides:
- CircuitState: Enum for circuit states (closed, open, half_open)
- CircuitBreaker: Per-operation breaker with threshold and timeout
- CircuitBreakerRegistry: Lazily creates one breaker per operation name
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ingest.lib.constants import (
    DEFAULT_BREAKER_TIMEOUT_SECONDS,
    DEFAULT_FAILURE_THRESHOLD,
)

logger = logging.getLogger(__name__)

__all__ = [
    "CircuitState",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "get_breaker_registry",
]

Clock = Callable[[], float]


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Circuit breaker with open/half-open/closed states.

    Opens after ``threshold`` consecutive failures. While open, ``allow()``
    returns False until ``timeout`` seconds have passed since the last
    failure; then exactly one half-open trial is admitted. The trial's
    outcome alone decides between CLOSED and a fresh OPEN period.
    """

    name: str
    threshold: int = DEFAULT_FAILURE_THRESHOLD
    timeout: float = DEFAULT_BREAKER_TIMEOUT_SECONDS
    clock: Clock = time.monotonic

    failure_count: int = field(default=0, init=False)
    success_count: int = field(default=0, init=False)
    last_failure_at: Optional[float] = field(default=None, init=False)
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _trial_in_flight: bool = field(default=False, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def allow(self) -> bool:
        """Check if a call is allowed through the circuit."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._remaining_locked() > 0:
                    return False
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info("Circuit breaker %s transitioning to HALF_OPEN", self.name)

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    return False
                self._trial_in_flight = True

            return True

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            prev = self._state
            self._state = CircuitState.CLOSED
            self.failure_count = 0
            self.success_count += 1
            self._trial_in_flight = False
        if prev != CircuitState.CLOSED:
            logger.info("Circuit breaker %s CLOSED", self.name)

    def record_failure(self) -> None:
        """Record a failed call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_at = self.clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._trial_in_flight = False
                logger.warning(
                    "Circuit breaker %s returning to OPEN after HALF_OPEN failure",
                    self.name,
                )
            elif self._state == CircuitState.CLOSED and self.failure_count >= self.threshold:
                self._state = CircuitState.OPEN
                logger.error(
                    "Circuit breaker %s OPEN after %d failures",
                    self.name,
                    self.failure_count,
                )

    def release_trial(self) -> None:
        """Give back a half-open trial slot that was never used."""
        with self._lock:
            self._trial_in_flight = False

    def retry_in(self) -> float:
        """Seconds until an open circuit admits its half-open trial."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return 0.0
            return self._remaining_locked()

    def _remaining_locked(self) -> float:
        if self.last_failure_at is None:
            return 0.0
        return max(0.0, self.timeout - (self.clock() - self.last_failure_at))

    @property
    def state(self) -> CircuitState:
        """Get the current circuit state."""
        return self._state

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and snapshots."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "threshold": self.threshold,
            "timeout": self.timeout,
        }


class CircuitBreakerRegistry:
    """Process-wide table of circuit breakers keyed by operation name."""

    def __init__(
        self,
        threshold: int = DEFAULT_FAILURE_THRESHOLD,
        timeout: float = DEFAULT_BREAKER_TIMEOUT_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.timeout = timeout
        self.clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, operation: str) -> CircuitBreaker:
        """Get or create the breaker for an operation."""
        with self._lock:
            breaker = self._breakers.get(operation)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=operation,
                    threshold=self.threshold,
                    timeout=self.timeout,
                    clock=self.clock,
                )
                self._breakers[operation] = breaker
            return breaker

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Return the state of every breaker created so far."""
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.to_dict() for b in breakers}

    def __contains__(self, operation: object) -> bool:
        return operation in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)


_registry: Optional[CircuitBreakerRegistry] = None


def get_breaker_registry() -> CircuitBreakerRegistry:
    """Return the singleton breaker registry."""
    global _registry
    if _registry is None:
        _registry = CircuitBreakerRegistry()
    return _registry
