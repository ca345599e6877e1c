"""
Circuit breaker for the AI classification backend.

After a run of consecutive failures the AI path is skipped entirely and
messages go straight to the rule engine until the cooldown passes. This
keeps a dead backend from adding one timeout per message to a batch of
hundreds.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation, calls allowed
    OPEN = "open"            # Failing, calls skipped
    HALF_OPEN = "half_open"  # One trial call allowed


@dataclass
class CircuitStats:
    """State of one backend's circuit."""
    consecutive_failures: int = 0
    opened_at: float = 0.0
    state: CircuitState = CircuitState.CLOSED
    trial_in_flight: bool = False


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker keyed by backend name.

    Behavior:
    - CLOSED: calls pass through
    - OPEN: after failure_threshold consecutive failures, calls are refused
    - HALF_OPEN: after recovery_timeout, a single trial call is let through
      (concurrent callers are refused until it reports back);
      success closes the circuit, failure re-opens it
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._circuits: Dict[str, CircuitStats] = {}
        self._lock = threading.Lock()

    def _stats(self, backend: str) -> CircuitStats:
        return self._circuits.setdefault(backend, CircuitStats())

    def _advance(self, backend: str, stats: CircuitStats) -> CircuitState:
        """OPEN becomes HALF_OPEN once the cooldown has passed. Caller holds the lock."""
        if (
            stats.state == CircuitState.OPEN
            and self._clock() - stats.opened_at >= self.recovery_timeout
        ):
            stats.state = CircuitState.HALF_OPEN
            stats.trial_in_flight = False
            logger.info(f"Circuit HALF_OPEN for {backend} (testing recovery)")
        return stats.state

    def get_state(self, backend: str) -> CircuitState:
        with self._lock:
            return self._advance(backend, self._stats(backend))

    def allow_request(self, backend: str) -> bool:
        """
        CLOSED lets every call through, OPEN none. HALF_OPEN lets exactly
        one trial call through until its outcome is recorded.
        """
        with self._lock:
            stats = self._stats(backend)
            state = self._advance(backend, stats)
            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.HALF_OPEN and not stats.trial_in_flight:
                stats.trial_in_flight = True
                return True
            return False

    def record_success(self, backend: str) -> None:
        with self._lock:
            stats = self._stats(backend)
            stats.consecutive_failures = 0
            stats.trial_in_flight = False
            if stats.state != CircuitState.CLOSED:
                stats.state = CircuitState.CLOSED
                logger.info(f"Circuit CLOSED for {backend} (recovered)")

    def record_failure(self, backend: str) -> None:
        with self._lock:
            stats = self._stats(backend)
            stats.consecutive_failures += 1
            stats.trial_in_flight = False

            if stats.state == CircuitState.HALF_OPEN:
                stats.state = CircuitState.OPEN
                stats.opened_at = self._clock()
                logger.warning(f"Circuit OPEN for {backend} (recovery failed)")
            elif (
                stats.state == CircuitState.CLOSED
                and stats.consecutive_failures >= self.failure_threshold
            ):
                stats.state = CircuitState.OPEN
                stats.opened_at = self._clock()
                logger.warning(
                    f"Circuit OPEN for {backend} after "
                    f"{stats.consecutive_failures} consecutive failures"
                )
