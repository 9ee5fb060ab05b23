"""Circuit breaker guarding calls to the shared counter store.

This module provides a thread-safe circuit breaker that tracks the health of
the store and lets the admission controller switch between its normal and
degraded operating modes. It follows the classic pattern with closed, open and
half-open states.
"""

import threading
import time
from enum import Enum
from typing import Callable, Optional

from quotaguard.core.logging import logger


class CircuitState(str, Enum):
    """States of the circuit breaker."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Circuit breaker for the shared counter store.

    State Transitions:
    - CLOSED: All requests are allowed. After `failure_threshold` consecutive
      failures that all happened within `failure_window` seconds, the state
      transitions to OPEN.
    - OPEN: All requests are refused for `reset_timeout` seconds. After the
      timeout, the next request transitions the breaker to HALF-OPEN and is
      let through as the probe.
    - HALF-OPEN: Exactly one probe is in flight at a time. A successful probe
      closes the circuit; a failed probe opens it again and restarts the timer.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        failure_window: float = 10.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initializes the CircuitBreaker.

        Args:
            failure_threshold (int): The number of consecutive failures required
                to open the circuit.
            reset_timeout (float): Seconds to wait in the OPEN state before
                letting a probe through.
            failure_window (float): Rolling window, in seconds, within which
                the consecutive failures must fall to trip the breaker.
            name (str): The name of the circuit breaker, used for logging.
            clock: Monotonic time source, injectable for tests.
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failure_window = failure_window
        self.name = name
        self._clock = clock

        self.failures = 0
        self._streak_started_at: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._state = CircuitState.CLOSED
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN circuit reports HALF-OPEN."""
        with self._lock:
            if self._state is CircuitState.OPEN and self._cooldown_elapsed():
                return CircuitState.HALF_OPEN
            return self._state

    @property
    def is_closed(self) -> bool:
        """Return True if the circuit is closed."""
        return self.state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        """Return True if calls are currently short-circuited."""
        return self.state is CircuitState.OPEN

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.reset_timeout

    def allow_request(self) -> bool:
        """Decide whether the next call may reach the store.

        In HALF-OPEN only the caller that obtains the probe slot gets True;
        concurrent callers keep using the fallback path until the probe
        reports back.
        """
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.OPEN:
                if not self._cooldown_elapsed():
                    return False
                self._state = CircuitState.HALF_OPEN
                logger.info("circuit_breaker_half_open", breaker=self.name)
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record_success(self) -> None:
        """Record a successful store call, closing the circuit if half-open."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                logger.info("circuit_breaker_closed", breaker=self.name)
            self._state = CircuitState.CLOSED
            self._probe_in_flight = False
            self._opened_at = None
            self._streak_started_at = None
            self.failures = 0

    def record_failure(self) -> None:
        """Record a failed store call, opening the circuit when warranted."""
        with self._lock:
            now = self._clock()
            if self._state is CircuitState.HALF_OPEN:
                self._open(now)
                return
            if self._state is CircuitState.OPEN:
                return
            if self._streak_started_at is None or now - self._streak_started_at > self.failure_window:
                self._streak_started_at = now
                self.failures = 0
            self.failures += 1
            if self.failures >= self.failure_threshold:
                self._open(now)

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._probe_in_flight = False
        logger.warning(
            "circuit_breaker_opened",
            breaker=self.name,
            failures=self.failures,
        )

