"""Token bucket and circuit breaker primitives.

Both take an injectable ``clock`` (defaults to ``time.monotonic``) so
tests can drive time explicitly. Each instance guards its own state
with its own lock.
"""

from __future__ import annotations

import enum
import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable


class TokenBucket:
    """Continuously refilling token bucket.

    Refills at ``rate`` tokens per second up to ``burst``. A rate of 0
    disables limiting: every request is granted.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate = rate
        self.burst = max(1, burst)
        self._clock = clock
        self._tokens = float(self.burst)
        self._updated = clock()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.rate > 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._updated = now

    @property
    def tokens(self) -> float:
        """Currently available tokens (after refill)."""
        if not self.enabled:
            return float("inf")
        with self._lock:
            self._refill()
            return self._tokens

    def wait_time(self) -> float:
        """Seconds until one token is available (0 if available now)."""
        if not self.enabled:
            return 0.0
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                return 0.0
            return (1 - self._tokens) / self.rate

    def try_consume(self) -> bool:
        """Take one token if available. Never blocks."""
        if not self.enabled:
            return True
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def refund(self) -> None:
        """Return one token taken by :meth:`try_consume`."""
        if not self.enabled:
            return
        with self._lock:
            self._tokens = min(self.burst, self._tokens + 1)


class CircuitState(enum.Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    Opens after ``threshold`` consecutive failures. Once ``cooldown``
    seconds have passed it lets a single trial through (half-open);
    the trial's success closes it, its failure opens it again. A
    threshold of 0 disables the breaker.
    """

    def __init__(
        self,
        threshold: int,
        cooldown: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self.cooldown
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
        return self._state

    def retry_after(self) -> float:
        """Seconds until the breaker will allow a trial."""
        with self._lock:
            if self._current_state() != CircuitState.OPEN:
                return 0.0
            return max(0.0, self.cooldown - (self._clock() - self._opened_at))

    def allow(self) -> bool:
        """Check (and claim, when half-open) permission to run."""
        if self.threshold <= 0:
            return True
        with self._lock:
            state = self._current_state()
            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def release_trial(self) -> None:
        """Give back a half-open trial that never ran."""
        with self._lock:
            self._trial_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = CircuitState.CLOSED
            self._trial_in_flight = False

    def record_failure(self) -> bool:
        """Record a failure. Returns True if this call opened the circuit."""
        if self.threshold <= 0:
            return False
        with self._lock:
            state = self._current_state()
            self._failures += 1
            self._trial_in_flight = False
            if state == CircuitState.HALF_OPEN or (
                state == CircuitState.CLOSED and self._failures >= self.threshold
            ):
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                return True
            return False
