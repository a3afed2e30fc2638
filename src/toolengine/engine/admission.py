"""Admission control: rate limits, concurrency slots, circuit breakers.

The controller keeps one gate per tool (token bucket, concurrency
slots, circuit breaker) plus a global token bucket. A :class:`Lease`
represents a granted concurrency slot; releasing it frees the slot.
Rate tokens are never returned on release, they regenerate with time.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from toolengine.core.errors import (
    AdmissionTimeoutError,
    CircuitOpenError,
    RateLimitedError,
)
from toolengine.engine.ratelimit import CircuitBreaker, CircuitState, TokenBucket
from toolengine.tools.base import RateLimit

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from toolengine.tools.base import CircuitBreakerPolicy, ToolDefinition

logger = logging.getLogger(__name__)


class ConcurrencySlots:
    """Counting semaphore with a non-blocking ``try_take``.

    ``limit=None`` means unbounded. Waiters are served FIFO; a release
    hands the slot directly to the oldest waiter.
    """

    def __init__(self, limit: int | None) -> None:
        self.limit = limit
        self._in_use = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._lock = threading.Lock()

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    def try_take(self) -> bool:
        with self._lock:
            if self.limit is None or (
                self._in_use < self.limit and not self._waiters
            ):
                self._in_use += 1
                return True
            return False

    async def take(self, timeout: float | None = None) -> None:
        """Wait for a slot.

        Raises:
            TimeoutError: If no slot was granted within ``timeout``.
        """
        if self.try_take():
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        with self._lock:
            self._waiters.append(fut)
        try:
            await asyncio.wait_for(fut, timeout)
        except BaseException:
            with self._lock:
                if fut in self._waiters:
                    self._waiters.remove(fut)
            if fut.done() and not fut.cancelled():
                # Slot was handed over as we gave up; pass it on.
                self.release()
            raise

    def release(self) -> None:
        with self._lock:
            while self._waiters:
                fut = self._waiters.popleft()
                if not fut.done():
                    fut.set_result(None)
                    return
            self._in_use = max(0, self._in_use - 1)


@dataclass
class _Gate:
    bucket: TokenBucket
    slots: ConcurrencySlots
    breaker: CircuitBreaker
    policy: tuple[RateLimit, int | None, CircuitBreakerPolicy]


class Lease:
    """A granted concurrency slot for one tool.

    Release it exactly once, or use it as an async context manager.
    Further calls to :meth:`release` are no-ops. A lease admitted while
    the tool's breaker was half-open carries the breaker's single trial;
    if no success or failure gets recorded for it, hand the trial back
    with :meth:`release_trial`.
    """

    def __init__(
        self,
        tool_name: str,
        slots: ConcurrencySlots,
        trial: CircuitBreaker | None = None,
    ) -> None:
        self.tool_name = tool_name
        self._slots = slots
        self._trial = trial
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._slots.release()

    @property
    def holds_trial(self) -> bool:
        return self._trial is not None

    def release_trial(self) -> None:
        if self._trial is not None:
            self._trial.release_trial()
            self._trial = None

    def discard(self) -> None:
        """Give back everything for a lease that was never used."""
        self.release()
        self.release_trial()

    async def __aenter__(self) -> Lease:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class AdmissionController:
    """Gatekeeper consulted by the scheduler before every execution.

    Args:
        global_rate_limit: Bucket shared by all tools. ``None`` or a
            zero rate disables it.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        global_rate_limit: RateLimit | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        rl = global_rate_limit or RateLimit()
        self._clock = clock
        self._global = TokenBucket(rl.requests_per_second, rl.burst_size, clock)
        self._gates: dict[str, _Gate] = {}
        self._lock = threading.Lock()

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def _gate(self, tool: ToolDefinition) -> _Gate:
        """Get the gate for ``tool``, rebuilding it if its limits changed.

        Leases taken from a replaced gate keep releasing into it.
        """
        policy = (tool.rate_limit, tool.concurrency_limit, tool.circuit_breaker)
        with self._lock:
            gate = self._gates.get(tool.name)
            if gate is None or gate.policy != policy:
                gate = _Gate(
                    bucket=TokenBucket(
                        tool.rate_limit.requests_per_second,
                        tool.rate_limit.burst_size,
                        self._clock,
                    ),
                    slots=ConcurrencySlots(tool.concurrency_limit),
                    breaker=CircuitBreaker(
                        tool.circuit_breaker.failure_threshold,
                        tool.circuit_breaker.cooldown,
                        self._clock,
                    ),
                    policy=policy,
                )
                self._gates[tool.name] = gate
            return gate

    def _check_circuit(
        self, tool: ToolDefinition, gate: _Gate
    ) -> CircuitBreaker | None:
        """Pass the breaker, returning it if this call claimed the trial."""
        if not gate.breaker.allow():
            raise CircuitOpenError(tool.name, gate.breaker.retry_after())
        if gate.breaker.state == CircuitState.HALF_OPEN:
            return gate.breaker
        return None

    def _take_tokens(self, gate: _Gate) -> bool:
        """Take one global and one tool token, or neither."""
        if not self._global.try_consume():
            return False
        if not gate.bucket.try_consume():
            self._global.refund()
            return False
        return True

    # ── Non-blocking ─────────────────────────────────────────

    def try_acquire(self, tool: ToolDefinition) -> Lease:
        """Admit ``tool`` now or refuse without consuming anything.

        Raises:
            CircuitOpenError: If the tool's breaker is open.
            RateLimitedError: If a token or concurrency slot is missing.
        """
        gate = self._gate(tool)
        trial = self._check_circuit(tool, gate)
        if not self._take_tokens(gate):
            if trial is not None:
                trial.release_trial()
            raise RateLimitedError(tool.name)
        if not gate.slots.try_take():
            self._global.refund()
            gate.bucket.refund()
            if trial is not None:
                trial.release_trial()
            raise RateLimitedError(tool.name, "concurrency limit reached")
        return Lease(tool.name, gate.slots, trial)

    # ── Blocking ─────────────────────────────────────────────

    async def acquire_token(self, tool: ToolDefinition, deadline: float | None) -> None:
        """Wait for one rate token (global and per-tool).

        ``deadline`` is an absolute time on this controller's clock.

        Raises:
            AdmissionTimeoutError: As soon as the next token is known
                to arrive after ``deadline``; nothing is consumed.
        """
        gate = self._gate(tool)
        while True:
            wait = max(self._global.wait_time(), gate.bucket.wait_time())
            if wait <= 0:
                if self._take_tokens(gate):
                    return
                # Lost a race for the token; recompute.
                await asyncio.sleep(0)
                continue
            if deadline is not None and self._clock() + wait > deadline:
                raise AdmissionTimeoutError(tool.name, wait)
            logger.debug("Waiting %.3fs for a %s token", wait, tool.name)
            await asyncio.sleep(wait)

    async def acquire(self, tool: ToolDefinition, deadline: float | None) -> Lease:
        """Wait for admission of ``tool`` until ``deadline``.

        Raises:
            CircuitOpenError: If the tool's breaker is open.
            AdmissionTimeoutError: If a token or slot cannot be had
                before ``deadline``.
        """
        gate = self._gate(tool)
        trial = self._check_circuit(tool, gate)
        try:
            await self.acquire_token(tool, deadline)
        except BaseException:
            if trial is not None:
                trial.release_trial()
            raise
        try:
            remaining = None if deadline is None else deadline - self._clock()
            if remaining is not None and remaining <= 0:
                if not gate.slots.try_take():
                    raise AdmissionTimeoutError(tool.name)
            else:
                try:
                    await gate.slots.take(remaining)
                except TimeoutError:
                    raise AdmissionTimeoutError(tool.name) from None
        except BaseException:
            # Refused admission consumes nothing.
            self._global.refund()
            gate.bucket.refund()
            if trial is not None:
                trial.release_trial()
            raise
        return Lease(tool.name, gate.slots, trial)

    # ── Circuit feedback ─────────────────────────────────────

    def record_success(self, tool: ToolDefinition) -> None:
        self._gate(tool).breaker.record_success()

    def record_failure(self, tool: ToolDefinition) -> None:
        if self._gate(tool).breaker.record_failure():
            logger.warning(
                "Circuit opened for %s after %d consecutive failures",
                tool.name,
                tool.circuit_breaker.failure_threshold,
            )

    def in_flight(self, tool_name: str) -> int:
        """Number of leases currently held for ``tool_name``."""
        with self._lock:
            gate = self._gates.get(tool_name)
        return gate.slots.in_use if gate is not None else 0
