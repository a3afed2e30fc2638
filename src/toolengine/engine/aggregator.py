"""Result aggregation: normalize outcomes, cache, and collect batches.

Results are returned in the caller's submission order, regardless of
the order in which invocations finished.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from toolengine.core.errors import BatchTimeoutError, UnknownBatchError
from toolengine.engine.cache import fingerprint
from toolengine.tools.base import ToolResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from toolengine.engine.cache import ResultCache
    from toolengine.engine.machine import Invocation
    from toolengine.engine.sandbox import Outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BatchStatus:
    """Non-blocking view of a batch."""

    batch_id: str
    complete: bool
    partial: list[ToolResult]


@dataclass
class _BatchRecord:
    order: list[str]
    results: dict[str, ToolResult] = field(default_factory=dict)
    done: asyncio.Event = field(default_factory=asyncio.Event)

    def ordered(self) -> list[ToolResult]:
        return [self.results[i] for i in self.order if i in self.results]


class ResultAggregator:
    """Collects per-invocation results for each batch.

    Args:
        cache: Optional cache backend. Without one, nothing is cached.
    """

    def __init__(self, cache: ResultCache | None = None) -> None:
        self._cache = cache
        self._batches: dict[str, _BatchRecord] = {}

    @property
    def cache(self) -> ResultCache | None:
        return self._cache

    def open_batch(self, batch_id: str, invocation_ids: Sequence[str]) -> None:
        """Start tracking a batch in submission order."""
        record = _BatchRecord(order=list(invocation_ids))
        self._batches[batch_id] = record
        if not record.order:
            record.done.set()

    def _record(self, batch_id: str) -> _BatchRecord:
        record = self._batches.get(batch_id)
        if record is None:
            raise UnknownBatchError(batch_id)
        return record

    # ── Cache ────────────────────────────────────────────────

    def _cache_key(self, invocation: Invocation) -> str | None:
        if self._cache is None or not invocation.use_cache:
            return None
        if not invocation.tool.cacheable:
            return None
        return fingerprint(invocation.tool_name, invocation.parameters)

    def cached_result(self, invocation: Invocation) -> ToolResult | None:
        """Return a cached result for ``invocation``, if one is live."""
        key = self._cache_key(invocation)
        if key is None or self._cache is None:
            return None
        hit = self._cache.get(key)
        if hit is None:
            return None
        logger.debug("Cache hit for %s (%s)", invocation.id, invocation.tool_name)
        return dataclasses.replace(
            hit,
            invocation_id=invocation.id,
            attempts=0,
            duration_ms=0.0,
            cached=True,
        )

    # ── Completion ───────────────────────────────────────────

    def complete(self, invocation: Invocation, outcome: Outcome) -> ToolResult:
        """Turn a terminal outcome into a ``ToolResult`` and record it."""
        if outcome.ok:
            result = ToolResult.ok(
                invocation.id,
                invocation.tool_name,
                outcome.value,
                attempts=invocation.attempts,
                duration_ms=invocation.elapsed_ms(),
            )
            key = self._cache_key(invocation)
            if key is not None and self._cache is not None:
                self._cache.put(key, result, invocation.tool.cache_ttl)
        else:
            assert outcome.error_kind is not None
            result = ToolResult.failure(
                invocation.id,
                invocation.tool_name,
                outcome.error_kind,
                outcome.message or outcome.error_kind.value,
                attempts=invocation.attempts,
                duration_ms=invocation.elapsed_ms(),
            )
        self.record(invocation.batch_id, result)
        return result

    def record(self, batch_id: str, result: ToolResult) -> None:
        """Store a finished result and wake batch waiters if complete.

        Results for a forgotten batch are dropped.
        """
        record = self._batches.get(batch_id)
        if record is None:
            logger.debug(
                "Dropping %s: batch %s was forgotten", result.invocation_id, batch_id
            )
            return
        record.results[result.invocation_id] = result
        if len(record.results) == len(record.order):
            record.done.set()

    def result_for(self, batch_id: str, invocation_id: str) -> ToolResult | None:
        record = self._batches.get(batch_id)
        if record is None:
            return None
        return record.results.get(invocation_id)

    # ── Queries ──────────────────────────────────────────────

    async def get_batch_results(
        self, batch_id: str, timeout: float | None = None
    ) -> list[ToolResult]:
        """Wait for every invocation in the batch, then return results.

        Raises:
            UnknownBatchError: If the batch id is unknown.
            BatchTimeoutError: If ``timeout`` elapses first.
        """
        record = self._record(batch_id)
        try:
            await asyncio.wait_for(record.done.wait(), timeout)
        except TimeoutError:
            raise BatchTimeoutError(batch_id, timeout or 0.0) from None
        return record.ordered()

    def poll_results(self, batch_id: str) -> BatchStatus:
        """Return finished results so far, in submission order."""
        record = self._record(batch_id)
        return BatchStatus(
            batch_id=batch_id,
            complete=record.done.is_set(),
            partial=record.ordered(),
        )

    def forget(self, batch_id: str) -> None:
        """Drop a delivered batch."""
        self._batches.pop(batch_id, None)
