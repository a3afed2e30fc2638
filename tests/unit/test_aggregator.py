"""Tests for result aggregation and the result cache."""

from __future__ import annotations

import asyncio

import pytest

from toolengine.core.errors import BatchTimeoutError, ErrorKind, UnknownBatchError
from toolengine.engine.aggregator import ResultAggregator
from toolengine.engine.cache import MemoryResultCache, fingerprint
from toolengine.engine.machine import Invocation, InvocationState
from toolengine.engine.sandbox import Outcome
from toolengine.tools.base import ToolResult

from tests.fixtures.tools import FakeClock, make_tool

# ── Helpers ──────────────────────────────────────────────────────


def _inv(inv_id: str, batch_id: str = "b-1", **tool_kwargs: object) -> Invocation:
    return Invocation(
        id=inv_id,
        batch_id=batch_id,
        tool=make_tool(**tool_kwargs),  # type: ignore[arg-type]
        parameters={"message": "hi"},
    )


def _ran(inv: Invocation) -> Invocation:
    inv.transition(InvocationState.ADMITTED)
    inv.transition(InvocationState.RUNNING)
    inv.transition(InvocationState.SUCCEEDED)
    inv.transition(InvocationState.COMPLETED)
    return inv


# ── fingerprint ──────────────────────────────────────────────────


class TestFingerprint:
    def test_key_order_irrelevant(self) -> None:
        assert fingerprint("t", {"a": 1, "b": 2}) == fingerprint("t", {"b": 2, "a": 1})

    def test_tool_name_matters(self) -> None:
        assert fingerprint("t1", {"a": 1}) != fingerprint("t2", {"a": 1})

    def test_values_matter(self) -> None:
        assert fingerprint("t", {"a": 1}) != fingerprint("t", {"a": "1"})

    def test_nested(self) -> None:
        assert fingerprint("t", {"a": {"y": 1, "x": 2}}) == fingerprint(
            "t", {"a": {"x": 2, "y": 1}}
        )


# ── MemoryResultCache ────────────────────────────────────────────


class TestMemoryResultCache:
    def test_put_get(self, clock: FakeClock) -> None:
        cache = MemoryResultCache(clock=clock)
        result = ToolResult.ok("i", "t", 1)
        cache.put("k", result, ttl=10)
        assert cache.get("k") is result

    def test_expiry(self, clock: FakeClock) -> None:
        cache = MemoryResultCache(clock=clock)
        cache.put("k", ToolResult.ok("i", "t", 1), ttl=10)
        clock.advance(10)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_zero_ttl_not_stored(self, clock: FakeClock) -> None:
        cache = MemoryResultCache(clock=clock)
        cache.put("k", ToolResult.ok("i", "t", 1), ttl=0)
        assert len(cache) == 0

    def test_lru_eviction(self, clock: FakeClock) -> None:
        cache = MemoryResultCache(max_entries=2, clock=clock)
        cache.put("a", ToolResult.ok("i", "t", "a"), ttl=10)
        cache.put("b", ToolResult.ok("i", "t", "b"), ttl=10)
        cache.get("a")
        cache.put("c", ToolResult.ok("i", "t", "c"), ttl=10)
        assert cache.get("b") is None
        assert cache.get("a") is not None
        assert cache.get("c") is not None

    def test_clear(self, clock: FakeClock) -> None:
        cache = MemoryResultCache(clock=clock)
        cache.put("a", ToolResult.ok("i", "t", 1), ttl=10)
        cache.clear()
        assert len(cache) == 0


# ── ResultAggregator ─────────────────────────────────────────────


class TestAggregator:
    async def test_results_in_submission_order(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b-1", ["x", "y", "z"])
        for inv_id in ("z", "x", "y"):
            agg.complete(_ran(_inv(inv_id)), Outcome.success(inv_id))
        results = await agg.get_batch_results("b-1", timeout=1)
        assert [r.invocation_id for r in results] == ["x", "y", "z"]

    async def test_failure_result(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b-1", ["x"])
        inv = _inv("x")
        inv.transition(InvocationState.COMPLETED)
        result = agg.complete(inv, Outcome.error(ErrorKind.DEPENDENCY_FAILED, "dep"))
        assert not result.success
        assert result.error_kind is ErrorKind.DEPENDENCY_FAILED
        assert result.attempts == 0

    async def test_poll_partial(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b-1", ["x", "y"])
        agg.complete(_ran(_inv("y")), Outcome.success(1))
        status = agg.poll_results("b-1")
        assert not status.complete
        assert [r.invocation_id for r in status.partial] == ["y"]

    async def test_timeout(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b-1", ["x"])
        with pytest.raises(BatchTimeoutError):
            await agg.get_batch_results("b-1", timeout=0.01)

    async def test_unknown_batch(self) -> None:
        agg = ResultAggregator()
        with pytest.raises(UnknownBatchError):
            await agg.get_batch_results("nope")
        with pytest.raises(UnknownBatchError):
            agg.poll_results("nope")

    async def test_empty_batch_is_complete(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b-1", [])
        assert await agg.get_batch_results("b-1") == []

    async def test_waiter_woken_on_completion(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b-1", ["x"])
        waiter = asyncio.create_task(agg.get_batch_results("b-1"))
        await asyncio.sleep(0)
        agg.complete(_ran(_inv("x")), Outcome.success(1))
        results = await asyncio.wait_for(waiter, 1)
        assert results[0].value == 1

    async def test_same_invocation_id_in_two_batches(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b-1", ["x"])
        agg.open_batch("b-2", ["x"])
        agg.complete(_ran(_inv("x", "b-1")), Outcome.success("one"))
        agg.complete(_ran(_inv("x", "b-2")), Outcome.success("two"))
        assert agg.result_for("b-1", "x").value == "one"  # type: ignore[union-attr]
        assert agg.result_for("b-2", "x").value == "two"  # type: ignore[union-attr]

    async def test_forget(self) -> None:
        agg = ResultAggregator()
        agg.open_batch("b-1", [])
        agg.forget("b-1")
        with pytest.raises(UnknownBatchError):
            agg.poll_results("b-1")


class TestCaching:
    async def test_idempotent_success_cached(self, clock: FakeClock) -> None:
        agg = ResultAggregator(MemoryResultCache(clock=clock))
        agg.open_batch("b-1", ["x"])
        agg.complete(_ran(_inv("x", idempotent=True, cache_ttl=60)), Outcome.success(7))

        hit = agg.cached_result(_inv("y", "b-2", idempotent=True, cache_ttl=60))
        assert hit is not None
        assert hit.cached
        assert hit.value == 7
        assert hit.invocation_id == "y"
        assert hit.attempts == 0

    async def test_failures_not_cached(self, clock: FakeClock) -> None:
        agg = ResultAggregator(MemoryResultCache(clock=clock))
        agg.open_batch("b-1", ["x"])
        inv = _inv("x", idempotent=True, cache_ttl=60)
        inv.transition(InvocationState.COMPLETED)
        agg.complete(inv, Outcome.error(ErrorKind.HANDLER_ERROR, "no"))
        assert agg.cached_result(_inv("y", idempotent=True, cache_ttl=60)) is None

    async def test_non_idempotent_not_cached(self, clock: FakeClock) -> None:
        agg = ResultAggregator(MemoryResultCache(clock=clock))
        agg.open_batch("b-1", ["x"])
        agg.complete(_ran(_inv("x", cache_ttl=60)), Outcome.success(7))
        assert agg.cached_result(_inv("y", cache_ttl=60)) is None

    async def test_opt_out_per_invocation(self, clock: FakeClock) -> None:
        agg = ResultAggregator(MemoryResultCache(clock=clock))
        agg.open_batch("b-1", ["x"])
        agg.complete(_ran(_inv("x", idempotent=True, cache_ttl=60)), Outcome.success(7))
        inv = _inv("y", idempotent=True, cache_ttl=60)
        inv.use_cache = False
        assert agg.cached_result(inv) is None

    async def test_no_cache_backend(self) -> None:
        agg = ResultAggregator()
        assert agg.cache is None
        assert agg.cached_result(_inv("y", idempotent=True, cache_ttl=60)) is None
