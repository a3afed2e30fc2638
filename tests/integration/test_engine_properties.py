"""Integration tests for the full engine: registry, admission, sandbox, scheduler.

Everything runs through a real ``ToolEngine`` with a ``LocalSandbox``;
only the handlers are test doubles.
"""

from __future__ import annotations

import asyncio
import random
import sys
import time
from typing import TYPE_CHECKING, Any

import pytest

from toolengine.core.errors import (
    BatchRejectedError,
    ErrorKind,
    RateLimitedError,
    ValidationFailedError,
)
from toolengine.engine.admission import AdmissionController
from toolengine.engine.engine import ToolEngine
from toolengine.engine.machine import InvocationState
from toolengine.engine.sandbox import LocalSandbox
from toolengine.tools.base import ParameterSpec, RateLimit, ShellCommand
from toolengine.tools.validator import validate

from tests.fixtures.tools import (
    CallCounter,
    ConcurrencyProbe,
    FakeClock,
    Flaky,
    block_thread,
    boom,
    hang,
    make_tool,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_GRACE = 0.2

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX subprocesses")


# ── Helpers ──────────────────────────────────────────────────────


def _echo_text(text: str) -> str:
    return text


class EventLog:
    """Async handler recording start and end of every call."""

    def __init__(self) -> None:
        self.events: list[str] = []

    async def __call__(self, label: str) -> str:
        self.events.append(f"start:{label}")
        await asyncio.sleep(random.uniform(0, 0.01))
        self.events.append(f"end:{label}")
        return label


_LABEL = (ParameterSpec("label", "string"),)


@pytest.fixture
async def full_engine() -> AsyncIterator[ToolEngine]:
    eng = ToolEngine(
        sandbox=LocalSandbox(grace_period=_GRACE),
        workers=16,
        admission_timeout=10.0,
        rng=random.Random(0),
    )
    async with eng:
        yield eng


# ── Scenarios ────────────────────────────────────────────────────


class TestScenarios:
    async def test_happy_path(self, full_engine: ToolEngine) -> None:
        full_engine.register_tool(
            make_tool(
                "echo",
                _echo_text,
                parameters=(ParameterSpec("text", "string", required=True),),
            )
        )
        (result,) = await full_engine.run(
            [{"toolName": "echo", "parameters": {"text": "hi"}}], timeout=5
        )
        assert result.success is True
        assert result.value == "hi"
        assert result.error_kind is None

    def test_rate_limit_try_acquire(self, clock: FakeClock) -> None:
        admission = AdmissionController(clock=clock)
        noop = make_tool("noop", rate_limit=RateLimit(requests_per_second=1, burst_size=1))
        admitted, rejected = [], []
        for _ in range(5):
            try:
                admitted.append(admission.try_acquire(noop))
            except RateLimitedError as e:
                rejected.append(e)
        assert len(admitted) == 1
        assert len(rejected) == 4

    async def test_rate_limit_reject_mode(self) -> None:
        counter = CallCounter()
        engine = ToolEngine(workers=8, admission_mode="reject")
        engine.register_tool(
            make_tool(
                "noop",
                counter,
                parameters=(),
                rate_limit=RateLimit(requests_per_second=1, burst_size=1),
            )
        )
        async with engine:
            results = await engine.run([{"tool": "noop"}] * 5, timeout=5)
        kinds = [r.error_kind for r in results]
        assert kinds.count(None) == 1
        assert kinds.count(ErrorKind.RATE_LIMITED) == 4
        assert len(counter.calls) == 1

    async def test_dependency_failure(self, full_engine: ToolEngine) -> None:
        full_engine.register_tool(make_tool("boom", boom, parameters=()))
        full_engine.register_tool(make_tool("echo"))
        batch_id = full_engine.submit_batch(
            [
                {"id": "A", "tool": "boom"},
                {"id": "B", "tool": "echo", "depends_on": ["A"]},
            ]
        )
        a, b = await full_engine.get_results(batch_id, timeout=5)
        assert a.error_kind is ErrorKind.HANDLER_ERROR
        assert b.error_kind is ErrorKind.DEPENDENCY_FAILED
        assert b.attempts == 0

        inv_b = next(i for i in full_engine.invocations(batch_id) if i.id == "B")
        assert InvocationState.RUNNING not in inv_b.history
        assert inv_b.history == [InvocationState.PENDING, InvocationState.COMPLETED]


# ── Properties ───────────────────────────────────────────────────


class TestValidationClosure:
    @pytest.mark.parametrize("field", ["extra", "Message", "message ", "__class__"])
    def test_undeclared_field_reported(self, field: str) -> None:
        tool = make_tool()
        with pytest.raises(ValidationFailedError) as exc_info:
            validate(tool, {"message": "ok", field: 1})
        assert field in [issue.field for issue in exc_info.value.errors]

    async def test_engine_rejects_whole_batch(self, full_engine: ToolEngine) -> None:
        counter = CallCounter()
        full_engine.register_tool(make_tool("count", counter))
        with pytest.raises(BatchRejectedError) as exc_info:
            full_engine.submit_batch(
                [
                    {"tool": "count", "parameters": {"message": "fine"}},
                    {"tool": "count", "parameters": {"message": "x", "stray": True}},
                ]
            )
        assert [i.field for i in exc_info.value.validation_issues] == ["stray"]
        await asyncio.sleep(0.05)
        assert counter.calls == []


class TestIdempotentCache:
    async def test_second_batch_served_from_cache(self, full_engine: ToolEngine) -> None:
        counter = CallCounter({"rows": [1, 2, 3]})
        full_engine.register_tool(
            make_tool("lookup", counter, idempotent=True, cache_ttl=60)
        )
        request = {"tool": "lookup", "parameters": {"message": "q"}}
        (first,) = await full_engine.run([request], timeout=5)
        (second,) = await full_engine.run([request], timeout=5)

        assert first.cached is False
        assert second.cached is True
        assert second.value == first.value
        assert len(counter.calls) == 1

    async def test_different_parameters_miss(self, full_engine: ToolEngine) -> None:
        counter = CallCounter()
        full_engine.register_tool(
            make_tool("lookup", counter, idempotent=True, cache_ttl=60)
        )
        await full_engine.run([{"tool": "lookup", "parameters": {"message": "a"}}])
        (result,) = await full_engine.run(
            [{"tool": "lookup", "parameters": {"message": "b"}}]
        )
        assert result.cached is False
        assert len(counter.calls) == 2

    async def test_hint_opts_out(self, full_engine: ToolEngine) -> None:
        counter = CallCounter()
        full_engine.register_tool(
            make_tool("lookup", counter, idempotent=True, cache_ttl=60)
        )
        request: dict[str, Any] = {"tool": "lookup", "parameters": {"message": "a"}}
        await full_engine.run([request])
        (result,) = await full_engine.run([{**request, "idempotency_hint": False}])
        assert result.cached is False
        assert len(counter.calls) == 2


class TestDependencyOrdering:
    async def test_dag_respected(self, full_engine: ToolEngine) -> None:
        log = EventLog()
        full_engine.register_tool(make_tool("step", log, parameters=_LABEL))
        graph = {
            "a": [],
            "b": [],
            "c": ["a"],
            "d": ["a", "b"],
            "e": ["c", "d"],
            "f": ["e"],
            "g": ["b"],
        }
        batch_id = full_engine.submit_batch(
            [
                {"id": k, "tool": "step", "parameters": {"label": k}, "depends_on": deps}
                for k, deps in graph.items()
            ]
        )
        results = await full_engine.get_results(batch_id, timeout=5)
        assert all(r.success for r in results)

        for inv_id, deps in graph.items():
            start = log.events.index(f"start:{inv_id}")
            for dep in deps:
                assert log.events.index(f"end:{dep}") < start

    async def test_independent_run_concurrently(self, full_engine: ToolEngine) -> None:
        probe = ConcurrencyProbe(delay=0.05)
        full_engine.register_tool(make_tool("probe", probe, parameters=_LABEL))
        await full_engine.run(
            [{"tool": "probe", "parameters": {"label": str(i)}} for i in range(4)],
            timeout=5,
        )
        assert probe.peak > 1


class TestCycleRejection:
    async def test_two_cycle_has_no_side_effects(self, full_engine: ToolEngine) -> None:
        counter = CallCounter()
        full_engine.register_tool(make_tool("count", counter))
        with pytest.raises(BatchRejectedError, match="cycle"):
            full_engine.submit_batch(
                [
                    {"id": "A", "tool": "count", "depends_on": ["B"]},
                    {"id": "B", "tool": "count", "depends_on": ["A"]},
                ]
            )
        await asyncio.sleep(0.05)
        assert counter.calls == []
        assert full_engine.scheduler.find_batches("A") == []

    async def test_self_dependency(self, full_engine: ToolEngine) -> None:
        full_engine.register_tool(make_tool("echo"))
        with pytest.raises(BatchRejectedError, match="cycle") as exc_info:
            full_engine.submit_batch([{"id": "A", "tool": "echo", "depends_on": ["A"]}])
        assert len(exc_info.value.problems) == 1
        assert exc_info.value.validation_issues == []


class TestConcurrencyBound:
    @pytest.mark.parametrize("limit", [1, 3])
    async def test_never_exceeds_limit(self, full_engine: ToolEngine, limit: int) -> None:
        probe = ConcurrencyProbe(delay=0.01)
        full_engine.register_tool(
            make_tool("probe", probe, parameters=_LABEL, concurrency_limit=limit)
        )
        results = await full_engine.run(
            [{"tool": "probe", "parameters": {"label": str(i)}} for i in range(10 * limit)],
            timeout=10,
        )
        assert all(r.success for r in results)
        assert probe.calls == 10 * limit
        assert probe.peak <= limit
        assert probe.current == 0


class TestRetryTermination:
    @pytest.mark.parametrize("max_attempts", [1, 2, 4])
    async def test_exact_attempts(self, full_engine: ToolEngine, max_attempts: int) -> None:
        flaky = Flaky(failures=1_000)
        full_engine.register_tool(
            make_tool("flaky", flaky, parameters=(), max_attempts=max_attempts)
        )
        (result,) = await full_engine.run([{"tool": "flaky"}], timeout=5)
        assert result.error_kind is ErrorKind.HANDLER_ERROR
        assert result.attempts == max_attempts
        assert flaky.calls == max_attempts

    async def test_recovers_before_attempts_run_out(self, full_engine: ToolEngine) -> None:
        flaky = Flaky(failures=2)
        full_engine.register_tool(make_tool("flaky", flaky, parameters=(), max_attempts=3))
        (result,) = await full_engine.run([{"tool": "flaky"}], timeout=5)
        assert result.success
        assert result.value == "recovered"
        assert result.attempts == 3

    async def test_non_retryable_runs_once(self, full_engine: ToolEngine) -> None:
        flaky = Flaky(failures=1_000, exc=PermissionError)
        full_engine.register_tool(make_tool("flaky", flaky, parameters=(), max_attempts=5))
        (result,) = await full_engine.run([{"tool": "flaky"}], timeout=5)
        assert result.error_kind is ErrorKind.PERMISSION_DENIED
        assert flaky.calls == 1


class TestTimeoutForcing:
    _TIMEOUT = 0.2

    async def _timed(self, engine: ToolEngine, tool_name: str) -> tuple[Any, float]:
        start = time.monotonic()
        (result,) = await engine.run([{"tool": tool_name}], timeout=10)
        return result, time.monotonic() - start

    async def test_async_handler(self, full_engine: ToolEngine) -> None:
        full_engine.register_tool(
            make_tool("hang", hang, parameters=(), timeout=self._TIMEOUT)
        )
        result, elapsed = await self._timed(full_engine, "hang")
        assert result.error_kind is ErrorKind.SANDBOX_TIMEOUT
        assert elapsed < self._TIMEOUT + _GRACE + 0.5

    async def test_blocking_thread(self, full_engine: ToolEngine) -> None:
        full_engine.register_tool(
            make_tool(
                "block",
                block_thread,
                parameters=(ParameterSpec("seconds", "number", default=1.0),),
                timeout=self._TIMEOUT,
            )
        )
        result, elapsed = await self._timed(full_engine, "block")
        assert result.error_kind is ErrorKind.SANDBOX_TIMEOUT
        assert elapsed < self._TIMEOUT + _GRACE + 0.5

    @posix_only
    async def test_subprocess(self, full_engine: ToolEngine) -> None:
        full_engine.register_tool(
            make_tool(
                "sleep",
                ShellCommand(argv=("sleep", "30")),
                parameters=(),
                timeout=self._TIMEOUT,
            )
        )
        result, elapsed = await self._timed(full_engine, "sleep")
        assert result.error_kind is ErrorKind.SANDBOX_TIMEOUT
        assert elapsed < self._TIMEOUT + _GRACE + 0.5
