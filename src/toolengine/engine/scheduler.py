"""Invocation scheduler -- executes batches respecting dependencies.

Uses ``graphlib.TopologicalSorter`` per batch for dependency ordering
and a fixed pool of asyncio worker tasks, shared by all batches, for
execution. Each worker admits an invocation through the
:class:`AdmissionController`, runs it in the :class:`Sandbox`, retries
retryable failures with backoff, and hands the outcome to the
:class:`ResultAggregator`.

Invocations whose dependencies did not succeed are completed without
running, as are cancelled ones and cache hits.
"""

from __future__ import annotations

import asyncio
import graphlib
import logging
import os
import random
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from toolengine.core.errors import (
    AdmissionError,
    DependencyCycleError,
    ErrorKind,
    SchedulerError,
)
from toolengine.core.retry import compute_delay, is_retryable
from toolengine.engine.machine import InvocationState
from toolengine.engine.sandbox import Outcome

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable, Mapping, Sequence

    from toolengine.engine.admission import AdmissionController, Lease
    from toolengine.engine.aggregator import ResultAggregator
    from toolengine.engine.machine import Invocation
    from toolengine.engine.sandbox import CancelToken, Sandbox
    from toolengine.tools.base import ToolResult

logger = logging.getLogger(__name__)

AdmissionMode = Literal["block", "reject"]

# Failures that count against a tool's circuit breaker.
_BREAKER_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.HANDLER_ERROR, ErrorKind.SANDBOX_TIMEOUT, ErrorKind.CONNECTION_ERROR}
)
_CANCEL_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.CANCELLED, ErrorKind.DEPENDENCY_CANCELLED}
)


def default_worker_count() -> int:
    return min(32, (os.cpu_count() or 1) + 4)


def check_dependency_graph(graph: Mapping[str, Iterable[str]]) -> None:
    """Reject a ``{node: dependencies}`` graph containing a cycle.

    Raises:
        DependencyCycleError: With the nodes forming the cycle.
    """
    sorter: graphlib.TopologicalSorter[str] = graphlib.TopologicalSorter(
        {node: set(deps) for node, deps in graph.items()}
    )
    try:
        sorter.prepare()
    except graphlib.CycleError as e:
        raise DependencyCycleError(e.args[1]) from e


class _Cancelled(Exception):
    """Internal: the invocation's cancel token fired during a wait."""


@dataclass
class _BatchRun:
    batch_id: str
    invocations: dict[str, Invocation]
    sorter: graphlib.TopologicalSorter[str]
    dependents: dict[str, list[str]] = field(default_factory=dict)


class Scheduler:
    """Runs invocation batches on a bounded worker pool.

    Args:
        admission: Rate/concurrency gate consulted before each attempt.
        sandbox: Execution backend.
        aggregator: Receives every terminal outcome.
        workers: Pool size; defaults to ``min(32, cpu_count + 4)``.
        admission_timeout: Seconds a worker waits for admission before
            the invocation fails with ``ADMISSION_TIMEOUT``. None waits
            indefinitely.
        admission_mode: ``"block"`` waits for admission, ``"reject"``
            fails immediately with ``RATE_LIMITED`` when no slot is free.
        rng: Random source for backoff jitter.
    """

    def __init__(
        self,
        admission: AdmissionController,
        sandbox: Sandbox,
        aggregator: ResultAggregator,
        *,
        workers: int | None = None,
        admission_timeout: float | None = 30.0,
        admission_mode: AdmissionMode = "block",
        rng: random.Random | None = None,
    ) -> None:
        self._admission = admission
        self._sandbox = sandbox
        self._aggregator = aggregator
        self.worker_count = workers or default_worker_count()
        self.admission_timeout = admission_timeout
        self.admission_mode = admission_mode
        self._rng = rng or random.Random()
        self._queue: asyncio.Queue[tuple[_BatchRun, Invocation]] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._runs: dict[str, _BatchRun] = {}

    # ── Lifecycle ────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Spawn the worker pool. Requires a running event loop."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"toolengine-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.debug("Started %d workers", self.worker_count)

    async def close(self, drain_timeout: float = 5.0) -> None:
        """Cancel outstanding work and stop the workers."""
        for run in list(self._runs.values()):
            for inv in run.invocations.values():
                self.cancel(run.batch_id, inv.id)
        if self._workers:
            with suppress(TimeoutError):
                await asyncio.wait_for(self._queue.join(), drain_timeout)
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    # ── Submission ───────────────────────────────────────────

    def schedule(self, batch_id: str, invocations: Sequence[Invocation]) -> None:
        """Register a batch and dispatch its ready invocations.

        Dependencies must refer to ids in the same batch.

        Raises:
            DependencyCycleError: If ``depends_on`` forms a cycle.
            SchedulerError: If the batch id is already scheduled.
        """
        if batch_id in self._runs:
            msg = f"Batch already scheduled: {batch_id}"
            raise SchedulerError(msg)

        graph = {inv.id: set(inv.depends_on) for inv in invocations}
        dangling = sorted({d for deps in graph.values() for d in deps} - set(graph))
        if dangling:
            msg = f"Unknown dependencies in batch {batch_id}: {dangling}"
            raise SchedulerError(msg)
        check_dependency_graph(graph)
        sorter: graphlib.TopologicalSorter[str] = graphlib.TopologicalSorter(graph)
        sorter.prepare()

        run = _BatchRun(
            batch_id=batch_id,
            invocations={inv.id: inv for inv in invocations},
            sorter=sorter,
        )
        for inv in invocations:
            for dep in inv.depends_on:
                run.dependents.setdefault(dep, []).append(inv.id)

        self._aggregator.open_batch(batch_id, [inv.id for inv in invocations])
        self._runs[batch_id] = run
        self._advance(run)

    def invocation(self, batch_id: str, invocation_id: str) -> Invocation | None:
        run = self._runs.get(batch_id)
        if run is None:
            return None
        return run.invocations.get(invocation_id)

    def find_batches(self, invocation_id: str) -> list[str]:
        """Ids of active batches containing ``invocation_id``."""
        return [bid for bid, run in self._runs.items() if invocation_id in run.invocations]

    # ── Dependency bookkeeping ───────────────────────────────

    def _advance(self, run: _BatchRun) -> None:
        """Dispatch or short-circuit everything that has become ready."""
        while run.sorter.is_active():
            ready = run.sorter.get_ready()
            if not ready:
                break
            for inv_id in ready:
                inv = run.invocations[inv_id]
                if inv.is_terminal or self._short_circuit(run, inv):
                    run.sorter.done(inv_id)
                else:
                    self._queue.put_nowait((run, inv))
        if not run.sorter.is_active():
            self._runs.pop(run.batch_id, None)

    def _short_circuit(self, run: _BatchRun, inv: Invocation) -> bool:
        """Complete ``inv`` without running it, if possible."""
        failed: list[ToolResult] = []
        for dep in inv.depends_on:
            dep_result = self._aggregator.result_for(run.batch_id, dep)
            if dep_result is not None and not dep_result.success:
                failed.append(dep_result)
        if failed:
            names = ", ".join(r.invocation_id for r in failed)
            if all(r.error_kind in _CANCEL_KINDS for r in failed):
                self._complete_early(
                    run, inv, ErrorKind.DEPENDENCY_CANCELLED, f"Dependency cancelled: {names}"
                )
            else:
                self._complete_early(
                    run, inv, ErrorKind.DEPENDENCY_FAILED, f"Dependency failed: {names}"
                )
            return True

        if inv.cancel_token.cancelled:
            self._complete_early(run, inv, ErrorKind.CANCELLED, "Cancelled before start")
            return True

        cached = self._aggregator.cached_result(inv)
        if cached is not None:
            inv.transition(InvocationState.COMPLETED)
            self._aggregator.record(run.batch_id, cached)
            return True
        return False

    def _complete_early(
        self, run: _BatchRun, inv: Invocation, kind: ErrorKind, message: str
    ) -> None:
        inv.transition(InvocationState.COMPLETED)
        self._aggregator.complete(inv, Outcome.error(kind, message))
        logger.debug("%s completed without running: %s", inv.id, message)

    def _finish(self, run: _BatchRun, inv: Invocation) -> None:
        run.sorter.done(inv.id)
        self._advance(run)

    # ── Cancellation ─────────────────────────────────────────

    def cancel(self, batch_id: str, invocation_id: str) -> bool:
        """Cancel one invocation.

        A pending invocation is completed as ``CANCELLED`` at once and
        its pending dependents as ``DEPENDENCY_CANCELLED``. A running
        one is signalled; the sandbox stops it within its grace period.

        Returns:
            False if the invocation is unknown or already finished.
        """
        run = self._runs.get(batch_id)
        inv = run.invocations.get(invocation_id) if run else None
        if run is None or inv is None or inv.is_terminal:
            return False

        inv.cancel_token.cancel()
        if inv.state == InvocationState.PENDING:
            self._complete_early(run, inv, ErrorKind.CANCELLED, "Cancelled before start")
            self._cancel_dependents(run, inv.id)
        logger.info("Cancelled %s (%s)", invocation_id, inv.tool_name)
        return True

    def _cancel_dependents(self, run: _BatchRun, inv_id: str) -> None:
        stack = list(run.dependents.get(inv_id, ()))
        while stack:
            dep_id = stack.pop()
            dep = run.invocations[dep_id]
            if dep.is_terminal or dep.state != InvocationState.PENDING:
                continue
            dep.cancel_token.cancel()
            self._complete_early(
                run, dep, ErrorKind.DEPENDENCY_CANCELLED, f"Dependency cancelled: {inv_id}"
            )
            stack.extend(run.dependents.get(dep_id, ()))

    # ── Workers ──────────────────────────────────────────────

    async def _worker(self, index: int) -> None:
        while True:
            run, inv = await self._queue.get()
            try:
                await self._execute(run, inv)
            except Exception:
                logger.exception("Worker %d failed executing %s", index, inv.id)
                if not inv.is_terminal:
                    with suppress(SchedulerError):
                        inv.transition(InvocationState.COMPLETED)
                    self._aggregator.complete(
                        inv, Outcome.error(ErrorKind.HANDLER_ERROR, "Internal engine error")
                    )
                self._finish(run, inv)
            finally:
                self._queue.task_done()

    async def _until_cancelled(self, aw: Awaitable[Any], token: CancelToken) -> Any:
        """Await ``aw`` unless ``token`` fires first.

        Raises:
            _Cancelled: If the token fired; ``aw`` is cancelled and a
                lease it may have produced is discarded.
        """
        if token.cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise _Cancelled
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        with suppress(asyncio.CancelledError):
            leftover = await task
            discard = getattr(leftover, "discard", None)
            if callable(discard):
                discard()
        raise _Cancelled

    async def _admit(self, inv: Invocation) -> Lease:
        if self.admission_mode == "reject":
            return self._admission.try_acquire(inv.tool)
        deadline = None
        if self.admission_timeout is not None:
            deadline = self._admission.clock() + self.admission_timeout
        lease: Lease = await self._until_cancelled(
            self._admission.acquire(inv.tool, deadline), inv.cancel_token
        )
        return lease

    async def _execute(self, run: _BatchRun, inv: Invocation) -> None:
        if inv.is_terminal:
            self._finish(run, inv)
            return

        tool = inv.tool
        try:
            lease = await self._admit(inv)
        except _Cancelled:
            if not inv.is_terminal:
                self._complete_early(run, inv, ErrorKind.CANCELLED, "Cancelled before start")
            self._finish(run, inv)
            return
        except AdmissionError as e:
            logger.info("%s not admitted: %s", inv.id, e)
            if not inv.is_terminal:
                self._complete_early(run, inv, e.kind, str(e))
            self._finish(run, inv)
            return

        if inv.is_terminal:
            lease.discard()
            self._finish(run, inv)
            return

        inv.transition(InvocationState.ADMITTED)
        try:
            outcome = await self._run_attempts(inv, tool.retry.max_attempts)
        except BaseException:
            lease.discard()
            raise
        self._release_after(lease, outcome.lingering)

        if outcome.ok:
            self._admission.record_success(tool)
        elif outcome.error_kind in _BREAKER_KINDS:
            self._admission.record_failure(tool)
        else:
            # Neither verdict: a half-open trial must not stay claimed.
            lease.release_trial()

        inv.transition(InvocationState.COMPLETED)
        self._aggregator.complete(inv, outcome)
        self._finish(run, inv)

    def _release_after(
        self, lease: Lease, lingering: asyncio.Future[Any] | None
    ) -> None:
        """Release ``lease`` once the handler has really stopped.

        An abandoned handler keeps its concurrency slot until it returns.
        """
        if lingering is None or lingering.done():
            lease.release()
            return
        logger.warning(
            "%s handler outlived its timeout; holding its slot (%d in flight)",
            lease.tool_name,
            self._admission.in_flight(lease.tool_name),
        )
        lingering.add_done_callback(lambda _: lease.release())

    async def _run_attempts(self, inv: Invocation, max_attempts: int) -> Outcome:
        """Run until success, a non-retryable failure, or attempts run out.

        Entered in ADMITTED; returns in SUCCEEDED, FAILED or TIMED_OUT.
        """
        tool = inv.tool
        while True:
            inv.transition(InvocationState.RUNNING)
            outcome = await self._sandbox.execute(
                tool.handler,
                inv.parameters,
                limits=tool.limits,
                timeout=tool.timeout,
                cancel_token=inv.cancel_token,
            )
            if outcome.ok:
                inv.transition(InvocationState.SUCCEEDED)
                return outcome

            if outcome.error_kind == ErrorKind.SANDBOX_TIMEOUT:
                inv.transition(InvocationState.TIMED_OUT)
            else:
                inv.transition(InvocationState.FAILED)

            if (
                inv.cancel_token.cancelled
                or outcome.lingering is not None
                or inv.attempts >= max_attempts
                or not is_retryable(outcome.error_kind, tool.retry)
            ):
                return outcome

            delay = compute_delay(inv.attempts, tool.retry, self._rng)
            logger.warning(
                "%s (%s) attempt %d/%d failed with %s; retrying in %.2fs",
                inv.id,
                tool.name,
                inv.attempts,
                max_attempts,
                outcome.error_kind.value if outcome.error_kind else "error",
                delay,
            )
            try:
                await self._until_cancelled(asyncio.sleep(delay), inv.cancel_token)
                deadline = None
                if self.admission_timeout is not None:
                    deadline = self._admission.clock() + self.admission_timeout
                await self._until_cancelled(
                    self._admission.acquire_token(tool, deadline), inv.cancel_token
                )
            except _Cancelled:
                return Outcome.error(ErrorKind.CANCELLED, "Cancelled while waiting to retry")
            except AdmissionError as e:
                return Outcome.error(e.kind, str(e))
            inv.transition(InvocationState.ADMITTED)
