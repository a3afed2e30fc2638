"""ToolEngine: the object callers hold.

Wires registry, admission controller, sandbox, scheduler and result
aggregator together. Construct one per process (or per test) and pass
it around; nothing here is a module-level singleton.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from toolengine.core.errors import (
    BatchRejectedError,
    BatchTimeoutError,
    DependencyCycleError,
    ToolEngineError,
    UnknownBatchError,
    UnknownToolError,
    ValidationFailedError,
)
from toolengine.engine.admission import AdmissionController
from toolengine.engine.aggregator import ResultAggregator
from toolengine.engine.cache import MemoryResultCache
from toolengine.engine.machine import Invocation, InvocationRequest, new_invocation_id
from toolengine.engine.sandbox import LocalSandbox
from toolengine.engine.scheduler import Scheduler, check_dependency_graph
from toolengine.tools.base import RateLimit
from toolengine.tools.catalog import definitions_from_config
from toolengine.tools.registry import ToolRegistry
from toolengine.tools.validator import validate

if TYPE_CHECKING:
    import random
    from collections.abc import Mapping, Sequence
    from types import TracebackType

    from toolengine.config.schema import ToolEngineConfig
    from toolengine.engine.aggregator import BatchStatus
    from toolengine.engine.cache import ResultCache
    from toolengine.engine.sandbox import Sandbox
    from toolengine.engine.scheduler import AdmissionMode
    from toolengine.tools.base import ToolDefinition, ToolResult, ToolSummary

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class ToolEngine:
    """Concurrent, rate-limited tool execution engine.

    Args:
        registry: Tool registry; a fresh one by default.
        admission: Admission controller; a fresh one by default.
        sandbox: Execution backend; ``LocalSandbox`` by default.
        cache: Result cache for idempotent tools. Defaults to an
            in-memory cache; pass None to disable caching.
        workers: Worker pool size.
        admission_timeout: Seconds to wait for admission per attempt.
        admission_mode: ``"block"`` or ``"reject"``.
        rng: Random source for retry jitter.
    """

    def __init__(
        self,
        *,
        registry: ToolRegistry | None = None,
        admission: AdmissionController | None = None,
        sandbox: Sandbox | None = None,
        cache: ResultCache | None = _UNSET,
        workers: int | None = None,
        admission_timeout: float | None = 30.0,
        admission_mode: AdmissionMode = "block",
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry or ToolRegistry()
        self.admission = admission or AdmissionController()
        self.sandbox: Sandbox = sandbox or LocalSandbox()
        self.aggregator = ResultAggregator(
            MemoryResultCache() if cache is _UNSET else cache
        )
        self.scheduler = Scheduler(
            self.admission,
            self.sandbox,
            self.aggregator,
            workers=workers,
            admission_timeout=admission_timeout,
            admission_mode=admission_mode,
            rng=rng,
        )
        self._batches: dict[str, list[Invocation]] = {}

    @classmethod
    def from_config(cls, config: ToolEngineConfig) -> ToolEngine:
        """Build an engine and register every configured tool."""
        engine_cfg = config.engine
        engine = cls(
            admission=AdmissionController(
                RateLimit(
                    requests_per_second=engine_cfg.global_requests_per_second,
                    burst_size=engine_cfg.global_burst,
                )
            ),
            sandbox=LocalSandbox(
                max_output=config.sandbox.max_output,
                grace_period=config.sandbox.grace_period,
            ),
            cache=(
                MemoryResultCache(max_entries=config.cache.max_entries)
                if config.cache.enabled
                else None
            ),
            workers=engine_cfg.workers,
            admission_timeout=engine_cfg.admission_timeout,
            admission_mode=engine_cfg.admission_mode,
        )
        for definition in definitions_from_config(config):
            engine.register_tool(definition)
        return engine

    # ── Lifecycle ────────────────────────────────────────────

    def start(self) -> None:
        """Start the worker pool. Requires a running event loop."""
        self.scheduler.start()

    async def close(self) -> None:
        """Cancel outstanding work, stop workers, release the sandbox."""
        await self.scheduler.close()
        await self.sandbox.aclose()

    async def __aenter__(self) -> ToolEngine:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ── Registration ─────────────────────────────────────────

    def register_tool(self, definition: ToolDefinition, *, overwrite: bool = False) -> None:
        self.registry.register(definition, overwrite=overwrite)

    def unregister_tool(self, name: str) -> bool:
        return self.registry.unregister(name)

    def list_tools(self) -> list[ToolSummary]:
        return self.registry.summaries()

    # ── Submission ───────────────────────────────────────────

    def submit_batch(
        self, requests: Sequence[InvocationRequest | Mapping[str, Any]]
    ) -> str:
        """Validate a batch and schedule it.

        All-or-nothing: every problem in the batch is collected first,
        and if there is any, nothing runs.

        Returns:
            The batch id.

        Raises:
            BatchRejectedError: Listing unknown tools, invalid
                parameters, duplicate ids, dangling dependencies, and
                dependency cycles.
        """
        reqs = [
            r if isinstance(r, InvocationRequest) else InvocationRequest.from_dict(r)
            for r in requests
        ]
        problems: list[str] = []
        causes: list[ToolEngineError] = []
        invocations: list[Invocation] = []
        batch_id = f"batch-{uuid.uuid4().hex[:12]}"

        ids = [r.id or new_invocation_id() for r in reqs]
        seen: set[str] = set()
        for inv_id in ids:
            if inv_id in seen:
                problems.append(f"{inv_id}: duplicate invocation id")
            seen.add(inv_id)

        for inv_id, req in zip(ids, reqs, strict=True):
            tool = self.registry.lookup(req.tool_name)
            if tool is None:
                err = UnknownToolError(req.tool_name)
                problems.append(f"{inv_id}: {err}")
                causes.append(err)
                continue
            try:
                params = validate(tool, req.parameters)
            except ValidationFailedError as e:
                problems.extend(f"{inv_id}: {issue}" for issue in e.errors)
                causes.append(e)
                continue
            missing = [d for d in req.depends_on if d not in seen]
            if missing:
                problems.append(f"{inv_id}: depends on unknown invocations {missing}")
                continue
            invocations.append(
                Invocation(
                    id=inv_id,
                    batch_id=batch_id,
                    tool=tool,
                    parameters=params,
                    depends_on=req.depends_on,
                    use_cache=req.idempotency_hint is not False,
                )
            )

        try:
            check_dependency_graph(
                {
                    inv_id: [d for d in req.depends_on if d in seen]
                    for inv_id, req in zip(ids, reqs, strict=True)
                }
            )
        except DependencyCycleError as e:
            problems.append(str(e))
            causes.append(e)

        if problems:
            logger.info("Rejected batch of %d: %s", len(reqs), "; ".join(problems))
            raise BatchRejectedError(problems, causes)

        self.start()
        self._batches[batch_id] = invocations
        self.scheduler.schedule(batch_id, invocations)
        logger.debug("Scheduled %s with %d invocations", batch_id, len(invocations))
        return batch_id

    # ── Queries ──────────────────────────────────────────────

    async def get_results(
        self, batch_id: str, timeout: float | None = None
    ) -> list[ToolResult]:
        """Wait for a batch and return its results in submission order."""
        return await self.aggregator.get_batch_results(batch_id, timeout)

    def poll_results(self, batch_id: str) -> BatchStatus:
        """Non-blocking view of a batch's finished results."""
        return self.aggregator.poll_results(batch_id)

    async def run(
        self,
        requests: Sequence[InvocationRequest | Mapping[str, Any]],
        timeout: float | None = None,
    ) -> list[ToolResult]:
        """Submit a batch and wait for its results.

        The batch is forgotten once its results are returned. On timeout
        its unfinished invocations are cancelled.
        """
        batch_id = self.submit_batch(requests)
        try:
            return await self.get_results(batch_id, timeout)
        except BatchTimeoutError:
            for inv in self._batches.get(batch_id, ()):
                self.scheduler.cancel(batch_id, inv.id)
            raise
        finally:
            self.forget(batch_id)

    def invocations(self, batch_id: str) -> list[Invocation]:
        """In-flight (or finished) invocation state for a batch."""
        try:
            return list(self._batches[batch_id])
        except KeyError:
            raise UnknownBatchError(batch_id) from None

    def forget(self, batch_id: str) -> None:
        """Drop a batch whose results have been delivered."""
        self._batches.pop(batch_id, None)
        self.aggregator.forget(batch_id)

    # ── Cancellation ─────────────────────────────────────────

    def cancel(self, invocation_id: str, batch_id: str | None = None) -> bool:
        """Cancel an invocation (in ``batch_id``, or wherever it is active).

        Returns:
            True if anything was cancelled.
        """
        batch_ids = [batch_id] if batch_id else self.scheduler.find_batches(invocation_id)
        cancelled = False
        for bid in batch_ids:
            cancelled = self.scheduler.cancel(bid, invocation_id) or cancelled
        return cancelled
