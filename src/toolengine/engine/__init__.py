"""Execution engine: admission, sandbox, scheduling, and results."""

from toolengine.engine.admission import AdmissionController, ConcurrencySlots, Lease
from toolengine.engine.aggregator import BatchStatus, ResultAggregator
from toolengine.engine.cache import MemoryResultCache, ResultCache, fingerprint
from toolengine.engine.engine import ToolEngine
from toolengine.engine.machine import Invocation, InvocationRequest, InvocationState
from toolengine.engine.ratelimit import CircuitBreaker, CircuitState, TokenBucket
from toolengine.engine.sandbox import CancelToken, LocalSandbox, Outcome, Sandbox
from toolengine.engine.scheduler import Scheduler, check_dependency_graph

__all__ = [
    "AdmissionController",
    "BatchStatus",
    "CancelToken",
    "CircuitBreaker",
    "CircuitState",
    "ConcurrencySlots",
    "Invocation",
    "InvocationRequest",
    "InvocationState",
    "Lease",
    "LocalSandbox",
    "MemoryResultCache",
    "Outcome",
    "ResultAggregator",
    "ResultCache",
    "Sandbox",
    "Scheduler",
    "ToolEngine",
    "TokenBucket",
    "check_dependency_graph",
    "fingerprint",
]
