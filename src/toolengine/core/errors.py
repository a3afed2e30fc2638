"""Exception hierarchy and error kinds for toolengine.

Every module imports from here. The hierarchy is:

    ToolEngineError
    ├── ConfigError
    ├── RegistryError
    │   ├── DuplicateToolError(name)
    │   └── UnknownToolError(name)
    ├── ValidationFailedError(tool_name, errors)
    ├── AdmissionError(tool_name)
    │   ├── RateLimitedError
    │   ├── AdmissionTimeoutError
    │   └── CircuitOpenError(retry_after)
    ├── SchedulerError
    │   ├── DependencyCycleError(cycle)
    │   ├── BatchRejectedError(problems, causes)
    │   ├── UnknownBatchError(batch_id)
    │   └── BatchTimeoutError(batch_id, timeout)
    └── SandboxError

``ErrorKind`` is the flat taxonomy carried by results; exceptions that
can end up in a result expose it as ``kind``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ErrorKind(enum.Enum):
    """Kinds of failure reported in a ``ToolResult``."""

    VALIDATION_FAILED = "validation_failed"
    UNKNOWN_TOOL = "unknown_tool"
    RATE_LIMITED = "rate_limited"
    ADMISSION_TIMEOUT = "admission_timeout"
    HANDLER_ERROR = "handler_error"
    SANDBOX_TIMEOUT = "sandbox_timeout"
    CONNECTION_ERROR = "connection_error"
    PERMISSION_DENIED = "permission_denied"
    DEPENDENCY_FAILED = "dependency_failed"
    DEPENDENCY_CANCELLED = "dependency_cancelled"
    CANCELLED = "cancelled"
    CIRCUIT_OPEN = "circuit_open"


class ToolEngineError(Exception):
    """Base exception for all toolengine errors."""


# ─── Configuration Errors ─────────────────────────────────────


class ConfigError(ToolEngineError):
    """Invalid configuration or tool definition."""


# ─── Registry Errors ──────────────────────────────────────────


class RegistryError(ToolEngineError):
    """Base for registry errors."""

    def __init__(self, name: str, message: str) -> None:
        self.name = name
        super().__init__(message)


class DuplicateToolError(RegistryError):
    """A tool with this name is already registered."""

    def __init__(self, name: str) -> None:
        super().__init__(name, f"Tool already registered: {name}")


class UnknownToolError(RegistryError):
    """No tool with this name is registered."""

    kind = ErrorKind.UNKNOWN_TOOL

    def __init__(self, name: str) -> None:
        super().__init__(name, f"Tool not found: {name}")


# ─── Validation Errors ────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """One problem found in an invocation's parameters."""

    field: str
    reason: str

    def __str__(self) -> str:
        return f"{self.field}: {self.reason}"


class ValidationFailedError(ToolEngineError):
    """Parameters failed schema or safety validation.

    Carries the complete list of issues, never just the first one.
    """

    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, tool_name: str, errors: Sequence[ValidationIssue]) -> None:
        self.tool_name = tool_name
        self.errors = list(errors)
        joined = "; ".join(str(e) for e in self.errors)
        super().__init__(f"[{tool_name}] invalid parameters: {joined}")


# ─── Admission Errors ─────────────────────────────────────────


class AdmissionError(ToolEngineError):
    """Base for admission-control refusals."""

    kind: ErrorKind = ErrorKind.RATE_LIMITED

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"[{tool_name}] {message}")


class RateLimitedError(AdmissionError):
    """No token or concurrency slot available right now."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, tool_name: str, reason: str = "rate limited") -> None:
        super().__init__(tool_name, reason)


class AdmissionTimeoutError(AdmissionError):
    """Admission could not be granted before the deadline."""

    kind = ErrorKind.ADMISSION_TIMEOUT

    def __init__(self, tool_name: str, waited: float | None = None) -> None:
        msg = "Timed out waiting for admission"
        if waited is not None:
            msg += f" (needed {waited:.3f}s)"
        super().__init__(tool_name, msg)


class CircuitOpenError(AdmissionError):
    """Circuit breaker is open after repeated failures."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, tool_name: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        msg = "Circuit open"
        if retry_after is not None:
            msg += f" (retry after {retry_after:.1f}s)"
        super().__init__(tool_name, msg)


# ─── Scheduler Errors ─────────────────────────────────────────


class SchedulerError(ToolEngineError):
    """Base for scheduling and batch errors."""


class DependencyCycleError(SchedulerError):
    """The ``depends_on`` graph of a batch contains a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class BatchRejectedError(SchedulerError):
    """A batch was rejected as a whole before any execution.

    ``problems`` holds one readable line per problem; ``causes`` holds
    the underlying errors (unknown tools, validation failures, cycles).
    """

    def __init__(
        self,
        problems: Sequence[str],
        causes: Sequence[ToolEngineError] = (),
    ) -> None:
        self.problems = list(problems)
        self.causes = list(causes)
        super().__init__("Batch rejected: " + "; ".join(self.problems))

    @property
    def validation_issues(self) -> list[ValidationIssue]:
        return [
            issue
            for cause in self.causes
            if isinstance(cause, ValidationFailedError)
            for issue in cause.errors
        ]


class UnknownBatchError(SchedulerError):
    """No batch with this id is known."""

    def __init__(self, batch_id: str) -> None:
        self.batch_id = batch_id
        super().__init__(f"Unknown batch: {batch_id}")


class BatchTimeoutError(SchedulerError):
    """Batch did not complete within the caller's timeout."""

    def __init__(self, batch_id: str, timeout: float) -> None:
        self.batch_id = batch_id
        self.timeout = timeout
        super().__init__(f"Batch {batch_id} not complete after {timeout}s")


# ─── Sandbox Errors ───────────────────────────────────────────


class SandboxError(ToolEngineError):
    """The sandbox could not run a handler at all."""
