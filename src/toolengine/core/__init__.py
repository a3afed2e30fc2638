"""Core types, errors, and shared utilities."""

from toolengine.core.errors import (
    AdmissionError,
    AdmissionTimeoutError,
    BatchRejectedError,
    BatchTimeoutError,
    CircuitOpenError,
    ConfigError,
    DependencyCycleError,
    DuplicateToolError,
    ErrorKind,
    RateLimitedError,
    RegistryError,
    SandboxError,
    SchedulerError,
    ToolEngineError,
    UnknownBatchError,
    UnknownToolError,
    ValidationFailedError,
    ValidationIssue,
)
from toolengine.core.retry import RetryPolicy, compute_delay, is_retryable

__all__ = [
    "AdmissionError",
    "AdmissionTimeoutError",
    "BatchRejectedError",
    "BatchTimeoutError",
    "CircuitOpenError",
    "ConfigError",
    "DependencyCycleError",
    "DuplicateToolError",
    "ErrorKind",
    "RateLimitedError",
    "RegistryError",
    "RetryPolicy",
    "SandboxError",
    "SchedulerError",
    "ToolEngineError",
    "UnknownBatchError",
    "UnknownToolError",
    "ValidationFailedError",
    "ValidationIssue",
    "compute_delay",
    "is_retryable",
]
