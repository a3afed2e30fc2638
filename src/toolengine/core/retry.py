"""Retry policy and exponential backoff for tool executions."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from toolengine.core.errors import ErrorKind

DEFAULT_RETRYABLE: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.HANDLER_ERROR,
        ErrorKind.SANDBOX_TIMEOUT,
        ErrorKind.CONNECTION_ERROR,
    }
)

# Kinds that are never retried regardless of policy.
_NEVER_RETRYABLE: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.VALIDATION_FAILED,
        ErrorKind.UNKNOWN_TOOL,
        ErrorKind.PERMISSION_DENIED,
        ErrorKind.DEPENDENCY_FAILED,
        ErrorKind.DEPENDENCY_CANCELLED,
        ErrorKind.CANCELLED,
        ErrorKind.CIRCUIT_OPEN,
    }
)

JITTER_FRACTION = 0.1


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry configuration for one tool.

    ``max_attempts`` counts every execution, including the first.
    """

    max_attempts: int = 1
    backoff_base: float = 0.5
    max_delay: float = 30.0
    retryable: frozenset[ErrorKind] = field(default=DEFAULT_RETRYABLE)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = f"max_attempts must be >= 1, got {self.max_attempts}"
            raise ValueError(msg)
        if self.backoff_base < 0:
            msg = f"backoff_base must be >= 0, got {self.backoff_base}"
            raise ValueError(msg)


def is_retryable(kind: ErrorKind | None, policy: RetryPolicy) -> bool:
    """Check if a failure of this kind should trigger another attempt."""
    if kind is None or kind in _NEVER_RETRYABLE:
        return False
    return kind in policy.retryable


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> float:
    """Backoff before the attempt following ``attempt`` (1-based).

    ``backoff_base * 2^(attempt-1)``, capped at ``max_delay``, plus
    jitter uniform in ``[0, 10%]`` of that delay.
    """
    delay: float = policy.backoff_base * (2 ** (attempt - 1))
    delay = min(delay, policy.max_delay)
    uniform = (rng or random).uniform
    return delay + uniform(0.0, delay * JITTER_FRACTION)
