"""Tests for retry policy and backoff computation."""

from __future__ import annotations

import random

import pytest

from toolengine.core.errors import ErrorKind
from toolengine.core.retry import (
    DEFAULT_RETRYABLE,
    RetryPolicy,
    compute_delay,
    is_retryable,
)

# ─── RetryPolicy ──────────────────────────────────────────────


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 1
        assert policy.backoff_base == 0.5
        assert policy.max_delay == 30.0
        assert policy.retryable == DEFAULT_RETRYABLE

    def test_frozen(self):
        policy = RetryPolicy()
        with pytest.raises(AttributeError):
            policy.max_attempts = 5  # type: ignore[misc]

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)

    def test_negative_backoff_rejected(self):
        with pytest.raises(ValueError, match="backoff_base"):
            RetryPolicy(backoff_base=-1)


# ─── is_retryable ─────────────────────────────────────────────


class TestIsRetryable:
    def test_default_retryable_kinds(self):
        policy = RetryPolicy()
        assert is_retryable(ErrorKind.HANDLER_ERROR, policy) is True
        assert is_retryable(ErrorKind.SANDBOX_TIMEOUT, policy) is True
        assert is_retryable(ErrorKind.CONNECTION_ERROR, policy) is True

    def test_permission_denied_never_retried(self):
        policy = RetryPolicy(retryable=frozenset({ErrorKind.PERMISSION_DENIED}))
        assert is_retryable(ErrorKind.PERMISSION_DENIED, policy) is False

    def test_cancellation_never_retried(self):
        policy = RetryPolicy(retryable=frozenset(ErrorKind))
        assert is_retryable(ErrorKind.CANCELLED, policy) is False
        assert is_retryable(ErrorKind.DEPENDENCY_FAILED, policy) is False

    def test_custom_set_narrows(self):
        policy = RetryPolicy(retryable=frozenset({ErrorKind.CONNECTION_ERROR}))
        assert is_retryable(ErrorKind.HANDLER_ERROR, policy) is False
        assert is_retryable(ErrorKind.CONNECTION_ERROR, policy) is True

    def test_none_is_not_retryable(self):
        assert is_retryable(None, RetryPolicy()) is False


# ─── compute_delay ────────────────────────────────────────────


class _NoJitter(random.Random):
    def uniform(self, a: float, b: float) -> float:
        return a


class _MaxJitter(random.Random):
    def uniform(self, a: float, b: float) -> float:
        return b


class TestComputeDelay:
    def test_exponential_backoff(self):
        policy = RetryPolicy(backoff_base=1.0)
        rng = _NoJitter()
        assert compute_delay(1, policy, rng) == 1.0
        assert compute_delay(2, policy, rng) == 2.0
        assert compute_delay(3, policy, rng) == 4.0
        assert compute_delay(4, policy, rng) == 8.0

    def test_respects_max_delay(self):
        policy = RetryPolicy(backoff_base=10.0, max_delay=15.0)
        rng = _NoJitter()
        assert compute_delay(1, policy, rng) == 10.0
        assert compute_delay(2, policy, rng) == 15.0  # capped
        assert compute_delay(5, policy, rng) == 15.0  # capped

    def test_jitter_at_most_ten_percent(self):
        policy = RetryPolicy(backoff_base=2.0)
        assert compute_delay(2, policy, _MaxJitter()) == pytest.approx(4.4)

    def test_jitter_within_bounds(self):
        policy = RetryPolicy(backoff_base=1.0)
        rng = random.Random(42)
        for attempt in range(1, 6):
            base = min(2 ** (attempt - 1), policy.max_delay)
            delay = compute_delay(attempt, policy, rng)
            assert base <= delay <= base * 1.1

    def test_zero_base_means_no_wait(self):
        assert compute_delay(3, RetryPolicy(backoff_base=0.0)) == 0.0
