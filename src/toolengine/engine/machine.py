"""Invocation state machine: states, requests, transitions.

Pure logic module. No IO. The scheduler drives transitions; this
module only checks that they are legal and records them.

    PENDING -> ADMITTED -> RUNNING -> {SUCCEEDED, FAILED, TIMED_OUT} -> COMPLETED

PENDING and ADMITTED may also jump straight to COMPLETED (dependency
failure, cancellation, cache hit, admission refusal). FAILED and
TIMED_OUT may go back to ADMITTED for a retry.
"""

from __future__ import annotations

import enum
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from toolengine.core.errors import SchedulerError
from toolengine.engine.sandbox import CancelToken

if TYPE_CHECKING:
    from toolengine.tools.base import ToolDefinition


class InvocationState(enum.Enum):
    """States an invocation moves through."""

    PENDING = "pending"
    ADMITTED = "admitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    COMPLETED = "completed"


_VALID_TRANSITIONS: dict[InvocationState, frozenset[InvocationState]] = {
    InvocationState.PENDING: frozenset(
        {InvocationState.ADMITTED, InvocationState.COMPLETED}
    ),
    InvocationState.ADMITTED: frozenset(
        {InvocationState.RUNNING, InvocationState.COMPLETED}
    ),
    InvocationState.RUNNING: frozenset(
        {InvocationState.SUCCEEDED, InvocationState.FAILED, InvocationState.TIMED_OUT}
    ),
    InvocationState.SUCCEEDED: frozenset({InvocationState.COMPLETED}),
    InvocationState.FAILED: frozenset(
        {InvocationState.ADMITTED, InvocationState.COMPLETED}
    ),
    InvocationState.TIMED_OUT: frozenset(
        {InvocationState.ADMITTED, InvocationState.COMPLETED}
    ),
    InvocationState.COMPLETED: frozenset(),
}


# ── Requests ──────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class InvocationRequest:
    """What a caller submits: one tool call, optionally ordered.

    ``idempotency_hint=False`` opts this call out of result caching.
    """

    tool_name: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    id: str | None = None
    depends_on: tuple[str, ...] = ()
    idempotency_hint: bool | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InvocationRequest:
        """Build a request from a JSON-style mapping.

        Accepts ``tool``/``toolName``/``tool_name`` and
        ``dependsOn``/``depends_on``.

        Raises:
            SchedulerError: If the mapping is not a usable request.
        """
        tool_name = data.get("tool_name", data.get("toolName", data.get("tool")))
        if not isinstance(tool_name, str) or not tool_name:
            msg = "Invocation request needs a 'tool_name'"
            raise SchedulerError(msg)
        depends = data.get("depends_on", data.get("dependsOn")) or ()
        if isinstance(depends, str):
            depends = (depends,)
        parameters = data.get("parameters") or {}
        if not isinstance(parameters, Mapping):
            msg = f"Invocation request for {tool_name!r}: 'parameters' must be an object"
            raise SchedulerError(msg)
        hint = data.get("idempotency_hint", data.get("idempotencyHint"))
        raw_id = data.get("id")
        return cls(
            tool_name=tool_name,
            parameters=dict(parameters),
            id=str(raw_id) if raw_id is not None else None,
            depends_on=tuple(str(d) for d in depends),
            idempotency_hint=hint,
        )


def new_invocation_id() -> str:
    return f"inv-{uuid.uuid4().hex[:12]}"


# ── Invocation ────────────────────────────────────────────────


@dataclass
class Invocation:
    """Mutable in-flight state for one tool call.

    ``tool`` is the definition as registered at submit time; later
    registry updates do not affect it.
    """

    id: str
    batch_id: str
    tool: ToolDefinition
    parameters: dict[str, Any]
    depends_on: tuple[str, ...] = ()
    use_cache: bool = True
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    state: InvocationState = InvocationState.PENDING
    attempts: int = 0
    admitted_at: float | None = None
    started_at: float | None = None
    cancel_token: CancelToken = field(default_factory=CancelToken)
    history: list[InvocationState] = field(
        default_factory=lambda: [InvocationState.PENDING]
    )

    @property
    def tool_name(self) -> str:
        return self.tool.name

    @property
    def is_terminal(self) -> bool:
        return self.state == InvocationState.COMPLETED

    @property
    def has_run(self) -> bool:
        """Whether the handler was ever invoked."""
        return InvocationState.RUNNING in self.history

    def can_transition(self, to: InvocationState) -> bool:
        return to in _VALID_TRANSITIONS[self.state]

    def transition(self, to: InvocationState) -> None:
        """Move to ``to``.

        Raises:
            SchedulerError: If the transition is not allowed.
        """
        if not self.can_transition(to):
            msg = f"[{self.id}] invalid transition: {self.state.value} -> {to.value}"
            raise SchedulerError(msg)
        if to == InvocationState.ADMITTED:
            self.admitted_at = time.monotonic()
        elif to == InvocationState.RUNNING:
            self.attempts += 1
            if self.started_at is None:
                self.started_at = time.monotonic()
        self.state = to
        self.history.append(to)

    def elapsed_ms(self) -> float:
        """Milliseconds since first admission (0 if never admitted)."""
        start = self.started_at or self.admitted_at
        if start is None:
            return 0.0
        return (time.monotonic() - start) * 1000
