"""Tool data types.

Defines the static description of a tool (``ToolDefinition`` and its
parts), the handler reference variants the sandbox knows how to run,
and the normalized ``ToolResult`` returned to callers.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from toolengine.core.errors import ConfigError, ErrorKind
from toolengine.core.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

PARAMETER_TYPES: frozenset[str] = frozenset(
    {"string", "integer", "number", "boolean", "array", "object"}
)


# ── Parameters and policies ───────────────────────────────────


@dataclass(frozen=True, slots=True)
class ParameterSpec:
    """One declared parameter of a tool."""

    name: str
    type: str = "string"
    required: bool = False
    description: str = ""
    default: Any = None
    max_length: int | None = None
    pattern: str | None = None
    allowed_values: frozenset[Any] | None = None

    def json_schema(self) -> dict[str, Any]:
        """JSON Schema fragment describing this parameter."""
        schema: dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        if self.default is not None:
            schema["default"] = self.default
        if self.max_length is not None:
            key = "maxItems" if self.type == "array" else "maxLength"
            schema[key] = self.max_length
        if self.pattern is not None:
            schema["pattern"] = self.pattern
        if self.allowed_values is not None:
            schema["enum"] = sorted(self.allowed_values, key=repr)
        return schema


@dataclass(frozen=True, slots=True)
class SafetyPolicy:
    """Input safety rules applied on top of the parameter schema.

    ``denylist`` entries are case-insensitive regular expressions
    searched in every string value; a plain word acts as a substring.
    ``allowlist`` restricts named parameters to a fixed set of values.
    """

    denylist: tuple[str, ...] = ()
    allowlist: Mapping[str, frozenset[Any]] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RateLimit:
    """Token-bucket settings. ``requests_per_second == 0`` disables it."""

    requests_per_second: float = 0.0
    burst_size: int = 1

    @property
    def enabled(self) -> bool:
        return self.requests_per_second > 0


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    """Resource ceilings enforced by the sandbox. ``None`` = no limit."""

    cpu_seconds: int | None = None
    memory_bytes: int | None = None
    open_files: int | None = None
    network_allowlist: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CircuitBreakerPolicy:
    """Consecutive-failure breaker. ``failure_threshold == 0`` disables it."""

    failure_threshold: int = 0
    cooldown: float = 30.0


# ── Handler references ────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class InProcessFunction:
    """A Python callable, given directly or as a ``module:attr`` path."""

    target: Callable[..., Any] | str

    def resolve(self) -> Callable[..., Any]:
        """Return the callable, importing it if given as a path.

        Raises:
            ConfigError: If the import path cannot be resolved.
        """
        if not isinstance(self.target, str):
            return self.target
        module_name, _, attr = self.target.partition(":")
        if not module_name or not attr:
            msg = f"Invalid function path {self.target!r}, expected 'module:attr'"
            raise ConfigError(msg)
        try:
            obj: Any = importlib.import_module(module_name)
            for part in attr.split("."):
                obj = getattr(obj, part)
        except (ImportError, AttributeError) as e:
            msg = f"Cannot resolve handler {self.target!r}: {e}"
            raise ConfigError(msg) from e
        if not callable(obj):
            msg = f"Handler {self.target!r} is not callable"
            raise ConfigError(msg)
        return obj  # type: ignore[no-any-return]


@dataclass(frozen=True, slots=True)
class ShellCommand:
    """A subprocess. ``{param}`` placeholders in argv are substituted."""

    argv: tuple[str, ...]
    stdin_param: str | None = None
    env: Mapping[str, str] | None = None
    cwd: str | None = None


@dataclass(frozen=True, slots=True)
class RemoteCall:
    """An HTTP endpoint receiving the parameters as a JSON body."""

    url: str
    method: str = "POST"
    headers: Mapping[str, str] = field(default_factory=dict)


HandlerRef = InProcessFunction | ShellCommand | RemoteCall


# ── Tool definition ───────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ToolSummary:
    """Discovery view of a tool: no handler internals."""

    name: str
    description: str
    parameters_schema: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """Static description of a capability.

    Immutable; the registry swaps whole definitions on update so that
    in-flight invocations keep the version they were submitted with.
    """

    name: str
    handler: HandlerRef
    description: str = ""
    parameters: tuple[ParameterSpec, ...] = ()
    safety: SafetyPolicy = field(default_factory=SafetyPolicy)
    concurrency_limit: int | None = None
    rate_limit: RateLimit = field(default_factory=RateLimit)
    timeout: float = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    idempotent: bool = False
    cache_ttl: float = 0.0
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    circuit_breaker: CircuitBreakerPolicy = field(
        default_factory=CircuitBreakerPolicy
    )

    @property
    def cacheable(self) -> bool:
        return self.idempotent and self.cache_ttl > 0

    def parameter(self, name: str) -> ParameterSpec | None:
        for spec in self.parameters:
            if spec.name == name:
                return spec
        return None

    def parameters_schema(self) -> dict[str, Any]:
        """JSON Schema object for the tool's parameters (closed schema)."""
        return {
            "type": "object",
            "properties": {p.name: p.json_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
            "additionalProperties": False,
        }

    def summary(self) -> ToolSummary:
        return ToolSummary(
            name=self.name,
            description=self.description,
            parameters_schema=self.parameters_schema(),
        )


# ── Results ───────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Normalized outcome of one invocation.

    Exactly one of ``value`` (on success) or ``error_kind`` (on
    failure) is meaningful; use :meth:`ok` and :meth:`failure`.
    """

    invocation_id: str
    tool_name: str
    success: bool
    value: Any = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    attempts: int = 0
    duration_ms: float = 0.0
    cached: bool = False

    def __post_init__(self) -> None:
        if self.success and self.error_kind is not None:
            msg = "A successful result cannot carry an error"
            raise ValueError(msg)
        if not self.success and self.error_kind is None:
            msg = "A failed result must carry an error kind"
            raise ValueError(msg)
        if not self.success and self.value is not None:
            msg = "A failed result cannot carry a value"
            raise ValueError(msg)

    @classmethod
    def ok(
        cls,
        invocation_id: str,
        tool_name: str,
        value: Any,
        *,
        attempts: int = 1,
        duration_ms: float = 0.0,
        cached: bool = False,
    ) -> ToolResult:
        return cls(
            invocation_id=invocation_id,
            tool_name=tool_name,
            success=True,
            value=value,
            attempts=attempts,
            duration_ms=duration_ms,
            cached=cached,
        )

    @classmethod
    def failure(
        cls,
        invocation_id: str,
        tool_name: str,
        kind: ErrorKind,
        message: str,
        *,
        attempts: int = 0,
        duration_ms: float = 0.0,
    ) -> ToolResult:
        return cls(
            invocation_id=invocation_id,
            tool_name=tool_name,
            success=False,
            error_kind=kind,
            error_message=message,
            attempts=attempts,
            duration_ms=duration_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict form for JSON encoding."""
        return {
            "invocation_id": self.invocation_id,
            "tool_name": self.tool_name,
            "success": self.success,
            "value": self.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "duration_ms": round(self.duration_ms, 3),
            "cached": self.cached,
        }
