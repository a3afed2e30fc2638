"""Pydantic models for toolengine configuration."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from toolengine.core.errors import ErrorKind


class EngineConfig(BaseModel):
    """Scheduler and admission settings."""

    workers: int | None = Field(default=None, ge=1)
    admission_timeout: float | None = Field(default=30.0, gt=0)
    admission_mode: Literal["block", "reject"] = "block"
    global_requests_per_second: float = Field(default=0.0, ge=0)
    global_burst: int = Field(default=1, ge=1)


class SandboxConfig(BaseModel):
    """Local sandbox settings."""

    max_output: int = Field(default=10_000, ge=100)
    grace_period: float = Field(default=1.0, gt=0)


class CacheConfig(BaseModel):
    """Result cache for idempotent tools."""

    enabled: bool = True
    max_entries: int = Field(default=1024, ge=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: str = ""


# ── Tool declarations ─────────────────────────────────────────


class ToolParameterConfig(BaseModel):
    """One declared parameter of a configured tool."""

    name: str
    type: Literal["string", "integer", "number", "boolean", "array", "object"] = (
        "string"
    )
    required: bool = False
    description: str = ""
    default: Any = None
    max_length: int | None = Field(default=None, ge=0)
    pattern: str | None = None
    allowed_values: list[Any] | None = None


class RateLimitConfig(BaseModel):
    requests_per_second: float = Field(default=0.0, ge=0)
    burst_size: int = Field(default=1, ge=1)


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=1, ge=1)
    backoff_base: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    retryable: list[ErrorKind] | None = None


class LimitsConfig(BaseModel):
    cpu_seconds: int | None = Field(default=None, ge=1)
    memory_bytes: int | None = Field(default=None, ge=1)
    open_files: int | None = Field(default=None, ge=1)
    network_allowlist: list[str] = Field(default_factory=list)


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(default=0, ge=0)
    cooldown: float = Field(default=30.0, ge=0)


class ToolConfig(BaseModel):
    """A tool declared in configuration.

    ``kind`` selects the handler: ``shell`` needs ``command``, ``http``
    needs ``url``, ``python`` needs ``function`` (``module:attr``).
    """

    kind: Literal["shell", "http", "python"]
    description: str = ""
    parameters: list[ToolParameterConfig] = Field(default_factory=list)

    # Handler fields
    command: list[str] = Field(default_factory=list)
    stdin_param: str | None = None
    env: dict[str, str] | None = None
    cwd: str | None = None
    url: str | None = None
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    headers_env: dict[str, str] = Field(default_factory=dict)
    function: str | None = None

    # Policies
    timeout: float = Field(default=30.0, gt=0)
    concurrency_limit: int | None = Field(default=None, ge=1)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    idempotent: bool = False
    cache_ttl: float = Field(default=0.0, ge=0)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    denylist: list[str] = Field(default_factory=list)
    allowlist: dict[str, list[Any]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_handler(self) -> ToolConfig:
        if self.kind == "shell" and not self.command:
            msg = "shell tools need a non-empty 'command'"
            raise ValueError(msg)
        if self.kind == "http" and not self.url:
            msg = "http tools need a 'url'"
            raise ValueError(msg)
        if self.kind == "python" and not self.function:
            msg = "python tools need a 'function' (module:attr)"
            raise ValueError(msg)
        if self.kind != "http" and (self.headers or self.headers_env):
            msg = f"headers and headers_env only apply to http tools, not {self.kind}"
            raise ValueError(msg)
        return self


class ToolEngineConfig(BaseModel):
    """Top-level configuration for toolengine."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    tools: dict[str, ToolConfig] = Field(default_factory=dict)
