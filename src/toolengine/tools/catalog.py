"""Build tool definitions from configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from toolengine.core.retry import DEFAULT_RETRYABLE, RetryPolicy
from toolengine.tools.base import (
    CircuitBreakerPolicy,
    HandlerRef,
    InProcessFunction,
    ParameterSpec,
    RateLimit,
    RemoteCall,
    ResourceLimits,
    SafetyPolicy,
    ShellCommand,
    ToolDefinition,
)

if TYPE_CHECKING:
    from toolengine.config.schema import ToolConfig, ToolEngineConfig


def _handler(cfg: ToolConfig) -> HandlerRef:
    if cfg.kind == "shell":
        return ShellCommand(
            argv=tuple(cfg.command),
            stdin_param=cfg.stdin_param,
            env=cfg.env,
            cwd=cfg.cwd,
        )
    if cfg.kind == "http":
        assert cfg.url is not None
        return RemoteCall(url=cfg.url, method=cfg.method, headers=dict(cfg.headers))
    assert cfg.function is not None
    return InProcessFunction(target=cfg.function)


def definition_from_config(name: str, cfg: ToolConfig) -> ToolDefinition:
    """Convert one ``[tools.<name>]`` table into a ``ToolDefinition``."""
    parameters = tuple(
        ParameterSpec(
            name=p.name,
            type=p.type,
            required=p.required,
            description=p.description,
            default=p.default,
            max_length=p.max_length,
            pattern=p.pattern,
            allowed_values=(
                frozenset(p.allowed_values) if p.allowed_values is not None else None
            ),
        )
        for p in cfg.parameters
    )
    retryable = (
        frozenset(cfg.retry.retryable)
        if cfg.retry.retryable is not None
        else DEFAULT_RETRYABLE
    )
    return ToolDefinition(
        name=name,
        handler=_handler(cfg),
        description=cfg.description,
        parameters=parameters,
        safety=SafetyPolicy(
            denylist=tuple(cfg.denylist),
            allowlist={k: frozenset(v) for k, v in cfg.allowlist.items()},
        ),
        concurrency_limit=cfg.concurrency_limit,
        rate_limit=RateLimit(
            requests_per_second=cfg.rate_limit.requests_per_second,
            burst_size=cfg.rate_limit.burst_size,
        ),
        timeout=cfg.timeout,
        retry=RetryPolicy(
            max_attempts=cfg.retry.max_attempts,
            backoff_base=cfg.retry.backoff_base,
            max_delay=cfg.retry.max_delay,
            retryable=retryable,
        ),
        idempotent=cfg.idempotent,
        cache_ttl=cfg.cache_ttl,
        limits=ResourceLimits(
            cpu_seconds=cfg.limits.cpu_seconds,
            memory_bytes=cfg.limits.memory_bytes,
            open_files=cfg.limits.open_files,
            network_allowlist=tuple(cfg.limits.network_allowlist),
        ),
        circuit_breaker=CircuitBreakerPolicy(
            failure_threshold=cfg.circuit_breaker.failure_threshold,
            cooldown=cfg.circuit_breaker.cooldown,
        ),
    )


def definitions_from_config(config: ToolEngineConfig) -> list[ToolDefinition]:
    """All configured tools, in declaration order."""
    return [definition_from_config(name, cfg) for name, cfg in config.tools.items()]
