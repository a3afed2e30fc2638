"""Tool definitions, registry, validation, and config catalog."""

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
    ToolResult,
    ToolSummary,
)
from toolengine.tools.registry import ToolRegistry
from toolengine.tools.validator import validate, validate_definition

__all__ = [
    "CircuitBreakerPolicy",
    "HandlerRef",
    "InProcessFunction",
    "ParameterSpec",
    "RateLimit",
    "RemoteCall",
    "ResourceLimits",
    "SafetyPolicy",
    "ShellCommand",
    "ToolDefinition",
    "ToolRegistry",
    "ToolResult",
    "ToolSummary",
    "validate",
    "validate_definition",
]
