"""Configuration loading and validation."""

from toolengine.config.loader import load_config
from toolengine.config.schema import (
    CacheConfig,
    EngineConfig,
    LoggingConfig,
    SandboxConfig,
    ToolConfig,
    ToolEngineConfig,
    ToolParameterConfig,
)

__all__ = [
    "CacheConfig",
    "EngineConfig",
    "LoggingConfig",
    "SandboxConfig",
    "ToolConfig",
    "ToolEngineConfig",
    "ToolParameterConfig",
    "load_config",
]
