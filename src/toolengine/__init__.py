"""toolengine: concurrent, rate-limited tool execution for MCP tool servers."""

__version__ = "0.3.0"
