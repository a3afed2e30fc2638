"""MCP server for the toolengine registry."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from toolengine.core.errors import BatchRejectedError, ToolEngineError
from toolengine.engine.machine import InvocationRequest

if TYPE_CHECKING:
    from toolengine.engine.engine import ToolEngine


def _get_tools(engine: ToolEngine) -> list[Tool]:
    """MCP tool descriptors for every registered tool."""
    return [
        Tool(
            name=summary.name,
            description=summary.description or None,
            inputSchema=summary.parameters_schema,
        )
        for summary in engine.list_tools()
    ]


def _text(payload: dict[str, Any]) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, default=str))]


async def _handle_call(
    engine: ToolEngine,
    name: str,
    arguments: dict[str, Any] | None,
    timeout: float | None = None,
) -> list[TextContent]:
    """Run one tool call as a single-invocation batch."""
    request = InvocationRequest(tool_name=name, parameters=arguments or {})
    try:
        results = await engine.run([request], timeout=timeout)
    except BatchRejectedError as e:
        kind = getattr(e.causes[0], "kind", None) if e.causes else None
        return _text(
            {
                "tool_name": name,
                "success": False,
                "error_kind": kind.value if kind is not None else None,
                "error_message": str(e),
                "problems": e.problems,
            }
        )
    except ToolEngineError as e:
        return _text({"tool_name": name, "success": False, "error_message": str(e)})
    return _text(results[0].to_dict())


def create_server(engine: ToolEngine, name: str = "toolengine") -> Server:
    """Build an MCP server bound to ``engine``."""
    server = Server(name)

    @server.list_tools()  # type: ignore[no-untyped-call, untyped-decorator]
    async def list_tools() -> list[Tool]:
        """List registered tools."""
        return _get_tools(engine)

    @server.call_tool()  # type: ignore[untyped-decorator]
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:  # type: ignore[type-arg]
        """Handle tool calls."""
        return await _handle_call(engine, name, arguments)

    return server


async def run_server(engine: ToolEngine) -> None:
    """Start the MCP server on stdio."""
    server = create_server(engine)
    async with engine:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
