"""MCP server exposing registered tools."""
