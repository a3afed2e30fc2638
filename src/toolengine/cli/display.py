"""Rich display for tool listings and batch results."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Sequence

    from toolengine.core.errors import BatchRejectedError
    from toolengine.tools.base import ToolResult, ToolSummary

_TRUNCATE_LEN = 120


def _truncate(text: str, limit: int = _TRUNCATE_LEN) -> str:
    """Truncate text to *limit* characters with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + " ..."


def _render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class EngineDisplay:
    """Rich rendering for the ``tools`` and ``run`` commands.

    Accepts an optional :class:`~rich.console.Console` for dependency
    injection in tests.
    """

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console()

    def show_tools(self, summaries: Sequence[ToolSummary]) -> None:
        """Table of registered tools and their parameters."""
        if not summaries:
            self._console.print("No tools configured.")
            return
        table = Table(title="Tools", show_lines=False)
        table.add_column("Name", style="bold cyan")
        table.add_column("Parameters")
        table.add_column("Description")
        for summary in summaries:
            schema = summary.parameters_schema
            required = set(schema.get("required", []))
            params = ", ".join(
                f"{name}*" if name in required else name
                for name in schema.get("properties", {})
            )
            table.add_row(summary.name, params, summary.description)
        self._console.print(table)

    def show_results(self, results: Sequence[ToolResult], elapsed: float) -> None:
        """Table of results in submission order, then a summary line."""
        table = Table(title="Results")
        table.add_column("Invocation", style="dim")
        table.add_column("Tool", style="bold")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("ms", justify="right")
        table.add_column("Output")
        for r in results:
            if r.success:
                status = "[green]ok[/green]" + (" [dim](cached)[/dim]" if r.cached else "")
                output = _render_value(r.value)
            else:
                kind = r.error_kind.value if r.error_kind else "error"
                status = f"[red]{kind}[/red]"
                output = r.error_message or ""
            table.add_row(
                r.invocation_id,
                r.tool_name,
                status,
                str(r.attempts),
                f"{r.duration_ms:.0f}",
                _truncate(output),
            )
        self._console.print(table)
        failed = sum(1 for r in results if not r.success)
        self._console.print(
            f"[dim]{len(results)} invocations | {failed} failed | "
            f"Elapsed: {elapsed:.2f}s[/dim]"
        )

    def show_rejection(self, error: BatchRejectedError) -> None:
        """Panel listing every reason a batch was rejected."""
        body = "\n".join(f"- {p}" for p in error.problems)
        self._console.print(
            Panel(body, title="[bold red]Batch rejected[/bold red]", border_style="red")
        )
