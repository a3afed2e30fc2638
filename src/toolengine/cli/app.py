"""Main CLI application.

Click commands for the toolengine: tools, run, serve.
"""

from __future__ import annotations

import asyncio
import json as json_mod
import logging
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from toolengine import __version__
from toolengine.config.loader import load_config
from toolengine.core.errors import BatchRejectedError, ConfigError, ToolEngineError

if TYPE_CHECKING:
    from toolengine.config.schema import LoggingConfig, ToolEngineConfig
    from toolengine.engine.engine import ToolEngine


# ── Helpers ──────────────────────────────────────────────────────


def _error(msg: str) -> None:
    """Print an error message to stderr and exit."""
    click.echo(f"Error: {msg}", err=True)
    sys.exit(1)


def _load_config(config_path: str | None) -> ToolEngineConfig:
    """Load config with user-friendly error handling."""
    try:
        return load_config(path=config_path)
    except ConfigError as e:
        _error(str(e))
        raise  # unreachable, keeps mypy happy


def _setup_logging(config: LoggingConfig) -> None:
    """Configure root logging from the ``[logging]`` section.

    Logs go to stderr (or the configured file) so that stdout stays
    free for results and the MCP stdio transport.
    """
    level = getattr(logging, config.level.upper(), logging.INFO)
    kwargs: dict[str, Any] = {
        "level": level,
        "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
    }
    if config.file:
        log_path = Path(config.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        kwargs["filename"] = str(log_path)
    logging.basicConfig(**kwargs)


def _build_engine(config: ToolEngineConfig) -> ToolEngine:
    from toolengine.engine.engine import ToolEngine

    try:
        return ToolEngine.from_config(config)
    except ToolEngineError as e:
        _error(str(e))
        raise  # unreachable


# ── CLI group ────────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="toolengine")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """toolengine - Concurrent, rate-limited tool execution.

    Run batches of tool calls from the command line or serve them over MCP.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# ── tools ────────────────────────────────────────────────────────


@cli.command()
@click.pass_context
def tools(ctx: click.Context) -> None:
    """List configured tools."""
    from toolengine.cli.display import EngineDisplay

    config = _load_config(ctx.obj["config_path"])
    engine = _build_engine(config)
    EngineDisplay().show_tools(engine.list_tools())


# ── run ──────────────────────────────────────────────────────────


@cli.command()
@click.argument("file", type=click.Path(exists=True))
@click.option(
    "--format",
    "output_fmt",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Output format.",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Seconds to wait for the whole batch.",
)
@click.pass_context
def run(ctx: click.Context, file: str, output_fmt: str, timeout: float | None) -> None:
    """Run a batch of tool invocations from a file.

    FILE is a JSON array of invocations (or an object with an
    "invocations" array), or JSONL with one invocation per line. Each
    invocation is {"tool": "...", "parameters": {...}, "id": "...",
    "depends_on": [...]}.
    """
    config = _load_config(ctx.obj["config_path"])
    _setup_logging(config.logging)

    try:
        requests = _parse_batch_file(file)
    except (OSError, ValueError) as e:
        _error(str(e))
        return  # unreachable

    if not requests:
        _error("No invocations found in file.")
        return  # unreachable

    engine = _build_engine(config)
    try:
        exit_code = asyncio.run(_run_async(engine, requests, output_fmt, timeout))
    except ToolEngineError as e:
        _error(str(e))
        return  # unreachable
    if exit_code:
        sys.exit(exit_code)


def _parse_batch_file(file_path: str) -> list[dict[str, Any]]:
    """Parse a batch file into a list of invocation dicts.

    Tries the whole file as JSON first, then falls back to JSONL.
    """
    text = Path(file_path).read_text(encoding="utf-8")
    if not text.strip():
        return []

    try:
        parsed = json_mod.loads(text)
    except json_mod.JSONDecodeError:
        entries: list[Any] = []
        for i, line in enumerate(text.splitlines(), 1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            try:
                entries.append(json_mod.loads(stripped))
            except json_mod.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON on line {i}: {e}") from e
    else:
        if isinstance(parsed, dict):
            parsed = parsed.get("invocations")
        if not isinstance(parsed, list):
            raise ValueError("Batch file must be a JSON array of invocations")
        entries = parsed

    for i, entry in enumerate(entries, 1):
        if not isinstance(entry, dict):
            raise ValueError(f"Invocation {i}: each entry must be a JSON object")
    return entries


async def _run_async(
    engine: ToolEngine,
    requests: list[dict[str, Any]],
    output_fmt: str,
    timeout: float | None,
) -> int:
    """Async implementation for the run command. Returns the exit code."""
    from toolengine.cli.display import EngineDisplay

    display = EngineDisplay()
    start_time = time.monotonic()
    async with engine:
        try:
            results = await engine.run(requests, timeout=timeout)
        except BatchRejectedError as e:
            if output_fmt == "json":
                click.echo(json_mod.dumps({"rejected": e.problems}, indent=2))
            else:
                display.show_rejection(e)
            return 2
    elapsed = time.monotonic() - start_time

    if output_fmt == "json":
        output = {
            "results": [r.to_dict() for r in results],
            "summary": {
                "total": len(results),
                "failed": sum(1 for r in results if not r.success),
                "elapsed_seconds": round(elapsed, 3),
            },
        }
        click.echo(json_mod.dumps(output, indent=2, default=str))
    else:
        display.show_results(results, elapsed)
    return 0 if all(r.success for r in results) else 1


# ── serve ────────────────────────────────────────────────────────


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Start the MCP server on stdio."""
    from toolengine.mcp.server import run_server

    config = _load_config(ctx.obj["config_path"])
    _setup_logging(config.logging)
    engine = _build_engine(config)
    asyncio.run(run_server(engine))
