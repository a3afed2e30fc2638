"""Configuration loading: layered TOML files, tool declarations, secrets.

Layers, lowest priority first:
    1. Built-in defaults (Pydantic model defaults)
    2. User config: ``$XDG_CONFIG_HOME/toolengine/config.toml``
    3. Project config: ``./toolengine.toml``
    4. ``$TOOLENGINE_CONFIG`` (explicit path, must exist)
    5. The ``path`` argument of :func:`load_config`
    6. Programmatic ``overrides``

Tables merge key by key, so a project file can tighten one policy of a
tool declared in the user file. Lists and scalars are replaced whole.

Each layer is anchored to its file: a relative ``cwd`` of a shell tool
is resolved against the directory of the file that declared it.

Secrets never need to live in a config file. An http tool's
``headers_env`` maps a header to an environment variable
(``{"Authorization" = "SERVICE_TOKEN"}``); the loader fills the header
from the environment unless it is given literally.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from toolengine.core.errors import ConfigError

from .schema import ToolEngineConfig

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "TOOLENGINE_CONFIG"
PROJECT_FILE = "toolengine.toml"


def _user_config_path() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "toolengine" / "config.toml"


def _layer_paths(explicit: Path | None, *, discover: bool) -> list[Path]:
    """Config files to merge, lowest priority first."""
    paths: list[Path] = []
    if discover:
        paths.extend(
            p for p in (_user_config_path(), Path.cwd() / PROJECT_FILE) if p.is_file()
        )
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path:
            if not Path(env_path).is_file():
                msg = f"{CONFIG_ENV_VAR} points to non-existent file: {env_path}"
                raise ConfigError(msg)
            paths.append(Path(env_path))
    if explicit is not None:
        if not explicit.is_file():
            msg = f"Config file not found: {explicit}"
            raise ConfigError(msg)
        paths.append(explicit)
    return paths


def _read_layer(path: Path) -> dict[str, Any]:
    """Parse one TOML file and anchor its tool paths to its directory."""
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        msg = f"Invalid TOML in {path}: {e}"
        raise ConfigError(msg) from e
    except OSError as e:
        msg = f"Cannot read config file {path}: {e}"
        raise ConfigError(msg) from e

    tools = data.get("tools")
    if not isinstance(tools, dict):
        return data
    for name, table in tools.items():
        if not isinstance(table, dict):
            msg = f"[tools.{name}] in {path} must be a table"
            raise ConfigError(msg)
        cwd = table.get("cwd")
        if isinstance(cwd, str) and not Path(cwd).is_absolute():
            table["cwd"] = str((path.parent / cwd).resolve())
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base. Override wins on conflicts."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _resolve_header_secrets(config: ToolEngineConfig) -> None:
    """Fill http tool headers from environment variables (in place)."""
    for name, tool in config.tools.items():
        for header, env_var in tool.headers_env.items():
            if header in tool.headers:
                continue
            value = os.environ.get(env_var)
            if value is None:
                logger.warning(
                    "Tool %s: %s is unset; sending no %s header", name, env_var, header
                )
                continue
            tool.headers[header] = value


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
    *,
    discover: bool = True,
) -> ToolEngineConfig:
    """Load and validate configuration.

    Args:
        path: Explicit config file path (highest file priority).
        overrides: Dict of overrides merged last (highest overall priority).
        discover: Whether to look for user/project/env config files.

    Raises:
        ConfigError: On invalid TOML, missing files, or validation failure.
    """
    explicit = Path(path) if path is not None else None
    merged: dict[str, Any] = {}
    for layer in _layer_paths(explicit, discover=discover):
        logger.debug("Loading config layer %s", layer)
        merged = _deep_merge(merged, _read_layer(layer))
    if overrides:
        merged = _deep_merge(merged, overrides)

    try:
        config = ToolEngineConfig.model_validate(merged)
    except ValidationError as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigError(msg) from e

    _resolve_header_secrets(config)
    return config
