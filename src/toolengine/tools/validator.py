"""Parameter validation against a tool's schema and safety policy.

Pure functions: no registry access, no IO. ``validate`` collects every
problem before reporting, so callers get a complete error list.

The denylist is a pattern filter over input text. It is a
defense-in-depth layer only; it cannot make, for example, a SQL tool
read-only.
"""

from __future__ import annotations

import functools
import re
from typing import TYPE_CHECKING, Any

from toolengine.core.errors import ConfigError, ValidationFailedError, ValidationIssue
from toolengine.tools.base import PARAMETER_TYPES

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from toolengine.tools.base import ParameterSpec, ToolDefinition

_TRUE_STRINGS = frozenset({"true", "yes", "1", "on"})
_FALSE_STRINGS = frozenset({"false", "no", "0", "off"})


class _CoercionError(Exception):
    pass


@functools.lru_cache(maxsize=512)
def _compile_deny(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return re.compile(re.escape(pattern), re.IGNORECASE)


@functools.lru_cache(maxsize=512)
def _compile_full(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


# ── Coercion ──────────────────────────────────────────────────


def _coerce(value: Any, type_name: str) -> Any:
    """Coerce ``value`` to the declared type or raise _CoercionError."""
    if type_name == "string":
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        raise _CoercionError

    if type_name == "integer":
        if isinstance(value, bool):
            raise _CoercionError
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                raise _CoercionError from None
        raise _CoercionError

    if type_name == "number":
        if isinstance(value, bool):
            raise _CoercionError
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                raise _CoercionError from None
        raise _CoercionError

    if type_name == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise _CoercionError

    if type_name == "array":
        if isinstance(value, (list, tuple)):
            return list(value)
        raise _CoercionError

    if type_name == "object":
        if isinstance(value, dict):
            return dict(value)
        raise _CoercionError

    raise _CoercionError


# ── Constraint checks ─────────────────────────────────────────


def _is_member(value: Any, allowed: frozenset[Any]) -> bool:
    try:
        return value in allowed
    except TypeError:
        return False


def _check_constraints(spec: ParameterSpec, value: Any) -> Iterator[ValidationIssue]:
    if spec.max_length is not None and isinstance(value, (str, list)):
        if len(value) > spec.max_length:
            yield ValidationIssue(
                spec.name,
                f"length {len(value)} exceeds maximum {spec.max_length}",
            )

    if spec.pattern is not None and isinstance(value, str):
        if _compile_full(spec.pattern).fullmatch(value) is None:
            yield ValidationIssue(spec.name, f"does not match pattern {spec.pattern!r}")

    if spec.allowed_values is not None and not _is_member(value, spec.allowed_values):
        yield ValidationIssue(spec.name, f"value {value!r} is not an allowed value")


def _strings(value: Any) -> Iterator[str]:
    """Yield every string in a (possibly nested) parameter value."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _strings(item)
    elif isinstance(value, dict):
        for key, item in value.items():
            if isinstance(key, str):
                yield key
            yield from _strings(item)


def _check_safety(
    tool: ToolDefinition, field: str, value: Any
) -> Iterator[ValidationIssue]:
    allowed = tool.safety.allowlist.get(field)
    if allowed is not None and not _is_member(value, allowed):
        yield ValidationIssue(field, f"value {value!r} is not in the allowlist")

    for pattern in tool.safety.denylist:
        compiled = _compile_deny(pattern)
        if any(compiled.search(text) for text in _strings(value)):
            yield ValidationIssue(field, f"matches forbidden pattern {pattern!r}")


# ── Public API ────────────────────────────────────────────────


def validate(tool: ToolDefinition, params: Mapping[str, Any]) -> dict[str, Any]:
    """Validate and coerce ``params`` for ``tool``.

    Returns:
        The coerced parameter mapping, with defaults filled in.

    Raises:
        ValidationFailedError: With every issue found, if any.
    """
    issues: list[ValidationIssue] = []
    coerced: dict[str, Any] = {}
    declared = {spec.name for spec in tool.parameters}

    for spec in tool.parameters:
        if spec.name not in params or params[spec.name] is None:
            if spec.required:
                issues.append(ValidationIssue(spec.name, "required parameter missing"))
            elif spec.default is not None:
                coerced[spec.name] = spec.default
            continue

        try:
            value = _coerce(params[spec.name], spec.type)
        except _CoercionError:
            got = type(params[spec.name]).__name__
            issues.append(ValidationIssue(spec.name, f"expected {spec.type}, got {got}"))
            continue

        issues.extend(_check_constraints(spec, value))
        issues.extend(_check_safety(tool, spec.name, value))
        coerced[spec.name] = value

    for name in params:
        if name not in declared:
            issues.append(ValidationIssue(name, "unknown parameter"))

    if issues:
        raise ValidationFailedError(tool.name, issues)
    return coerced


def validate_definition(tool: ToolDefinition) -> None:
    """Sanity-check a tool definition before registration.

    Raises:
        ConfigError: Describing the first problem found.
    """
    if not tool.name or not tool.name.strip():
        msg = "Tool name must be non-empty"
        raise ConfigError(msg)

    seen: set[str] = set()
    for spec in tool.parameters:
        if spec.name in seen:
            msg = f"[{tool.name}] duplicate parameter {spec.name!r}"
            raise ConfigError(msg)
        seen.add(spec.name)
        if spec.type not in PARAMETER_TYPES:
            msg = f"[{tool.name}] parameter {spec.name!r} has unknown type {spec.type!r}"
            raise ConfigError(msg)
        if spec.pattern is not None:
            try:
                _compile_full(spec.pattern)
            except re.error as e:
                msg = f"[{tool.name}] invalid pattern for {spec.name!r}: {e}"
                raise ConfigError(msg) from e

    unknown = set(tool.safety.allowlist) - seen
    if unknown:
        msg = f"[{tool.name}] allowlist names undeclared parameters: {sorted(unknown)}"
        raise ConfigError(msg)

    if tool.timeout <= 0:
        msg = f"[{tool.name}] timeout must be positive"
        raise ConfigError(msg)
    if tool.concurrency_limit is not None and tool.concurrency_limit < 1:
        msg = f"[{tool.name}] concurrency_limit must be >= 1"
        raise ConfigError(msg)
    if tool.rate_limit.requests_per_second < 0 or tool.rate_limit.burst_size < 1:
        msg = f"[{tool.name}] rate limit needs rps >= 0 and burst >= 1"
        raise ConfigError(msg)
    if tool.cache_ttl < 0:
        msg = f"[{tool.name}] cache_ttl must be >= 0"
        raise ConfigError(msg)
