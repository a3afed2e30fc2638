"""Tool registry: holds the set of known tool definitions.

Provides registration, lookup, and ordered listing of
:class:`ToolDefinition` objects. Definitions are immutable, so an
update replaces the stored object; invocations already submitted keep
a reference to the definition they were validated against.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from toolengine.core.errors import DuplicateToolError, UnknownToolError
from toolengine.tools.validator import validate_definition

if TYPE_CHECKING:
    from toolengine.tools.base import ToolDefinition, ToolSummary

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry for tool definitions.

    Thread-safe; all access goes through one small lock around the
    name map. Listing order is insertion order, and an overwrite keeps
    the tool's original position.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._lock = threading.Lock()

    def register(self, definition: ToolDefinition, *, overwrite: bool = False) -> None:
        """Register a tool definition.

        Raises:
            DuplicateToolError: If the name is taken and ``overwrite``
                is False.
            ConfigError: If the definition itself is malformed.
        """
        validate_definition(definition)
        with self._lock:
            if definition.name in self._tools and not overwrite:
                raise DuplicateToolError(definition.name)
            replaced = definition.name in self._tools
            self._tools[definition.name] = definition
        logger.debug(
            "%s tool %s", "Replaced" if replaced else "Registered", definition.name
        )

    def unregister(self, name: str) -> bool:
        """Remove a tool. Returns False if it was not registered."""
        with self._lock:
            removed = self._tools.pop(name, None) is not None
        if removed:
            logger.debug("Unregistered tool %s", name)
        return removed

    def lookup(self, name: str) -> ToolDefinition | None:
        """Return the definition for ``name``, or None."""
        with self._lock:
            return self._tools.get(name)

    def get(self, name: str) -> ToolDefinition:
        """Return the definition for ``name``.

        Raises:
            UnknownToolError: If the tool is not registered.
        """
        definition = self.lookup(name)
        if definition is None:
            raise UnknownToolError(name)
        return definition

    def list(self) -> list[ToolDefinition]:
        """Return all definitions in registration order."""
        with self._lock:
            return list(self._tools.values())

    def summaries(self) -> list[ToolSummary]:
        """Return discovery summaries for all registered tools."""
        return [d.summary() for d in self.list()]

    def list_names(self) -> list[str]:
        """Return names of all registered tools."""
        with self._lock:
            return list(self._tools.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._tools
