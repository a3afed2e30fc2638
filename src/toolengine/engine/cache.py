"""Result cache for idempotent tools."""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from toolengine.tools.base import ToolResult


def fingerprint(tool_name: str, parameters: Mapping[str, Any]) -> str:
    """Stable hash of ``(tool_name, sorted parameters)``."""
    canonical = json.dumps(
        [tool_name, parameters],
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


@runtime_checkable
class ResultCache(Protocol):
    """Pluggable cache backend."""

    def get(self, key: str) -> ToolResult | None: ...

    def put(self, key: str, result: ToolResult, ttl: float) -> None: ...


class MemoryResultCache:
    """In-process TTL cache with LRU eviction past ``max_entries``."""

    def __init__(
        self,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, ToolResult]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> ToolResult | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, result = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return result

    def put(self, key: str, result: ToolResult, ttl: float) -> None:
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + ttl, result)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
