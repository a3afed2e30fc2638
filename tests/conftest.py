"""Shared test fixtures for toolengine."""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

import pytest

from toolengine.engine.engine import ToolEngine
from toolengine.tools.registry import ToolRegistry

from tests.fixtures.tools import FakeClock, make_tool

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture
async def engine() -> AsyncIterator[ToolEngine]:
    """Started engine with a small worker pool and an echo tool."""
    eng = ToolEngine(workers=4, admission_timeout=5.0, rng=random.Random(0))
    eng.register_tool(make_tool())
    async with eng:
        yield eng
