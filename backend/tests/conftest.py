"""
Shared pytest fixtures for the chat backend tests.
"""

from typing import Any, Dict, List

import pytest

from config import runtime_config
from services.chat_store import InMemoryChatStore


@pytest.fixture(autouse=True)
def _runtime_defaults():
    """Fresh config per test; memory writes off so no background tasks leak."""
    runtime_config.reset_to_defaults()
    runtime_config.memory_enabled = False
    yield
    runtime_config.reset_to_defaults()


@pytest.fixture
def store():
    return InMemoryChatStore()


@pytest.fixture
def collected_frames():
    """List plus async emit callback that appends to it."""
    frames: List[Dict[str, Any]] = []

    async def emit(frame: Dict[str, Any]) -> None:
        frames.append(frame)

    return frames, emit
