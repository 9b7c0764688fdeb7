"""
Pytest fixtures shared by the llm-meter tests.
"""
import asyncio
from types import SimpleNamespace

import pytest

from llm_meter import context
from llm_meter.config import reset_config
from llm_meter.emitters import MemoryEmitter
from llm_meter.instrument import uninstrument_all


@pytest.fixture(autouse=True)
def isolated_state():
    """Reset process-wide state around every test."""
    context.reset_global_context()
    reset_config()
    yield
    uninstrument_all()
    context.reset_global_context()
    reset_config()


@pytest.fixture
def sink():
    """In-memory metric sink."""
    return MemoryEmitter()


async def _aiter(items, error=None):
    for item in items:
        yield item
    if error is not None:
        raise error


@pytest.fixture
def make_stream():
    """Factory for async iterators standing in for SDK streams."""
    return _aiter


@pytest.fixture
def chat_response():
    """OpenAI Chat Completions response as a plain attribute object."""
    return SimpleNamespace(
        id="chatcmpl-123",
        model="gpt-4o",
        choices=[SimpleNamespace(message=SimpleNamespace(content="Hi", tool_calls=None))],
        usage={"prompt_tokens": 12, "completion_tokens": 8, "total_tokens": 20},
    )


@pytest.fixture
def drain():
    """Let scheduled callbacks and tasks run (stream finalizers, reports)."""

    async def _drain(rounds: int = 10):
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _drain
