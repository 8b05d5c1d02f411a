"""Pytest fixtures and configuration."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest


@pytest.fixture(autouse=True)
def reset_global_client():
    """Reset the module-level async client between tests to avoid state leakage."""
    import batch_stream_inference.invoker as mod
    old_client = mod._async_client
    mod._async_client = None
    yield
    mod._async_client = old_client


def embedding_body(payload):
    """Echo each input back as its own 'embedding', with shuffled entry order."""
    entries = [{"index": i, "embedding": text} for i, text in enumerate(payload["input"])]
    return {"object": "list", "data": list(reversed(entries))}


@pytest.fixture
def echo_invoker():
    """An invoker whose embeddings response echoes the inputs."""
    async def _invoke(operation, payload):
        await asyncio.sleep(0)
        return embedding_body(payload)

    invoker = MagicMock()
    invoker.invoke = AsyncMock(side_effect=_invoke)
    return invoker


@pytest.fixture
def no_sleep():
    return AsyncMock()
