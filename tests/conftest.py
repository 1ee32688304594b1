"""Shared fixtures for relay tests."""

from typing import AsyncIterator, Callable, List

import httpx
import pytest
from loguru import logger

from gemini_relay.forwarder import KeyFallbackForwarder
from tests.helpers import make_settings


@pytest.fixture
async def http_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
def forwarder_factory(http_client: httpx.AsyncClient) -> Callable[..., KeyFallbackForwarder]:
    def factory(*credentials: str, **overrides) -> KeyFallbackForwarder:
        return KeyFallbackForwarder(make_settings(*credentials, **overrides), http_client)

    return factory


@pytest.fixture
def log_messages() -> List[str]:
    """Capture loguru output for the duration of a test."""
    messages: List[str] = []
    handler_id = logger.add(messages.append, level="DEBUG", format="{level} {message}")
    yield messages
    logger.remove(handler_id)
