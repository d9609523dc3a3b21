"""Pytest configuration and fixtures for testing."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, AsyncIterator, Generator, Iterable

import pytest

# Add the project root to the path so ``src`` imports resolve
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

FAKE_GEMINI_URL = "http://gemini.local"


# =============================================================================
# Transport Registry Fixtures
# =============================================================================


@pytest.fixture
def clear_transport_registry() -> Generator[None, None, None]:
    """Clear upstream transport registry after test.

    Use this fixture in tests that register fake transports.
    """
    from src.core.upstream import clear_upstream_transports

    yield
    clear_upstream_transports()


# =============================================================================
# Harness Configuration Builders
# =============================================================================


def build_gateway_config(
    base_url: str = FAKE_GEMINI_URL,
    *,
    api_key: str | None = "config-key",
    default_chat_model: str = "gemini-1.5-pro-latest",
    default_embeddings_model: str = "text-embedding-004",
    safety_threshold: str = "BLOCK_NONE",
    timeout: float = 5.0,
) -> dict[str, Any]:
    """Build a gateway config pointing at a fake Gemini upstream.

    Args:
        base_url: Upstream server URL
        api_key: Key used when a request carries no bearer token
        default_chat_model: Fallback chat model
        default_embeddings_model: Fallback embeddings model
        safety_threshold: Threshold for every harm category
        timeout: Upstream timeout in seconds

    Returns:
        Config dict for GatewayHarness
    """
    upstream: dict[str, Any] = {"base_url": base_url, "timeout": timeout}
    if api_key:
        upstream["api_key"] = api_key
    return {
        "upstream": upstream,
        "models": {
            "default_chat_model": default_chat_model,
            "default_embeddings_model": default_embeddings_model,
            "safety_threshold": safety_threshold,
        },
    }


# =============================================================================
# Stream helpers
# =============================================================================


async def aiter_chunks(chunks: Iterable[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


async def collect(stream: AsyncIterator[Any]) -> list[Any]:
    return [item async for item in stream]
