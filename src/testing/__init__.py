"""Testing utilities for in-process gateway simulations."""

from .assertions import (
    assert_chat_stream_valid,
    assert_openai_chat_valid,
    collect_stream_text,
    finish_reasons,
    parse_sse_body,
)
from .fake_upstream import (
    FakeGemini,
    StreamError,
    UpstreamResponse,
    encode_sse_event,
    gemini_chunk,
)
from .proxy_harness import GatewayHarness

__all__ = [
    # Core simulation classes
    "FakeGemini",
    "UpstreamResponse",
    "StreamError",
    "GatewayHarness",
    # Builders
    "encode_sse_event",
    "gemini_chunk",
    # Assertions
    "assert_chat_stream_valid",
    "assert_openai_chat_valid",
    "collect_stream_text",
    "finish_reasons",
    "parse_sse_body",
]
