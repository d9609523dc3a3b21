"""Gemini API translation helpers.

Provides translation between OpenAI Chat Completions format and the Gemini
generateContent API, enabling OpenAI clients to talk to Gemini models.
"""

from .passthrough import (
    batch_embeddings_to_openai,
    embeddings_to_batch_request,
    gemini_models_to_openai,
)
from .stream_adapter import (
    GeminiToChatStreamAdapter,
    StreamState,
    adapt_gemini_stream,
    finalize_stream,
    transform_event,
)
from .translator import (
    chat_completions_to_generate_content,
    convert_finish_reason,
    generate_content_to_chat_completion,
    resolve_chat_model,
)

__all__ = [
    "adapt_gemini_stream",
    "batch_embeddings_to_openai",
    "chat_completions_to_generate_content",
    "convert_finish_reason",
    "embeddings_to_batch_request",
    "finalize_stream",
    "gemini_models_to_openai",
    "generate_content_to_chat_completion",
    "GeminiToChatStreamAdapter",
    "resolve_chat_model",
    "StreamState",
    "transform_event",
]
