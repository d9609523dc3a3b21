"""API module for the gateway."""

from .routes import chat_completions, embeddings, list_models, usage_router

__all__ = [
    "chat_completions",
    "embeddings",
    "list_models",
    "usage_router",
]
