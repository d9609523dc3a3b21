"""API routes for the gateway."""

from .chat import chat_completions
from .embeddings import embeddings
from .models import list_models
from .usage import router as usage_router

__all__ = [
    "chat_completions",
    "embeddings",
    "list_models",
    "usage_router",
]
