"""Gemini OpenAI Gateway

A small gateway that exposes the OpenAI Chat Completions, Embeddings and
Models APIs on top of Google's Gemini API.

This module provides:
- An OpenAI-compatible FastAPI application
- Request and response translation, streaming included
- Realtime in-memory usage counters

Example:
    >>> from src.main import app
    >>> import uvicorn
    >>> uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from .main import app, create_app, config, gateway, SERVER_HOST, SERVER_PORT
from .core import Gateway, GatewayError, GatewaySettings
from .config_loader import load_config
from .logging import logger, setup_logging

__all__ = [
    "app",
    "config",
    "create_app",
    "gateway",
    "Gateway",
    "GatewayError",
    "GatewaySettings",
    "load_config",
    "logger",
    "SERVER_HOST",
    "SERVER_PORT",
    "setup_logging",
]
