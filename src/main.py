"""Main FastAPI application for the Gemini gateway."""

import os
import socket
from typing import Any, Mapping

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import chat_completions, embeddings, list_models, usage_router
from .config_loader import load_config, resolve_server_address
from .core import Gateway
from .core.registry import set_gateway
from .logging import setup_logging

# Load configuration
config = load_config()

_proxy_settings = config.get("proxy_settings") or {}
_logging_cfg = _proxy_settings.get("logging") or {}

# GEMGATE_LOG_LEVEL wins over the config file
logger = setup_logging(os.getenv("GEMGATE_LOG_LEVEL") or _logging_cfg.get("level"))

gateway = Gateway(config)
logger.info(
    f"Gateway initialized for {gateway.settings.upstream.base_url} "
    f"(api {gateway.settings.upstream.api_version})"
)

# Set the gateway in the registry for routes to access
set_gateway(gateway)

# Environment variables GEMGATE_HOST / GEMGATE_PORT take priority over config
SERVER_HOST, SERVER_PORT = resolve_server_address(config)


def _cors_options(settings: Mapping[str, Any]) -> dict[str, Any]:
    cors_cfg = settings.get("cors") or {}

    def _list(key: str) -> list[str]:
        value = cors_cfg.get(key, ["*"])
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]

    return {
        "allow_origins": _list("allow_origins"),
        "allow_methods": _list("allow_methods"),
        "allow_headers": _list("allow_headers"),
        "allow_credentials": bool(cors_cfg.get("allow_credentials", False)),
    }


# Create FastAPI application
app = FastAPI(title="Gemini OpenAI Gateway")
app.add_middleware(CORSMiddleware, **_cors_options(_proxy_settings))
logger.info("FastAPI application created")


@app.on_event("startup")
async def startup_event():
    """Handle application startup."""
    logger.info("Gemini gateway starting up...")
    logger.info("Configured bind address %s:%s", SERVER_HOST, SERVER_PORT)
    if SERVER_HOST == "0.0.0.0":
        hostname = socket.gethostname()
        logger.info("Reachable on local network at http://%s:%s", hostname, SERVER_PORT)
        try:
            lan_ip = socket.gethostbyname(hostname)
        except socket.gaierror:
            lan_ip = None
        if lan_ip and not lan_ip.startswith("127."):
            logger.info("Resolved LAN IP:  http://%s:%s", lan_ip, SERVER_PORT)
    logger.info(f"Default chat model: {gateway.settings.default_chat_model}")
    logger.info(f"Default embeddings model: {gateway.settings.default_embeddings_model}")
    logger.info("Gemini gateway ready to handle requests")


# Register routes
app.post("/v1/chat/completions")(chat_completions)
app.post("/v1/embeddings")(embeddings)
app.get("/v1/models")(list_models)
app.include_router(usage_router)


def create_app() -> FastAPI:
    """Factory function to create the FastAPI application.

    Returns:
        The configured FastAPI application instance.
    """
    return app


# Export for external use
__all__ = ["app", "create_app", "gateway", "config", "SERVER_HOST", "SERVER_PORT"]
