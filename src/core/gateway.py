"""Gateway settings and the object routes use to reach Gemini."""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from ..gemini.passthrough import DEFAULT_EMBEDDINGS_MODEL
from ..gemini.translator import DEFAULT_CHAT_MODEL, DEFAULT_SAFETY_THRESHOLD
from .exceptions import ConfigurationError
from .upstream import GeminiClient, UpstreamSettings

logger = logging.getLogger("gemgate")

_SAFETY_THRESHOLDS = {
    "BLOCK_NONE",
    "BLOCK_ONLY_HIGH",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_LOW_AND_ABOVE",
    "HARM_BLOCK_THRESHOLD_UNSPECIFIED",
    "OFF",
}


@dataclass
class GatewaySettings:
    """Parsed gateway configuration."""

    upstream: UpstreamSettings = field(default_factory=UpstreamSettings)
    default_chat_model: str = DEFAULT_CHAT_MODEL
    default_embeddings_model: str = DEFAULT_EMBEDDINGS_MODEL
    safety_threshold: str = DEFAULT_SAFETY_THRESHOLD

    @classmethod
    def from_config(cls, config: Optional[Mapping[str, Any]]) -> "GatewaySettings":
        config = config or {}
        models_cfg = config.get("models") or {}
        if not isinstance(models_cfg, Mapping):
            raise ConfigurationError("'models' section must be a mapping")

        threshold = str(models_cfg.get("safety_threshold") or DEFAULT_SAFETY_THRESHOLD).upper()
        if threshold not in _SAFETY_THRESHOLDS:
            raise ConfigurationError(f"Unknown safety_threshold: {threshold}")

        return cls(
            upstream=UpstreamSettings.from_config(config.get("upstream")),
            default_chat_model=str(models_cfg.get("default_chat_model") or DEFAULT_CHAT_MODEL),
            default_embeddings_model=str(
                models_cfg.get("default_embeddings_model") or DEFAULT_EMBEDDINGS_MODEL
            ),
            safety_threshold=threshold,
        )


class Gateway:
    """Holds the settings and upstream client for one running application."""

    def __init__(self, config: Mapping[str, Any]) -> None:
        self.settings = GatewaySettings.from_config(config)
        self.client = GeminiClient(self.settings.upstream)
        logger.debug(
            "Gateway configured for %s/%s (default model %s)",
            self.settings.upstream.base_url,
            self.settings.upstream.api_version,
            self.settings.default_chat_model,
        )
