"""Core module initialization."""

from .exceptions import (
    ConfigurationError,
    GatewayError,
    InvalidRequestError,
    MalformedStreamError,
    UpstreamError,
    UpstreamStreamError,
)
from .gateway import Gateway, GatewaySettings
from .registry import get_gateway, set_gateway
from .sse import FrameReassembler, SSELineFramer, decode_data_line, detect_stream_error
from .upstream import (
    GeminiClient,
    UpstreamSettings,
    UpstreamStream,
    build_outbound_headers,
    clear_upstream_transports,
    extract_api_key,
    filter_response_headers,
    format_httpx_error,
    register_upstream_transport,
    register_upstream_transport_for_url,
)

__all__ = [
    "ConfigurationError",
    "FrameReassembler",
    "Gateway",
    "GatewayError",
    "GatewaySettings",
    "GeminiClient",
    "InvalidRequestError",
    "MalformedStreamError",
    "SSELineFramer",
    "UpstreamError",
    "UpstreamSettings",
    "UpstreamStream",
    "UpstreamStreamError",
    "build_outbound_headers",
    "clear_upstream_transports",
    "decode_data_line",
    "detect_stream_error",
    "extract_api_key",
    "filter_response_headers",
    "format_httpx_error",
    "get_gateway",
    "register_upstream_transport",
    "register_upstream_transport_for_url",
    "set_gateway",
]
