"""Gemini upstream settings, HTTP calls and transport registry."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Optional
from urllib.parse import urlparse

import httpx

from .exceptions import ConfigurationError, UpstreamError, UpstreamStreamError

logger = logging.getLogger("gemgate")

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_API_VERSION = "v1beta"
DEFAULT_API_CLIENT = "genai-js/0.21.0"
DEFAULT_TIMEOUT = 60.0

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# In-process transports keyed by host, so tests can stand in for Gemini
_TRANSPORTS: dict[str, httpx.AsyncBaseTransport] = {}


def _normalize_host(host: str) -> str:
    return host.strip().lower()


def register_upstream_transport(host: str, transport: httpx.AsyncBaseTransport) -> None:
    """Register a transport for a host (netloc, e.g. 'gemini.local:8080')."""
    if not host:
        raise ValueError("host is required")
    normalized = _normalize_host(host)
    _TRANSPORTS[normalized] = transport
    logger.debug("Registered upstream transport for host '%s'", normalized)


def register_upstream_transport_for_url(url: str, transport: httpx.AsyncBaseTransport) -> None:
    register_upstream_transport(urlparse(url).netloc, transport)


def clear_upstream_transports() -> None:
    _TRANSPORTS.clear()


def get_upstream_transport(url: str) -> Optional[httpx.AsyncBaseTransport]:
    host = urlparse(url).netloc if url else ""
    return _TRANSPORTS.get(_normalize_host(host)) if host else None


@dataclass
class UpstreamSettings:
    """Where and how to reach the Gemini API."""

    base_url: str = DEFAULT_BASE_URL
    api_version: str = DEFAULT_API_VERSION
    api_client: str = DEFAULT_API_CLIENT
    timeout: float = DEFAULT_TIMEOUT
    api_key: Optional[str] = None

    @classmethod
    def from_config(cls, section: Optional[Mapping[str, Any]]) -> "UpstreamSettings":
        section = section or {}
        try:
            timeout = float(section.get("timeout", DEFAULT_TIMEOUT))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"upstream.timeout must be a number: {exc}") from exc
        if timeout <= 0:
            raise ConfigurationError("upstream.timeout must be positive")
        base_url = str(section.get("base_url") or DEFAULT_BASE_URL).rstrip("/")
        if not base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"upstream.base_url must be an http(s) URL: {base_url}")
        api_key = section.get("api_key")
        return cls(
            base_url=base_url,
            api_version=str(section.get("api_version") or DEFAULT_API_VERSION).strip("/"),
            api_client=str(section.get("api_client") or DEFAULT_API_CLIENT),
            timeout=timeout,
            api_key=str(api_key) if api_key else None,
        )

    def build_url(self, resource: str, action: Optional[str] = None, *, sse: bool = False) -> str:
        """Build a Gemini REST URL such as ``.../v1beta/models/x:generateContent``."""
        url = f"{self.base_url}/{self.api_version}/{resource.lstrip('/')}"
        if action:
            url = f"{url}:{action}"
        if sse:
            url = f"{url}?alt=sse"
        return url


def build_outbound_headers(settings: UpstreamSettings, api_key: Optional[str]) -> dict[str, str]:
    """Build headers for a Gemini call; the client's key wins over the configured one."""
    headers = {
        "x-goog-api-client": settings.api_client,
        "Content-Type": "application/json",
        # Explicitly request uncompressed responses
        "Accept-Encoding": "identity",
    }
    key = api_key or settings.api_key
    if key:
        headers["x-goog-api-key"] = key
    return headers


def extract_api_key(authorization: Optional[str]) -> Optional[str]:
    """Pull the key out of an ``Authorization: Bearer <key>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if not token:
        return None
    if scheme.lower() != "bearer":
        logger.debug("Ignoring non-bearer Authorization scheme %r", scheme)
        return None
    return token.strip() or None


def filter_response_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Filter response headers, removing hop-by-hop headers."""
    filtered: dict[str, str] = {}
    for key, value in headers.items():
        key_lower = key.lower()
        # Drop headers FastAPI will recompute or that no longer match the payload
        if key_lower in HOP_BY_HOP_HEADERS or key_lower in {
            "content-length",
            "transfer-encoding",
            "content-encoding",
        }:
            continue
        filtered[key] = value
    return filtered


def format_httpx_error(exc: Any, settings: UpstreamSettings, url: Optional[str] = None) -> str:
    """Produce a detailed, user-facing description of an httpx error."""
    parts = [exc.__class__.__name__]
    message = str(exc).strip()
    if message:
        parts.append(message)

    try:
        request = exc.request
    except (AttributeError, RuntimeError):
        request = None
    if request is not None:
        parts.append(f"request={request.method} {request.url}")
    elif url:
        parts.append(f"url={url}")

    if isinstance(exc, httpx.TimeoutException):
        parts.append(f"timeout={settings.timeout}s")

    return "; ".join(parts)


def _status_for_httpx_error(exc: httpx.HTTPError) -> int:
    return 504 if isinstance(exc, httpx.TimeoutException) else 502


class UpstreamStream:
    """An open streaming response from Gemini.

    The owner must call ``aclose`` once done, including on cancellation.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        response: httpx.Response,
        settings: UpstreamSettings,
        url: str,
    ) -> None:
        self._client = client
        self._response = response
        self._settings = settings
        self.url = url
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Yield decoded body bytes, wrapping transport failures."""
        try:
            async for chunk in self._response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.HTTPError as exc:
            raise UpstreamStreamError(
                format_httpx_error(exc, self._settings, self.url),
                status_code=_status_for_httpx_error(exc),
            ) from exc

    async def aread(self) -> bytes:
        try:
            return await self._response.aread()
        except httpx.HTTPError as exc:
            raise UpstreamError(
                format_httpx_error(exc, self._settings, self.url),
                status_code=_status_for_httpx_error(exc),
            ) from exc

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug(f"Closing upstream stream for {self.url}")
        await self._response.aclose()
        await self._client.aclose()


class GeminiClient:
    """Thin async client for the Gemini REST endpoints the gateway uses."""

    def __init__(self, settings: UpstreamSettings) -> None:
        self.settings = settings

    def _client(self, url: str, timeout: httpx.Timeout | float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout,
            transport=get_upstream_transport(url),
            follow_redirects=True,
        )

    async def _request(
        self,
        method: str,
        url: str,
        api_key: Optional[str],
        body: Optional[Mapping[str, Any]] = None,
    ) -> httpx.Response:
        headers = build_outbound_headers(self.settings, api_key)
        content = json.dumps(body).encode("utf-8") if body is not None else None
        logger.debug(f"Sending {method} {url}")
        try:
            async with self._client(url, self.settings.timeout) as client:
                response = await client.request(method, url, headers=headers, content=content)
        except httpx.HTTPError as exc:
            description = format_httpx_error(exc, self.settings, url)
            logger.error(f"Upstream request failed: {description}")
            raise UpstreamError(description, status_code=_status_for_httpx_error(exc)) from exc
        logger.debug(f"Received response from {url}: status {response.status_code}")
        return response

    async def generate_content(
        self, model: str, body: Mapping[str, Any], api_key: Optional[str]
    ) -> httpx.Response:
        url = self.settings.build_url(f"models/{model}", "generateContent")
        return await self._request("POST", url, api_key, body)

    async def stream_generate_content(
        self, model: str, body: Mapping[str, Any], api_key: Optional[str]
    ) -> UpstreamStream:
        """Open a streamGenerateContent SSE response.

        Raises:
            UpstreamError: the request could not be sent or no response arrived
        """
        url = self.settings.build_url(f"models/{model}", "streamGenerateContent", sse=True)
        stream_timeout = httpx.Timeout(
            connect=self.settings.timeout,
            read=None,
            write=self.settings.timeout,
            pool=self.settings.timeout,
        )
        client = self._client(url, stream_timeout)
        try:
            request = client.build_request(
                "POST",
                url,
                headers=build_outbound_headers(self.settings, api_key),
                content=json.dumps(body).encode("utf-8"),
            )
            logger.debug(f"Sending streaming request to {url}")
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            description = format_httpx_error(exc, self.settings, url)
            logger.error(f"Failed to open upstream stream: {description}")
            raise UpstreamError(description, status_code=_status_for_httpx_error(exc)) from exc
        except BaseException:
            await client.aclose()
            raise
        logger.debug(f"Upstream stream opened: {url} status {response.status_code}")
        return UpstreamStream(client, response, self.settings, url)

    async def list_models(self, api_key: Optional[str]) -> httpx.Response:
        return await self._request("GET", self.settings.build_url("models"), api_key)

    async def batch_embed_contents(
        self, model_path: str, body: Mapping[str, Any], api_key: Optional[str]
    ) -> httpx.Response:
        url = self.settings.build_url(model_path, "batchEmbedContents")
        return await self._request("POST", url, api_key, body)
