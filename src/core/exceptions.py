"""Core exceptions for the gateway."""

from typing import Optional


class GatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(GatewayError):
    """Raised when there's an issue with the configuration."""
    pass


class InvalidRequestError(GatewayError):
    """Raised when an incoming request cannot be translated."""

    def __init__(self, message: str, code: str = "invalid_request", param: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.param = param


class UpstreamError(GatewayError):
    """Raised when the upstream API cannot be reached or answers unusably."""

    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamStreamError(UpstreamError):
    """Raised when the upstream byte stream fails after it was opened."""
    pass


class MalformedStreamError(GatewayError):
    """Raised when an upstream SSE payload cannot be decoded."""

    def __init__(self, message: str, payload: str = "") -> None:
        super().__init__(message)
        self.payload = payload
