"""Helpers shared by the OpenAI-compatible endpoints."""

import json
import logging
from typing import Any, Mapping, Optional

import httpx
from fastapi import HTTPException, Request, Response

from ..core.exceptions import InvalidRequestError, UpstreamError
from ..core.upstream import filter_response_headers
from ..usage_metrics import RequestTracker

logger = logging.getLogger("gemgate")


def error_detail(
    message: str,
    *,
    error_type: str = "invalid_request_error",
    code: Optional[str] = None,
    param: Optional[str] = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"message": message, "type": error_type, "code": code}
    if param:
        error["param"] = param
    return {"error": error}


def invalid_request(exc: InvalidRequestError) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail=error_detail(exc.message, code=exc.code, param=exc.param),
    )


def upstream_failure(exc: UpstreamError) -> HTTPException:
    code = "upstream_timeout" if exc.status_code == 504 else "upstream_unavailable"
    return HTTPException(
        status_code=exc.status_code,
        detail=error_detail(exc.message, error_type="upstream_error", code=code),
    )


def upstream_passthrough(status_code: int, headers: Mapping[str, str], content: bytes) -> Response:
    """Relay an upstream error response to the client unchanged."""
    filtered = filter_response_headers(headers)
    media_type = filtered.pop("content-type", None) or "application/json"
    return Response(content=content, status_code=status_code, headers=filtered, media_type=media_type)


def passthrough_httpx(resp: httpx.Response) -> Response:
    return upstream_passthrough(resp.status_code, resp.headers, resp.content)


def decode_upstream_json(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.error(f"Upstream returned invalid JSON: {exc}")
        raise HTTPException(
            status_code=502,
            detail=error_detail(
                "Upstream returned an invalid JSON body",
                error_type="upstream_error",
                code="invalid_upstream_response",
            ),
        ) from exc
    if not isinstance(data, dict):
        raise HTTPException(
            status_code=502,
            detail=error_detail(
                "Upstream returned an unexpected JSON body",
                error_type="upstream_error",
                code="invalid_upstream_response",
            ),
        )
    return data


async def read_json_payload(request: Request, tracker: RequestTracker) -> Mapping[str, Any]:
    """Read the request body as a JSON object or raise a 400."""
    body = await request.body()
    try:
        payload = json.loads(body or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.error(f"Invalid JSON payload: {exc}")
        tracker.finish()
        raise HTTPException(
            status_code=400,
            detail=error_detail("Invalid JSON payload", code="invalid_json"),
        ) from exc

    if not isinstance(payload, Mapping):
        logger.error("Payload must be a JSON object")
        tracker.finish()
        raise HTTPException(
            status_code=400,
            detail=error_detail("Request body must be a JSON object", code="invalid_json_shape"),
        )
    return payload
