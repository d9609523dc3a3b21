"""Models listing endpoint - OpenAI compatible."""

import logging

from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse

from ...core.exceptions import UpstreamError
from ...core.registry import get_gateway
from ...core.upstream import extract_api_key
from ...gemini import gemini_models_to_openai
from ..common import decode_upstream_json, passthrough_httpx, upstream_failure

logger = logging.getLogger("gemgate")


async def list_models(request: Request) -> Response:
    """List Gemini models in OpenAI API format.

    GET /v1/models
    """
    logger.info("Received models list request")
    gateway = get_gateway()
    api_key = extract_api_key(request.headers.get("authorization"))

    try:
        resp = await gateway.client.list_models(api_key)
    except UpstreamError as exc:
        raise upstream_failure(exc) from exc

    if resp.status_code >= 400:
        logger.warning(f"Upstream models listing returned status {resp.status_code}")
        return passthrough_httpx(resp)

    try:
        data = decode_upstream_json(resp)
    except HTTPException:
        logger.error("Models listing could not be decoded")
        raise
    listing = gemini_models_to_openai(data)
    logger.info(f"Listing {len(listing['data'])} models")
    return JSONResponse(listing)
