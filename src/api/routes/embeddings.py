"""OpenAI-compatible embeddings endpoint."""

import logging

from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.requests import ClientDisconnect

from ...core.exceptions import InvalidRequestError, UpstreamError
from ...core.registry import get_gateway
from ...core.upstream import extract_api_key
from ...gemini import batch_embeddings_to_openai, embeddings_to_batch_request
from ...usage_metrics import USAGE_COUNTERS
from ..common import (
    decode_upstream_json,
    invalid_request,
    passthrough_httpx,
    read_json_payload,
    upstream_failure,
)

logger = logging.getLogger("gemgate")


async def embeddings(request: Request) -> Response:
    """Embeddings endpoint - OpenAI compatible.

    POST /v1/embeddings

    Request body:
        - model: string (required) - ``models/...`` names are sent as given,
          anything else uses the configured default embeddings model
        - input: string or array of strings (required) - Text to embed
        - dimensions: integer (optional) - Output dimensionality

    Response:
        {
            "object": "list",
            "data": [{"object": "embedding", "index": 0, "embedding": [...]}],
            "model": "model-name"
        }
    """
    logger.info(f"Handling {request.method} request to {request.url.path}")
    tracker = USAGE_COUNTERS.start_request()

    try:
        payload = await read_json_payload(request, tracker)
    except ClientDisconnect:
        logger.warning("ClientDisconnect while reading embeddings body")
        tracker.finish()
        return Response(status_code=499)

    gateway = get_gateway()
    try:
        model_name, model_path, body = embeddings_to_batch_request(
            payload, gateway.settings.default_embeddings_model
        )
    except InvalidRequestError as exc:
        logger.error(f"Invalid embeddings request: {exc.message}")
        tracker.finish()
        raise invalid_request(exc) from exc

    logger.info(f"Processing embeddings request for {model_path}")
    api_key = extract_api_key(request.headers.get("authorization"))

    try:
        resp = await gateway.client.batch_embed_contents(model_path, body, api_key)
    except UpstreamError as exc:
        tracker.finish()
        raise upstream_failure(exc) from exc

    try:
        if resp.status_code >= 400:
            logger.warning(f"Upstream embeddings returned status {resp.status_code}")
            return passthrough_httpx(resp)
        data = decode_upstream_json(resp)
    except HTTPException:
        logger.error(f"Embeddings response for {model_path} could not be decoded")
        raise
    finally:
        tracker.finish()

    logger.info(f"Embeddings request for {model_path} completed successfully")
    return JSONResponse(batch_embeddings_to_openai(data, model_name))
