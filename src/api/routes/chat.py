"""OpenAI-compatible chat completions endpoint backed by Gemini."""

import asyncio
import logging
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional

from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.requests import ClientDisconnect

from ...core.exceptions import InvalidRequestError, UpstreamError, UpstreamStreamError
from ...core.registry import get_gateway
from ...core.sse import detect_stream_error
from ...core.upstream import UpstreamStream, extract_api_key
from ...gemini import (
    GeminiToChatStreamAdapter,
    chat_completions_to_generate_content,
    generate_content_to_chat_completion,
    resolve_chat_model,
)
from ...usage_metrics import USAGE_COUNTERS, RequestTracker
from ..common import (
    decode_upstream_json,
    error_detail,
    invalid_request,
    passthrough_httpx,
    read_json_payload,
    upstream_failure,
    upstream_passthrough,
)

logger = logging.getLogger("gemgate")


def _include_usage(payload: Mapping[str, Any]) -> bool:
    stream_options = payload.get("stream_options")
    if not isinstance(stream_options, Mapping):
        return False
    return bool(stream_options.get("include_usage"))


async def _prepend(
    first: Optional[dict[str, Any]], rest: AsyncIterator[dict[str, Any]]
) -> AsyncIterator[dict[str, Any]]:
    if first is not None:
        yield first
    async for event in rest:
        yield event


class _RelayResponse(StreamingResponse):
    """StreamingResponse that runs ``on_close`` however the response ends.

    The body generator's own ``finally`` never runs when the client goes
    away before the first body chunk is pulled.
    """

    def __init__(
        self, content: Any, *, on_close: Callable[[], Awaitable[None]], **kwargs: Any
    ) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._on_close()


async def chat_completions(request: Request) -> Response:
    """Chat completions endpoint - OpenAI compatible.

    POST /v1/chat/completions
    """
    req_id = uuid.uuid4().hex[:8]
    start_time = time.perf_counter()
    logger.info(f"[{req_id}] Received chat completions request")
    tracker = USAGE_COUNTERS.start_request()

    try:
        payload = await read_json_payload(request, tracker)
    except ClientDisconnect:
        elapsed = time.perf_counter() - start_time
        logger.warning(f"[{req_id}] ClientDisconnect after {elapsed:.3f}s while reading body")
        tracker.finish()
        return Response(status_code=499)  # Client Closed Request

    messages = payload.get("messages")
    if not messages or not isinstance(messages, list):
        logger.error(f"[{req_id}] Request missing or invalid messages array")
        tracker.finish()
        raise HTTPException(
            status_code=400,
            detail=error_detail(
                "You must provide a messages array", code="missing_parameter", param="messages"
            ),
        )

    gateway = get_gateway()
    settings = gateway.settings
    model = resolve_chat_model(payload.get("model"), settings.default_chat_model)
    is_stream = bool(payload.get("stream"))

    try:
        body = chat_completions_to_generate_content(
            payload, safety_threshold=settings.safety_threshold
        )
    except InvalidRequestError as exc:
        logger.error(f"[{req_id}] Cannot translate request: {exc.message}")
        tracker.finish()
        raise invalid_request(exc) from exc

    api_key = extract_api_key(request.headers.get("authorization"))
    logger.info(f"[{req_id}] Processing request for model {model}, stream={is_stream}")

    if is_stream:
        return await _stream_completion(
            request, req_id, model, body, api_key, _include_usage(payload), tracker
        )

    try:
        resp = await gateway.client.generate_content(model, body, api_key)
    except UpstreamError as exc:
        tracker.finish()
        raise upstream_failure(exc) from exc

    if resp.status_code >= 400:
        logger.warning(f"[{req_id}] Upstream returned status {resp.status_code}")
        tracker.finish()
        return passthrough_httpx(resp)

    try:
        data = decode_upstream_json(resp)
    except HTTPException:
        tracker.finish()
        raise
    result = generate_content_to_chat_completion(data, model)
    tracker.finish(result.get("usage"))
    logger.info(f"[{req_id}] Request for model {model} completed successfully")
    return JSONResponse(result)


async def _stream_completion(
    request: Request,
    req_id: str,
    model: str,
    body: Mapping[str, Any],
    api_key: Optional[str],
    include_usage: bool,
    tracker: RequestTracker,
) -> Response:
    """Open the upstream stream and hand it to the SSE pipeline.

    Nothing is committed to the client until the first upstream event has
    been read, so failures before that point become ordinary HTTP errors.
    """
    gateway = get_gateway()
    try:
        upstream = await gateway.client.stream_generate_content(model, body, api_key)
    except UpstreamError as exc:
        tracker.finish()
        raise upstream_failure(exc) from exc

    if upstream.status_code >= 400:
        logger.warning(f"[{req_id}] Upstream stream returned status {upstream.status_code}")
        try:
            data = await upstream.aread()
        except UpstreamError as exc:
            raise upstream_failure(exc) from exc
        finally:
            await upstream.aclose()
            tracker.finish()
        return upstream_passthrough(upstream.status_code, upstream.headers, data)

    adapter = GeminiToChatStreamAdapter(model, include_usage=include_usage)
    events = adapter.events(upstream.aiter_bytes())

    try:
        first_event: Optional[dict[str, Any]] = await events.__anext__()
    except StopAsyncIteration:
        first_event = None
    except UpstreamStreamError as exc:
        await upstream.aclose()
        tracker.finish()
        raise upstream_failure(exc) from exc
    except BaseException:
        await upstream.aclose()
        tracker.finish()
        raise

    stream_error = detect_stream_error(first_event)
    if stream_error:
        logger.warning(f"[{req_id}] Detected error at stream start: {stream_error}")
        await upstream.aclose()
        tracker.finish()
        raise HTTPException(
            status_code=502,
            detail=error_detail(stream_error, error_type="upstream_error", code="upstream_stream_error"),
        )

    async def release() -> None:
        try:
            await upstream.aclose()
        finally:
            tracker.finish(adapter.state.usage)

    return _RelayResponse(
        _relay_frames(request, req_id, adapter, _prepend(first_event, events), upstream, tracker),
        on_close=release,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


async def _relay_frames(
    request: Request,
    req_id: str,
    adapter: GeminiToChatStreamAdapter,
    events: AsyncIterator[dict[str, Any]],
    upstream: UpstreamStream,
    tracker: RequestTracker,
) -> AsyncIterator[bytes]:
    try:
        async for frame in adapter.adapt_events(events):
            if await request.is_disconnected():
                raise asyncio.CancelledError("client disconnected")
            yield frame
        logger.info(
            f"[{req_id}] Stream completed with {adapter.state.frames_emitted} frames"
        )
    except asyncio.CancelledError:
        logger.info(f"[{req_id}] Streaming cancelled by client")
        raise
    finally:
        await upstream.aclose()
        tracker.finish(adapter.state.usage)
