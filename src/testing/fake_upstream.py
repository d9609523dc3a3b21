"""Fake Gemini ASGI app for simulating deterministic upstream responses."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Iterable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse


class StreamError(Exception):
    """Raised to cut a stream off partway through."""

    pass


@dataclass
class UpstreamResponse:
    """A queued response to return from the fake upstream.

    Standard fields:
        status_code: HTTP status code (default 200)
        headers: Response headers
        json_body: JSON response body (for non-streaming calls)
        body: Raw bytes/string body
        stream_events: Gemini response objects sent as ``data:`` frames
        chunks: Raw byte chunks sent verbatim, instead of stream_events
        media_type: Response content type
        chunk_delay_s: Delay between stream chunks

    Error simulation fields:
        error_after_chunks: Raise StreamError after N chunks were sent

    Dynamic response:
        response_fn: Callable that receives the request JSON and returns
            an UpstreamResponse
    """

    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    json_body: dict[str, Any] | None = None
    body: bytes | str | None = None
    stream_events: list[Any] | None = None
    chunks: list[bytes] | None = None
    media_type: str | None = None
    chunk_delay_s: float | None = None

    error_after_chunks: int | None = None

    response_fn: Callable[[Any], "UpstreamResponse"] | None = None


def encode_sse_event(event: Any) -> bytes:
    """Encode one Gemini response object the way ``alt=sse`` sends it."""
    if isinstance(event, bytes):
        return event
    if isinstance(event, str):
        data = event
    else:
        data = json.dumps(event, ensure_ascii=False)
    return f"data: {data}\r\n\r\n".encode("utf-8")


def gemini_chunk(
    text: str | None = None,
    *,
    index: int = 0,
    finish_reason: str | None = None,
    function_calls: list[dict[str, Any]] | None = None,
    usage: dict[str, int] | None = None,
) -> dict[str, Any]:
    """Build a single-candidate GenerateContentResponse."""
    parts: list[dict[str, Any]] = []
    if text is not None:
        parts.append({"text": text})
    for call in function_calls or []:
        parts.append({"functionCall": call})
    candidate: dict[str, Any] = {"index": index}
    if parts:
        candidate["content"] = {"role": "model", "parts": parts}
    if finish_reason is not None:
        candidate["finishReason"] = finish_reason
    chunk: dict[str, Any] = {"candidates": [candidate]}
    if usage is not None:
        chunk["usageMetadata"] = usage
    return chunk


class FakeGemini:
    """ASGI app that replies to Gemini REST calls with queued responses.

    Supports:
    - generateContent, streamGenerateContent, batchEmbedContents and models
    - Request tracking/inspection
    - Raw byte chunk control for framing edge cases
    - Streams cut off partway through
    - Dynamic responses based on request content

    Responses are served in queue order, whichever endpoint is called.
    """

    def __init__(self, responses: Optional[Iterable[UpstreamResponse]] = None) -> None:
        self.app = FastAPI(title="FakeGemini")
        self._queue: Deque[UpstreamResponse] = deque(responses or [])
        self.received: list[dict[str, Any]] = []
        self.app.post("/{version}/models/{target}")(self._handle_model_action)
        self.app.get("/{version}/models")(self._handle_list_models)

    def enqueue(self, response: UpstreamResponse) -> None:
        """Add a response to the queue."""
        self._queue.append(response)

    def clear(self) -> None:
        """Clear all queued responses and received requests."""
        self._queue.clear()
        self.received.clear()

    # -------------------------------------------------------------------------
    # Convenience methods for common response types
    # -------------------------------------------------------------------------

    def enqueue_generate_content(
        self,
        text: str,
        *,
        finish_reason: str = "STOP",
        function_calls: list[dict[str, Any]] | None = None,
        usage: dict[str, int] | None = None,
    ) -> None:
        self.enqueue(
            UpstreamResponse(
                json_body=gemini_chunk(
                    text,
                    finish_reason=finish_reason,
                    function_calls=function_calls,
                    usage=usage,
                )
            )
        )

    def enqueue_text_stream(
        self,
        pieces: list[str],
        *,
        finish_reason: str | None = "STOP",
        usage: dict[str, int] | None = None,
        chunk_delay_s: float | None = None,
    ) -> None:
        """Queue a stream with one text piece per event.

        The finish reason and usage ride on the last event, as Gemini sends them.
        """
        events = [gemini_chunk(piece) for piece in pieces]
        if events:
            last = events[-1]["candidates"][0]
            if finish_reason is not None:
                last["finishReason"] = finish_reason
            if usage is not None:
                events[-1]["usageMetadata"] = usage
        self.enqueue(UpstreamResponse(stream_events=events, chunk_delay_s=chunk_delay_s))

    def enqueue_error_response(
        self, status_code: int, message: str, *, status: str = "INVALID_ARGUMENT"
    ) -> None:
        """Queue a Google API error body."""
        body = {"error": {"code": status_code, "message": message, "status": status}}
        self.enqueue(UpstreamResponse(status_code=status_code, json_body=body))

    # -------------------------------------------------------------------------
    # Request handling
    # -------------------------------------------------------------------------

    def _record(self, request: Request, payload: Any) -> None:
        self.received.append(
            {
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query,
                "headers": dict(request.headers),
                "json": payload,
            }
        )

    def _next_response(self, payload: Any) -> Optional[UpstreamResponse]:
        if not self._queue:
            return None
        response = self._queue.popleft()
        if response.response_fn is not None:
            response = response.response_fn(payload)
        return response

    async def _handle_model_action(self, version: str, target: str, request: Request) -> Response:
        payload: Any = None
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            payload = None
        self._record(request, payload)

        _, _, action = target.partition(":")
        return self._respond(self._next_response(payload), stream=action == "streamGenerateContent")

    async def _handle_list_models(self, version: str, request: Request) -> Response:
        self._record(request, None)
        return self._respond(self._next_response(None), stream=False)

    def _respond(self, response: Optional[UpstreamResponse], *, stream: bool) -> Response:
        if response is None:
            return JSONResponse(
                {"error": {"code": 500, "message": "No upstream responses queued"}},
                status_code=500,
            )

        if stream and response.status_code < 400:
            return StreamingResponse(
                self._stream_chunks(response),
                status_code=response.status_code,
                headers=response.headers,
                media_type=response.media_type or "text/event-stream",
            )

        return Response(
            content=self._build_body(response),
            status_code=response.status_code,
            headers=response.headers,
            media_type=response.media_type or "application/json",
        )

    async def _stream_chunks(self, response: UpstreamResponse):
        if response.chunks is not None:
            chunks = list(response.chunks)
        else:
            chunks = [encode_sse_event(event) for event in response.stream_events or []]

        for sent, chunk in enumerate(chunks):
            if response.error_after_chunks is not None and sent >= response.error_after_chunks:
                raise StreamError("Simulated connection reset")
            yield chunk
            if response.chunk_delay_s:
                await asyncio.sleep(response.chunk_delay_s)

    @staticmethod
    def _build_body(response: UpstreamResponse) -> bytes:
        if response.json_body is not None:
            return json.dumps(response.json_body, ensure_ascii=False).encode("utf-8")
        if isinstance(response.body, str):
            return response.body.encode("utf-8")
        if isinstance(response.body, bytes):
            return response.body
        return b""
