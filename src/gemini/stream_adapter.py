"""Stream adapter for converting Gemini SSE to OpenAI Chat Completions SSE.

Gemini streamGenerateContent (alt=sse) events:
    data: {"candidates":[{"content":{"parts":[{"text":"Hel"}],"role":"model"},"index":0}]}
    data: {"candidates":[{"content":{"parts":[{"text":"lo"}],"role":"model"},"finishReason":"STOP","index":0}],
           "usageMetadata":{"promptTokenCount":3,"candidatesTokenCount":2,"totalTokenCount":5}}

OpenAI Chat Completion chunk events:
    data: {"id":"chatcmpl-...","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"role":"assistant","content":"Hel"},"finish_reason":null}]}
    data: {"id":"chatcmpl-...","object":"chat.completion.chunk","choices":[{"index":0,"delta":{"content":"lo"},"finish_reason":"stop"}]}
    data: {"id":"chatcmpl-...","object":"chat.completion.chunk","choices":[],"usage":{...}}
    data: [DONE]

The pipeline is FrameReassembler -> transform_event (per event) ->
finalize_stream (once). All per-response bookkeeping lives in StreamState.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Optional

from ..core.exceptions import UpstreamStreamError
from ..core.sse import DONE_FRAME, FrameReassembler, detect_stream_error, format_sse_data
from .translator import (
    FALLBACK_FINISH_REASON,
    convert_usage,
    extract_candidate_parts,
    function_call_to_tool_call,
    generate_completion_id,
    prompt_block_reason,
    resolve_finish_reason,
)

logger = logging.getLogger("gemgate")

CHUNK_OBJECT = "chat.completion.chunk"


@dataclass
class StreamState:
    """Per-response state threaded through every pipeline stage."""

    model: str
    include_usage: bool = False
    completion_id: Optional[str] = None
    created: Optional[int] = None
    # candidate index -> mapped finish reason (None while still open);
    # a key being present means the role was already sent for that index
    finish_reasons: dict[int, Optional[str]] = field(default_factory=dict)
    content: dict[int, str] = field(default_factory=dict)
    tool_call_counts: dict[int, int] = field(default_factory=dict)
    usage: Optional[dict[str, int]] = None
    frames_emitted: int = 0
    reopened_count: int = 0
    malformed_count: int = 0
    finished: bool = False

    def ensure_id(self) -> str:
        if self.completion_id is None:
            self.completion_id = generate_completion_id()
        if self.created is None:
            self.created = int(time.time())
        return self.completion_id

    def open_indices(self) -> list[int]:
        return sorted(
            index for index, reason in self.finish_reasons.items() if reason is None
        )


def _build_frame(
    state: StreamState,
    choices: list[dict[str, Any]],
    usage: Optional[dict[str, int]] = None,
) -> bytes:
    chunk: dict[str, Any] = {
        "id": state.ensure_id(),
        "object": CHUNK_OBJECT,
        "created": state.created,
        "model": state.model,
        "choices": choices,
    }
    if usage is not None:
        chunk["usage"] = usage
    state.frames_emitted += 1
    return format_sse_data(chunk)


def _candidate_index(candidate: Mapping[str, Any]) -> Optional[int]:
    index = candidate.get("index")
    if index is None:
        return 0
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        return None
    return index


def _candidate_delta(
    candidate: Mapping[str, Any], index: int, state: StreamState
) -> Optional[dict[str, Any]]:
    """Build one choice delta for a candidate and record its progress."""
    if state.finish_reasons.get(index) is not None:
        state.reopened_count += 1
        logger.warning(
            "Ignoring content for candidate %d after it finished with %r",
            index,
            state.finish_reasons[index],
        )
        return None

    text, function_calls = extract_candidate_parts(candidate)

    delta: dict[str, Any] = {}
    if index not in state.finish_reasons:
        delta["role"] = "assistant"
        state.finish_reasons[index] = None
    if text or not function_calls:
        delta["content"] = text
    if function_calls:
        offset = state.tool_call_counts.get(index, 0)
        delta["tool_calls"] = [
            function_call_to_tool_call(call, offset + position)
            for position, call in enumerate(function_calls)
        ]
        state.tool_call_counts[index] = offset + len(function_calls)
    state.content[index] = state.content.get(index, "") + text

    finish_reason = resolve_finish_reason(
        candidate.get("finishReason"), state.tool_call_counts.get(index, 0) > 0
    )
    if finish_reason is not None:
        state.finish_reasons[index] = finish_reason

    return {
        "index": index,
        "delta": delta,
        "logprobs": None,
        "finish_reason": finish_reason,
    }


def transform_event(event: Mapping[str, Any], state: StreamState) -> list[bytes]:
    """Turn one Gemini stream event into zero or one OpenAI chunk frames.

    Candidates are tracked by their ``index`` field, never by position in
    the ``candidates`` array, since Gemini may report them sparsely.
    """
    state.ensure_id()

    usage = convert_usage(event.get("usageMetadata"))
    if usage is not None:
        # Gemini reports cumulative totals, so the latest value wins
        state.usage = usage

    choices: list[dict[str, Any]] = []
    candidates = event.get("candidates")
    if isinstance(candidates, list):
        for candidate in candidates:
            if not isinstance(candidate, Mapping):
                continue
            index = _candidate_index(candidate)
            if index is None:
                logger.warning(f"Skipping candidate with invalid index: {candidate.get('index')!r}")
                continue
            choice = _candidate_delta(candidate, index, state)
            if choice is not None:
                choices.append(choice)

    block_reason = prompt_block_reason(event) if not choices else None
    if block_reason:
        logger.warning(f"Prompt blocked upstream: {block_reason}")
        if state.finish_reasons.get(0) is None:
            delta: dict[str, Any] = {"content": ""}
            if 0 not in state.finish_reasons:
                delta = {"role": "assistant", "content": ""}
            state.finish_reasons[0] = "content_filter"
            choices.append({
                "index": 0,
                "delta": delta,
                "logprobs": None,
                "finish_reason": "content_filter",
            })

    if not choices:
        return []
    return [_build_frame(state, choices)]


def finalize_stream(state: StreamState) -> list[bytes]:
    """Close every open candidate, report usage and terminate the stream.

    Usage is sent in a dedicated trailing frame with an empty ``choices``
    list, as OpenAI does for ``stream_options.include_usage``.
    """
    if state.finished:
        return []
    state.finished = True
    frames: list[bytes] = []

    open_indices = state.open_indices()
    if open_indices:
        logger.warning(
            "Upstream stream ended without finishReason for candidates %s; closing with %r",
            open_indices,
            FALLBACK_FINISH_REASON,
        )
        choices = []
        for index in open_indices:
            state.finish_reasons[index] = FALLBACK_FINISH_REASON
            choices.append({
                "index": index,
                "delta": {"content": ""},
                "logprobs": None,
                "finish_reason": FALLBACK_FINISH_REASON,
            })
        frames.append(_build_frame(state, choices))

    if state.include_usage and state.usage is not None:
        frames.append(_build_frame(state, [], usage=state.usage))

    frames.append(DONE_FRAME)
    return frames


class GeminiToChatStreamAdapter:
    """Converts a Gemini SSE stream to OpenAI chat completion SSE frames.

    One adapter serves exactly one response; it owns the StreamState and the
    FrameReassembler for that response.
    """

    def __init__(
        self,
        model: str,
        *,
        include_usage: bool = False,
        completion_id: Optional[str] = None,
    ) -> None:
        """Initialize the stream adapter.

        Args:
            model: Model name echoed in every frame
            include_usage: Emit a trailing usage frame (stream_options.include_usage)
            completion_id: Fixed id to use instead of a generated one
        """
        self.state = StreamState(
            model=model,
            include_usage=include_usage,
            completion_id=completion_id,
        )
        self.reassembler = FrameReassembler()
        self.upstream_error: Optional[str] = None

    def events(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[dict[str, Any]]:
        """Reassemble upstream bytes into Gemini events."""
        return self.reassembler.iter_events(chunks)

    async def adapt_events(
        self,
        events: AsyncIterator[dict[str, Any]],
    ) -> AsyncIterator[bytes]:
        """Transform Gemini events to OpenAI SSE frames, ending with [DONE].

        A transport failure after the stream started (UpstreamStreamError) or
        an in-stream error event truncates the stream; the finalizer still
        closes every candidate and emits the sentinel.
        """
        try:
            async for event in events:
                stream_error = detect_stream_error(event)
                if stream_error:
                    self.upstream_error = stream_error
                    logger.error(f"Upstream reported an error mid-stream: {stream_error}")
                    break
                for frame in transform_event(event, self.state):
                    yield frame
        except UpstreamStreamError as exc:
            self.upstream_error = exc.message
            logger.error(f"Upstream stream failed after start: {exc.message}")

        self.state.malformed_count = self.reassembler.malformed_count
        for frame in finalize_stream(self.state):
            yield frame

        logger.debug(
            "Stream %s finished: frames=%d candidates=%d malformed=%d reopened=%d",
            self.state.completion_id,
            self.state.frames_emitted,
            len(self.state.finish_reasons),
            self.state.malformed_count,
            self.state.reopened_count,
        )

    async def adapt_stream(
        self,
        gemini_stream: AsyncIterator[bytes],
    ) -> AsyncIterator[bytes]:
        """Transform a raw Gemini SSE byte stream to OpenAI SSE frames."""
        async for frame in self.adapt_events(self.events(gemini_stream)):
            yield frame


async def adapt_gemini_stream(
    model: str,
    gemini_stream: AsyncIterator[bytes],
    *,
    include_usage: bool = False,
) -> AsyncIterator[bytes]:
    """Convenience function to adapt a Gemini stream to OpenAI chat chunks.

    Args:
        model: Model name
        gemini_stream: Input Gemini SSE byte stream
        include_usage: Emit a trailing usage frame

    Yields:
        OpenAI Chat Completions SSE frames
    """
    adapter = GeminiToChatStreamAdapter(model, include_usage=include_usage)
    async for frame in adapter.adapt_stream(gemini_stream):
        yield frame
