"""SSE (Server-Sent Events) framing, decoding and encoding utilities.

Upstream bytes pass through two stages:

1. ``SSELineFramer`` turns text fragments of arbitrary size into complete lines.
2. ``decode_data_line`` turns one line into a JSON payload (or nothing).

``FrameReassembler`` glues the two together over a byte stream.
"""

import codecs
import json
import logging
import re
from typing import Any, AsyncIterator, Optional

from .exceptions import MalformedStreamError

logger = logging.getLogger("gemgate")

DONE_PAYLOAD = "[DONE]"
DONE_FRAME = b"data: [DONE]\n\n"

_LINE_BREAK = re.compile(r"\r\n|\r|\n")

# How much of a bad payload ends up in a log line
_LOG_PREVIEW_CHARS = 120


class SSELineFramer:
    """Buffer text fragments and split them into complete lines."""

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, text: str) -> list[str]:
        if not text:
            return []
        self._buffer += text
        lines: list[str] = []
        position = 0
        while True:
            match = _LINE_BREAK.search(self._buffer, position)
            if match is None:
                break
            # A lone trailing "\r" may still be the first half of "\r\n"
            if match.group() == "\r" and match.end() == len(self._buffer):
                break
            lines.append(self._buffer[position:match.start()])
            position = match.end()
        self._buffer = self._buffer[position:]
        return lines

    def flush(self) -> str:
        """Return whatever is left, treating a trailing ``\\r`` as a line end."""
        residue = self._buffer
        self._buffer = ""
        if residue.endswith("\r"):
            residue = residue[:-1]
        return residue


def decode_data_line(line: str) -> Optional[dict[str, Any]]:
    """Decode a single SSE line.

    Returns the JSON object carried by a ``data:`` line, or None for lines
    that carry no payload (blank lines, comments, other fields, ``[DONE]``).

    Raises:
        MalformedStreamError: the data payload is not a JSON object.
    """
    if not line.startswith("data:"):
        return None
    payload = line[5:]
    if payload.startswith(" "):
        payload = payload[1:]
    if not payload.strip() or payload.strip() == DONE_PAYLOAD:
        return None
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise MalformedStreamError(f"invalid JSON in data line: {exc}", payload) from exc
    if not isinstance(parsed, dict):
        raise MalformedStreamError(
            f"data line holds {type(parsed).__name__}, expected object", payload
        )
    return parsed


def decode_residue(residue: str) -> Optional[dict[str, Any]]:
    """Decode the unterminated text left in the buffer when the stream ends.

    The residue may be a ``data:`` line that lost its terminator or a bare
    JSON document.
    """
    if not residue.strip():
        return None
    if residue.startswith("data:"):
        return decode_data_line(residue)
    if residue.startswith((":", "event:", "id:", "retry:")):
        return None
    try:
        parsed = json.loads(residue)
    except json.JSONDecodeError as exc:
        raise MalformedStreamError(f"unparseable stream residue: {exc}", residue) from exc
    if not isinstance(parsed, dict):
        raise MalformedStreamError("stream residue is not a JSON object", residue)
    return parsed


class FrameReassembler:
    """Reassemble upstream SSE bytes into decoded JSON events.

    Malformed payloads are skipped: each one is logged as a warning and
    counted in ``malformed_count`` and the stream carries on.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._framer = SSELineFramer()
        self.malformed_count = 0

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        events: list[dict[str, Any]] = []
        for line in self._framer.feed(text):
            event = self._decode(line, decode_data_line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[dict[str, Any]]:
        tail = self._decoder.decode(b"", final=True)
        events: list[dict[str, Any]] = []
        for line in self._framer.feed(tail):
            event = self._decode(line, decode_data_line)
            if event is not None:
                events.append(event)
        event = self._decode(self._framer.flush(), decode_residue)
        if event is not None:
            events.append(event)
        return events

    async def iter_events(
        self, chunks: AsyncIterator[bytes]
    ) -> AsyncIterator[dict[str, Any]]:
        """Lazily yield events from an async byte stream, flushing at the end."""
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
        for event in self.flush():
            yield event

    def _decode(self, text: str, decoder) -> Optional[dict[str, Any]]:
        try:
            return decoder(text)
        except MalformedStreamError as exc:
            self.malformed_count += 1
            logger.warning(
                "Skipping malformed upstream SSE payload (%s): %r",
                exc.message,
                exc.payload[:_LOG_PREVIEW_CHARS],
            )
            return None


def format_sse_data(data: dict[str, Any]) -> bytes:
    """Serialize one JSON object as an SSE data frame."""
    json_str = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return f"data: {json_str}\n\n".encode("utf-8")


def detect_stream_error(event: Optional[dict[str, Any]]) -> Optional[str]:
    """Return an error message if an upstream event is an error report.

    Gemini reports failures inside a stream as ``{"error": {"code": ...,
    "message": ..., "status": ...}}``.
    """
    if not isinstance(event, dict):
        return None
    error_obj = event.get("error")
    if error_obj is None:
        return None
    if isinstance(error_obj, dict):
        error_msg = error_obj.get("message") or str(error_obj)
        status = error_obj.get("status") or error_obj.get("code") or "unknown"
        return f"upstream stream error: {error_msg} (status={status})"
    return f"upstream stream error: {error_obj}"
