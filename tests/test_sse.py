"""Tests for the SSE module."""

import json
import logging

import pytest

from conftest import aiter_chunks, collect
from src.core.exceptions import MalformedStreamError
from src.core.sse import (
    DONE_FRAME,
    FrameReassembler,
    SSELineFramer,
    decode_data_line,
    decode_residue,
    detect_stream_error,
    format_sse_data,
)

EVENTS = [
    {"candidates": [{"index": 0, "content": {"parts": [{"text": "Hel"}], "role": "model"}}]},
    {"candidates": [{"index": 0, "content": {"parts": [{"text": "lo ünïcødé ✓"}], "role": "model"}}]},
    {
        "candidates": [{"index": 0, "finishReason": "STOP"}],
        "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 4, "totalTokenCount": 7},
    },
]


def _stream_bytes(terminator: str = "\r\n") -> bytes:
    frames = [f"data: {json.dumps(event, ensure_ascii=False)}{terminator}{terminator}" for event in EVENTS]
    return ("".join(frames)).encode("utf-8")


class TestSSELineFramer:
    """Tests for line framing, independent of payload decoding."""

    def test_splits_complete_lines(self):
        framer = SSELineFramer()
        assert framer.feed("a\nb\n") == ["a", "b"]
        assert framer.pending == ""

    def test_keeps_partial_line(self):
        framer = SSELineFramer()
        assert framer.feed("data: {\"a\"") == []
        assert framer.feed(": 1}\n") == ['data: {"a": 1}']

    @pytest.mark.parametrize("terminator", ["\n", "\r\n", "\r"])
    def test_accepts_every_line_terminator(self, terminator):
        framer = SSELineFramer()
        lines = framer.feed(f"one{terminator}two{terminator}")
        lines += [framer.flush()] if framer.pending else []
        assert [line for line in lines if line] == ["one", "two"]

    def test_crlf_split_between_chunks_is_one_terminator(self):
        framer = SSELineFramer()
        assert framer.feed("line\r") == []
        assert framer.feed("\nnext\n") == ["line", "next"]

    def test_blank_lines_are_reported(self):
        framer = SSELineFramer()
        assert framer.feed("data: x\n\n") == ["data: x", ""]

    def test_flush_returns_residue(self):
        framer = SSELineFramer()
        framer.feed("tail without newline")
        assert framer.flush() == "tail without newline"
        assert framer.pending == ""


class TestDecodeDataLine:
    """Tests for decoding a single SSE line."""

    def test_decodes_data_line(self):
        assert decode_data_line('data: {"a": 1}') == {"a": 1}

    def test_space_after_colon_is_optional(self):
        assert decode_data_line('data:{"a": 1}') == {"a": 1}

    @pytest.mark.parametrize("line", ["", ": keep-alive", "event: message", "id: 3", "retry: 10"])
    def test_ignores_non_data_lines(self, line):
        assert decode_data_line(line) is None

    def test_ignores_done_and_empty_payloads(self):
        assert decode_data_line("data: [DONE]") is None
        assert decode_data_line("data: ") is None

    def test_rejects_invalid_json(self):
        with pytest.raises(MalformedStreamError) as exc_info:
            decode_data_line("data: {broken")
        assert exc_info.value.payload == "{broken"

    def test_rejects_non_object_json(self):
        with pytest.raises(MalformedStreamError):
            decode_data_line("data: [1, 2]")


class TestDecodeResidue:
    def test_unterminated_data_line(self):
        assert decode_residue('data: {"a": 1}') == {"a": 1}

    def test_bare_json_document(self):
        assert decode_residue('{"a": 1}') == {"a": 1}

    def test_whitespace_is_nothing(self):
        assert decode_residue("  \t") is None

    def test_garbage_is_malformed(self):
        with pytest.raises(MalformedStreamError):
            decode_residue("not json at all")


class TestFrameReassembler:
    """Tests for byte-level reassembly into Gemini events."""

    def test_whole_stream_in_one_chunk(self):
        reassembler = FrameReassembler()
        events = reassembler.feed(_stream_bytes()) + reassembler.flush()
        assert events == EVENTS

    @pytest.mark.parametrize("terminator", ["\n", "\r\n"])
    def test_every_two_way_split_yields_same_events(self, terminator):
        data = _stream_bytes(terminator)
        for offset in range(len(data) + 1):
            reassembler = FrameReassembler()
            events = reassembler.feed(data[:offset])
            events += reassembler.feed(data[offset:])
            events += reassembler.flush()
            assert events == EVENTS, f"split at byte {offset} changed the events"
            assert reassembler.malformed_count == 0

    def test_byte_at_a_time(self):
        data = _stream_bytes()
        reassembler = FrameReassembler()
        events = []
        for position in range(len(data)):
            events += reassembler.feed(data[position:position + 1])
        events += reassembler.flush()
        assert events == EVENTS

    def test_multibyte_character_split_across_chunks(self):
        payload = 'data: {"t": "✓"}\n\n'.encode("utf-8")
        split = payload.index("✓".encode("utf-8")) + 1
        reassembler = FrameReassembler()
        events = reassembler.feed(payload[:split]) + reassembler.feed(payload[split:])
        assert events == [{"t": "✓"}]

    def test_malformed_line_is_skipped_and_counted(self, caplog):
        data = b'data: {"a": 1}\n\ndata: {oops\n\ndata: {"b": 2}\n\n'
        reassembler = FrameReassembler()
        with caplog.at_level(logging.WARNING, logger="gemgate"):
            events = reassembler.feed(data) + reassembler.flush()
        assert events == [{"a": 1}, {"b": 2}]
        assert reassembler.malformed_count == 1
        assert "Skipping malformed upstream SSE payload" in caplog.text

    def test_unterminated_final_event_is_recovered(self):
        reassembler = FrameReassembler()
        events = reassembler.feed(b'data: {"a": 1}\n\ndata: {"b": 2}')
        events += reassembler.flush()
        assert events == [{"a": 1}, {"b": 2}]

    def test_malformed_residue_is_not_silently_dropped(self, caplog):
        reassembler = FrameReassembler()
        with caplog.at_level(logging.WARNING, logger="gemgate"):
            events = reassembler.feed(b'data: {"a": 1}\n\n{"trunc')
            events += reassembler.flush()
        assert events == [{"a": 1}]
        assert reassembler.malformed_count == 1
        assert "trunc" in caplog.text

    def test_comments_and_done_are_ignored(self):
        reassembler = FrameReassembler()
        events = reassembler.feed(b': ping\n\ndata: {"a": 1}\n\ndata: [DONE]\n\n')
        assert events == [{"a": 1}]

    @pytest.mark.asyncio
    async def test_iter_events_flushes_at_end(self):
        reassembler = FrameReassembler()
        events = await collect(
            reassembler.iter_events(aiter_chunks([b'data: {"a"', b': 1}\n\ndata: {"b": 2}']))
        )
        assert events == [{"a": 1}, {"b": 2}]


class TestFormatting:
    def test_format_sse_data(self):
        frame = format_sse_data({"content": "ü", "n": 1})
        assert frame == 'data: {"content":"ü","n":1}\n\n'.encode("utf-8")

    def test_done_frame(self):
        assert DONE_FRAME == b"data: [DONE]\n\n"


class TestDetectStreamError:
    """Tests for in-stream error detection."""

    def test_returns_none_for_regular_event(self):
        assert detect_stream_error(EVENTS[0]) is None

    def test_returns_none_for_missing_event(self):
        assert detect_stream_error(None) is None

    def test_detects_google_error(self):
        result = detect_stream_error(
            {"error": {"code": 429, "message": "quota exceeded", "status": "RESOURCE_EXHAUSTED"}}
        )
        assert result is not None
        assert "quota exceeded" in result
        assert "RESOURCE_EXHAUSTED" in result

    def test_detects_string_error(self):
        assert "boom" in detect_stream_error({"error": "boom"})
