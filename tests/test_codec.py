"""Wire codec: line framing, request parsing, oversized and malformed lines."""

from __future__ import annotations

import base64
import json

import pytest

from deskagent.engine.codec import (
    FrameDecoder,
    control_frame,
    decode_line,
    encode_frame,
    parse_request,
    user_message_frame,
)
from deskagent.engine.errors import MalformedFrame
from deskagent.shared.models.message import ImageAttachment


def test_encode_frame_is_one_line_even_with_embedded_newlines():
    raw = encode_frame({"type": "token", "id": "q1", "token": "line1\nline2"})
    assert raw.endswith(b"\n")
    assert raw.count(b"\n") == 1
    assert decode_line(raw)["token"] == "line1\nline2"


def test_encode_frame_keeps_unicode_as_utf8():
    raw = encode_frame({"token": "héllo ✓"})
    assert "héllo ✓".encode("utf-8") in raw


@pytest.mark.parametrize("line, reason", [
    (b"not json", "invalid json"),
    (b"[1, 2]", "not a JSON object"),
    (b"\xff\xfe{}", "invalid utf-8"),
    (b"   ", "empty line"),
])
def test_decode_line_rejects_bad_input(line, reason):
    with pytest.raises(MalformedFrame) as exc_info:
        decode_line(line)
    assert reason in str(exc_info.value)


def test_decoder_buffers_partial_reads_across_chunks():
    decoder = FrameDecoder()
    line = encode_frame({"type": "token", "id": "q1", "token": "abc"})
    assert decoder.feed(line[:7]) == []
    assert decoder.buffered_bytes == 7
    frames = decoder.feed(line[7:] + encode_frame({"type": "done", "id": "q1"}))
    assert [f["type"] for f in frames] == ["token", "done"]
    assert decoder.buffered_bytes == 0


def test_decoder_drops_malformed_line_and_keeps_going():
    reported: list[MalformedFrame] = []
    decoder = FrameDecoder(on_malformed=reported.append)
    chunk = b'{"type":"ready"}\nStarting up...\n{"type":"done","id":"q1"}\n'
    frames = decoder.feed(chunk)
    assert [f["type"] for f in frames] == ["ready", "done"]
    assert decoder.malformed_count == 1
    assert reported[0].preview == b"Starting up..."


def test_decoder_skips_blank_lines_silently():
    decoder = FrameDecoder()
    assert decoder.feed(b"\n\n  \n") == []
    assert decoder.malformed_count == 0


def test_decoder_discards_oversized_line_up_to_next_newline():
    decoder = FrameDecoder(max_line_bytes=32)
    big = b'{"type":"token","id":"q1","token":"' + b"x" * 100
    frames = decoder.feed(big)
    assert frames == []
    assert decoder.malformed_count == 1
    assert decoder.buffered_bytes == 0

    frames = decoder.feed(b'yyyy"}\n{"type":"ready"}\n')
    assert frames == [{"type": "ready"}]
    assert decoder.malformed_count == 1


def test_decoder_rejects_complete_line_over_limit():
    decoder = FrameDecoder(max_line_bytes=16)
    frames = decoder.feed(encode_frame({"type": "token", "token": "x" * 40}))
    assert frames == []
    assert decoder.malformed_count == 1


def test_decoder_flush_returns_trailing_frame_without_newline():
    decoder = FrameDecoder()
    decoder.feed(b'{"type":"done","id":"q9"}')
    assert decoder.flush() == [{"type": "done", "id": "q9"}]
    assert decoder.flush() == []


def test_decoder_on_malformed_callback_errors_are_contained():
    def boom(_diag):
        raise RuntimeError("callback bug")

    decoder = FrameDecoder(on_malformed=boom)
    assert decoder.feed(b"garbage\n{\"type\":\"ready\"}\n") == [{"type": "ready"}]


def test_user_message_frame_carries_images_as_json_string():
    image = ImageAttachment(data=base64.b64encode(b"png").decode(), mime_type="image/png", name="a.png")
    frame = user_message_frame("q1", "look", [image], conversation_id="c1")
    assert frame["kind"] == "user_message"
    assert frame["conversation_id"] == "c1"
    assert isinstance(frame["images"], str)
    assert json.loads(frame["images"])[0]["mime_type"] == "image/png"

    request = parse_request(frame)
    assert request.message == "look"
    assert request.images[0].name == "a.png"
    assert request.conversation_id == "c1"


def test_control_frame_rejects_user_message_kind():
    with pytest.raises(ValueError):
        control_frame("q1", "user_message")
    assert control_frame("q1", "load_conversation", "c7") == {
        "id": "q1", "kind": "load_conversation", "conversation_id": "c7",
    }


@pytest.mark.parametrize("frame", [
    {"kind": "interrupt"},
    {"id": "q1", "kind": "explode"},
    {"id": "q1", "kind": "user_message", "images": "{not json"},
    {"id": "q1", "kind": "user_message", "images": [1, 2]},
])
def test_parse_request_rejects_invalid_frames(frame):
    with pytest.raises(MalformedFrame):
        parse_request(frame)
