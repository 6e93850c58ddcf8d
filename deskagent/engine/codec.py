"""Line-delimited JSON codec for the worker stdio protocol.

Wire format: UTF-8, exactly one JSON object per line. ``json.dumps``
escapes newlines inside strings, so an encoded payload never contains
a raw newline.

Outgoing (UI -> worker):
    {"id": "...", "kind": "user_message", "message": "...", "images": "[...]"}
    {"id": "...", "kind": "interrupt"}
    {"id": "...", "kind": "clear_history"}
    {"id": "...", "kind": "new_conversation"}
    {"id": "...", "kind": "load_conversation", "conversation_id": "..."}

Incoming (worker -> UI), discriminated by ``type``:
    ready, token, tool_use, tool_result, done, error
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from deskagent.engine.errors import MalformedFrame
from deskagent.shared.models.message import ImageAttachment

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 16 * 1024 * 1024

REQUEST_KINDS = frozenset({
    "user_message",
    "interrupt",
    "clear_history",
    "new_conversation",
    "load_conversation",
})


def encode_frame(frame: dict[str, Any]) -> bytes:
    """Serialize one frame as a newline-terminated UTF-8 line."""
    return json.dumps(frame, ensure_ascii=False, separators=(",", ":")).encode("utf-8") + b"\n"


def decode_line(line: bytes | str) -> dict[str, Any]:
    """Parse one line (without or with its trailing newline) to a dict.

    Raises MalformedFrame for invalid UTF-8, invalid JSON or non-objects.
    """
    if isinstance(line, bytes):
        try:
            text = line.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedFrame(f"invalid utf-8 ({exc.reason})", line) from exc
    else:
        text = line
    text = text.strip()
    if not text:
        raise MalformedFrame("empty line", line)
    try:
        frame = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedFrame(f"invalid json ({exc.msg})", line) from exc
    if not isinstance(frame, dict):
        raise MalformedFrame("frame is not a JSON object", line)
    return frame


# ── Outgoing frames ──────────────────────────────────────────────


def user_message_frame(
    query_id: str,
    message: str,
    attachments: list[ImageAttachment] | None = None,
    conversation_id: str | None = None,
) -> dict[str, Any]:
    frame: dict[str, Any] = {"id": query_id, "kind": "user_message", "message": message}
    if attachments:
        # The shell historically ships images as a JSON string field.
        frame["images"] = json.dumps([a.to_wire() for a in attachments])
    if conversation_id:
        frame["conversation_id"] = conversation_id
    return frame


def control_frame(
    query_id: str,
    kind: str,
    conversation_id: str | None = None,
) -> dict[str, Any]:
    if kind not in REQUEST_KINDS or kind == "user_message":
        raise ValueError(f"Not a control frame kind: {kind}")
    frame: dict[str, Any] = {"id": query_id, "kind": kind}
    if conversation_id:
        frame["conversation_id"] = conversation_id
    return frame


@dataclass
class WorkerRequest:
    """An outgoing frame as seen from the worker side."""
    id: str
    kind: str
    message: str = ""
    images: list[ImageAttachment] = field(default_factory=list)
    conversation_id: str | None = None


def parse_request(frame: dict[str, Any]) -> WorkerRequest:
    """Validate an outgoing frame on the worker side."""
    query_id = frame.get("id")
    kind = frame.get("kind")
    if not isinstance(query_id, str) or not query_id:
        raise MalformedFrame("request without an id")
    if kind not in REQUEST_KINDS:
        raise MalformedFrame(f"unknown request kind {kind!r}")

    images: list[ImageAttachment] = []
    raw_images = frame.get("images")
    if raw_images:
        if isinstance(raw_images, str):
            try:
                raw_images = json.loads(raw_images)
            except json.JSONDecodeError as exc:
                raise MalformedFrame(f"images field is not valid json ({exc.msg})") from exc
        if not isinstance(raw_images, list):
            raise MalformedFrame("images field is not a list")
        for item in raw_images:
            if not isinstance(item, dict):
                raise MalformedFrame("image attachment is not an object")
            images.append(ImageAttachment.from_wire(item))

    message = frame.get("message")
    conversation_id = frame.get("conversation_id")
    return WorkerRequest(
        id=query_id,
        kind=kind,
        message=message if isinstance(message, str) else "",
        images=images,
        conversation_id=conversation_id if isinstance(conversation_id, str) else None,
    )


# ── Incoming stream decoding ─────────────────────────────────────


class FrameDecoder:
    """Incremental decoder for a byte stream of newline-delimited frames.

    Partial reads are buffered until a newline is seen. Lines that fail
    to parse are reported through ``on_malformed`` and dropped. A line
    longer than ``max_line_bytes`` is dropped as soon as the limit is
    exceeded and the rest of it is skipped up to the next newline.
    """

    def __init__(
        self,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        on_malformed: Callable[[MalformedFrame], None] | None = None,
    ) -> None:
        self._max_line_bytes = max_line_bytes
        self._on_malformed = on_malformed
        self._buffer = bytearray()
        self._discarding = False
        self.malformed_count = 0

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    def _report(self, diag: MalformedFrame) -> None:
        self.malformed_count += 1
        logger.warning("%s (line=%r)", diag, diag.preview)
        if self._on_malformed is not None:
            try:
                self._on_malformed(diag)
            except Exception:
                logger.exception("on_malformed callback failed")

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """Consume a chunk and return every complete, valid frame in it."""
        frames: list[dict[str, Any]] = []
        start = 0
        while start < len(chunk):
            newline = chunk.find(b"\n", start)
            if newline == -1:
                piece = chunk[start:]
                start = len(chunk)
                if self._discarding:
                    continue
                self._buffer.extend(piece)
                if len(self._buffer) > self._max_line_bytes:
                    self._report(MalformedFrame(
                        f"line exceeds {self._max_line_bytes} bytes",
                        bytes(self._buffer[:200]),
                    ))
                    self._buffer.clear()
                    self._discarding = True
                continue

            piece = chunk[start:newline]
            start = newline + 1
            if self._discarding:
                # Tail of an oversized line.
                self._discarding = False
                continue
            self._buffer.extend(piece)
            line = bytes(self._buffer)
            self._buffer.clear()
            if len(line) > self._max_line_bytes:
                self._report(MalformedFrame(
                    f"line exceeds {self._max_line_bytes} bytes", line[:200],
                ))
                continue
            if not line.strip():
                continue
            try:
                frames.append(decode_line(line))
            except MalformedFrame as diag:
                self._report(diag)
        return frames

    def flush(self) -> list[dict[str, Any]]:
        """Decode whatever is left in the buffer at end of stream."""
        if self._discarding or not self._buffer.strip():
            self._buffer.clear()
            self._discarding = False
            return []
        line = bytes(self._buffer)
        self._buffer.clear()
        try:
            return [decode_line(line)]
        except MalformedFrame as diag:
            self._report(diag)
            return []
