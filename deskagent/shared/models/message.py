"""Message, content block and tool call models."""

from __future__ import annotations

import base64
import binascii
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel

from deskagent.engine.errors import ValidationError

MAX_IMAGE_BYTES = 5 * 1024 * 1024


def now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ImageAttachment:
    data: str  # base64
    mime_type: str
    name: str | None = None

    @property
    def decoded_size(self) -> int:
        return len(self.data) * 3 // 4

    def validate(self) -> None:
        if not self.mime_type.startswith("image/"):
            raise ValidationError("attachment", f"unsupported mime type {self.mime_type!r}")
        if self.decoded_size > MAX_IMAGE_BYTES:
            raise ValidationError(
                "attachment",
                f"image too large ({self.decoded_size / 1024 / 1024:.1f}MB); "
                f"maximum size is {MAX_IMAGE_BYTES // 1024 // 1024}MB",
            )
        try:
            base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError("attachment", f"image data is not base64: {exc}") from exc

    def to_wire(self) -> dict[str, Any]:
        d: dict[str, Any] = {"data": self.data, "mime_type": self.mime_type}
        if self.name:
            d["name"] = self.name
        return d

    @classmethod
    def from_wire(cls, d: dict[str, Any]) -> ImageAttachment:
        return cls(
            data=str(d.get("data") or ""),
            mime_type=str(d.get("mime_type") or d.get("mimeType") or ""),
            name=d.get("name"),
        )


# ── Content blocks ───────────────────────────────────────────────


@dataclass
class TextBlock:
    text: str = ""
    type: str = "text"


@dataclass
class ImageBlock:
    data: str = ""
    media_type: str = "image/png"
    type: str = "image"


@dataclass
class ToolReferenceBlock:
    tool_call_id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str | None = None
    type: str = "tool_reference"


@dataclass
class ErrorBlock:
    message: str = ""
    type: str = "error"


@dataclass
class UnknownBlock:
    """A stored block of a kind this version does not understand."""
    raw: dict[str, Any] = field(default_factory=dict)
    type: str = "unknown"


ContentBlock = Union[TextBlock, ImageBlock, ToolReferenceBlock, ErrorBlock, UnknownBlock]


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, UnknownBlock):
        return dict(block.raw)
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": block.media_type, "data": block.data},
        }
    if isinstance(block, ToolReferenceBlock):
        d: dict[str, Any] = {
            "type": "tool_reference",
            "tool_call_id": block.tool_call_id,
            "name": block.name,
            "input": block.input,
        }
        if block.error is not None:
            d["error"] = block.error
        elif block.result is not None:
            d["result"] = block.result
        return d
    return {"type": "error", "message": block.message}


def block_from_dict(d: Any) -> ContentBlock:
    """Parse one stored block. Unknown kinds are preserved, not rejected."""
    if not isinstance(d, dict):
        raise ValidationError("content block", f"expected object, got {type(d).__name__}")
    kind = d.get("type")
    if kind == "text":
        return TextBlock(text=str(d.get("text") or ""))
    if kind == "image":
        source = d.get("source") or {}
        if not isinstance(source, dict):
            raise ValidationError("content block", "image block without a source object")
        return ImageBlock(
            data=str(source.get("data") or ""),
            media_type=str(source.get("media_type") or "image/png"),
        )
    if kind == "tool_reference":
        tool_call_id = d.get("tool_call_id")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            raise ValidationError("content block", "tool_reference without tool_call_id")
        raw_input = d.get("input")
        error = d.get("error")
        return ToolReferenceBlock(
            tool_call_id=tool_call_id,
            name=str(d.get("name") or ""),
            input=raw_input if isinstance(raw_input, dict) else {},
            result=d.get("result"),
            error=str(error) if error is not None else None,
        )
    if kind == "error":
        return ErrorBlock(message=str(d.get("message") or ""))
    if isinstance(kind, str) and kind:
        return UnknownBlock(raw=dict(d))
    raise ValidationError("content block", "block without a type")


# ── Transcript records ───────────────────────────────────────────


@dataclass
class ToolCall:
    id: str
    query_id: str
    name: str
    input: BaseModel | dict[str, Any] | None = None
    result: Any = None
    error: str | None = None
    timestamp: int = field(default_factory=now_ms)
    completed_at: int | None = None
    orphaned: bool = False

    @property
    def is_pending(self) -> bool:
        return self.completed_at is None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass
class Message:
    role: MessageRole
    query_id: str
    content: list[ContentBlock] = field(default_factory=list)
    id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)
    is_streaming: bool = False
    error: str | None = None
    usage: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        """Concatenated text of every text block."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def append_text(self, text: str) -> None:
        """Append to the trailing text block, starting one if needed."""
        if self.content and isinstance(self.content[-1], TextBlock):
            self.content[-1].text += text
        else:
            self.content.append(TextBlock(text=text))

    def tool_reference(self, tool_call_id: str) -> ToolReferenceBlock | None:
        for block in self.content:
            if isinstance(block, ToolReferenceBlock) and block.tool_call_id == tool_call_id:
                return block
        return None
