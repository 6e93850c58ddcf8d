"""Protocol events emitted by the worker process.

Each incoming wire frame is parsed into a typed dataclass for safe
consumption by the reducer. Every event also carries the session
Version that was current for its originating query when the frame
was read off the pipe.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from deskagent.engine.errors import MalformedFrame
from deskagent.engine.tool_inputs import (
    GenericToolInput,
    decode_tool_input,
    dump_tool_input,
)
from deskagent.shared.models.message import now_ms


@dataclass
class ProtocolEvent:
    """Base event from the worker."""
    event_type: str = ""
    query_id: str = ""
    timestamp: int = field(default_factory=now_ms)
    version: int = 0


@dataclass
class Ready(ProtocolEvent):
    event_type: str = "ready"


@dataclass
class Token(ProtocolEvent):
    event_type: str = "token"
    text: str = ""


@dataclass
class ToolUse(ProtocolEvent):
    event_type: str = "tool_use"
    tool_call_id: str = ""
    tool_name: str = ""
    tool_input: BaseModel = field(default_factory=GenericToolInput)


@dataclass
class ToolResult(ProtocolEvent):
    event_type: str = "tool_result"
    tool_call_id: str = ""
    tool_name: str = ""
    result: Any = None
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass
class Done(ProtocolEvent):
    event_type: str = "done"
    data: dict[str, Any] | None = None


@dataclass
class Error(ProtocolEvent):
    event_type: str = "error"
    message: str = ""


TERMINAL_EVENT_TYPES = frozenset({"done", "error"})


def _require_id(frame: dict[str, Any], frame_type: str) -> str:
    query_id = frame.get("id")
    if not isinstance(query_id, str) or not query_id:
        raise MalformedFrame(f"{frame_type} frame without a query id")
    return query_id


def _timestamp(frame: dict[str, Any]) -> int:
    ts = frame.get("timestamp")
    if isinstance(ts, bool) or not isinstance(ts, (int, float)):
        return now_ms()
    return int(ts)


def _data(frame: dict[str, Any], frame_type: str) -> dict[str, Any]:
    data = frame.get("data")
    if not isinstance(data, dict):
        raise MalformedFrame(f"{frame_type} frame without a data object")
    return data


def frame_to_event(frame: dict[str, Any], version: int = 0) -> ProtocolEvent:
    """Convert a decoded incoming frame dict into a typed event.

    Raises MalformedFrame for unknown types or missing required fields.
    """
    frame_type = frame.get("type")
    ts = _timestamp(frame)

    if frame_type == "ready":
        return Ready(timestamp=ts, version=version)

    if frame_type == "token":
        text = frame.get("token")
        if not isinstance(text, str):
            raise MalformedFrame("token frame without token text")
        return Token(
            query_id=_require_id(frame, "token"),
            timestamp=ts,
            version=version,
            text=text,
        )

    if frame_type == "tool_use":
        data = _data(frame, "tool_use")
        tool_call_id = data.get("tool_use_id")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            raise MalformedFrame("tool_use frame without tool_use_id")
        tool_name = str(data.get("tool_name") or "")
        return ToolUse(
            query_id=_require_id(frame, "tool_use"),
            timestamp=ts,
            version=version,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            tool_input=decode_tool_input(tool_name, data.get("tool_input")),
        )

    if frame_type == "tool_result":
        data = _data(frame, "tool_result")
        tool_call_id = data.get("tool_use_id")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            raise MalformedFrame("tool_result frame without tool_use_id")
        error = data.get("error")
        return ToolResult(
            query_id=_require_id(frame, "tool_result"),
            timestamp=ts,
            version=version,
            tool_call_id=tool_call_id,
            tool_name=str(data.get("tool_name") or ""),
            result=data.get("result"),
            error=str(error) if error is not None else None,
        )

    if frame_type == "done":
        data = frame.get("data")
        return Done(
            query_id=_require_id(frame, "done"),
            timestamp=ts,
            version=version,
            data=data if isinstance(data, dict) else None,
        )

    if frame_type == "error":
        return Error(
            query_id=_require_id(frame, "error"),
            timestamp=ts,
            version=version,
            message=str(frame.get("error") or "Unknown error"),
        )

    raise MalformedFrame(f"unknown frame type {frame_type!r}")


def event_to_frame(event: ProtocolEvent) -> dict[str, Any]:
    """Convert a typed event back to its wire dict (worker side)."""
    frame: dict[str, Any] = {"type": event.event_type, "timestamp": event.timestamp}
    if not isinstance(event, Ready):
        frame["id"] = event.query_id

    if isinstance(event, Token):
        frame["token"] = event.text
    elif isinstance(event, ToolUse):
        frame["data"] = {
            "tool_use_id": event.tool_call_id,
            "tool_name": event.tool_name,
            "tool_input": dump_tool_input(event.tool_input),
        }
    elif isinstance(event, ToolResult):
        data: dict[str, Any] = {
            "tool_use_id": event.tool_call_id,
            "tool_name": event.tool_name,
        }
        if event.error is not None:
            data["error"] = event.error
        else:
            data["result"] = event.result
        frame["data"] = data
    elif isinstance(event, Done):
        if event.data is not None:
            frame["data"] = event.data
    elif isinstance(event, Error):
        frame["error"] = event.message
    return frame
