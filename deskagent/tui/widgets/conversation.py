"""Conversation view: scrollable transcript rendered from the reducer's read model."""

from __future__ import annotations

import json
from typing import Any

from rich.console import Group
from rich.text import Text
from textual.containers import VerticalScroll
from textual.widgets import Static

from deskagent.engine.reducer import TranscriptSnapshot
from deskagent.shared.models.message import (
    ErrorBlock,
    ImageBlock,
    Message,
    MessageRole,
    TextBlock,
    ToolCall,
    ToolReferenceBlock,
)

MAX_TOOL_PREVIEW = 200


def _preview(value: Any, limit: int = MAX_TOOL_PREVIEW) -> str:
    """Single-line preview of a tool input or result."""
    if value is None:
        return ""
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, ensure_ascii=False, default=str)
    text = " ".join(text.split())
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def format_tool_call(block: ToolReferenceBlock, tool_call: ToolCall | None = None) -> Text:
    """One tool invocation line plus its outcome."""
    line = Text()
    line.append("  ⚙ ", style="cyan")
    line.append(block.name or "tool", style="bold cyan")
    line.append(f" {_preview(block.input)}", style="dim")

    error = tool_call.error if tool_call is not None else block.error
    result = tool_call.result if tool_call is not None else block.result
    pending = tool_call.is_pending if tool_call is not None else (
        error is None and result is None
    )
    if pending:
        line.append("\n    … running", style="yellow")
    elif error is not None:
        line.append(f"\n    ✗ {_preview(error)}", style="red")
    else:
        line.append(f"\n    ✓ {_preview(result)}", style="green")
    return line


def format_message(message: Message, tool_calls: dict[str, ToolCall] | None = None) -> Text:
    """Render one transcript message as rich Text."""
    tool_calls = tool_calls or {}
    out = Text()
    if message.role == MessageRole.USER:
        out.append("You", style="bold green")
    else:
        out.append("Assistant", style="bold magenta")
        if message.is_streaming:
            out.append(" ●", style="yellow")
    out.append("\n")

    for block in message.content:
        if isinstance(block, TextBlock):
            out.append(block.text)
        elif isinstance(block, ImageBlock):
            out.append(f"[image {block.media_type}]", style="dim italic")
        elif isinstance(block, ToolReferenceBlock):
            if out.plain and not out.plain.endswith("\n"):
                out.append("\n")
            out.append_text(format_tool_call(block, tool_calls.get(block.tool_call_id)))
            out.append("\n")
        elif isinstance(block, ErrorBlock):
            out.append(f"\n⚠ {block.message}", style="red")

    if message.error and not any(isinstance(b, ErrorBlock) for b in message.content):
        out.append(f"\n⚠ {message.error}", style="red")
    return out


def format_transcript(snapshot: TranscriptSnapshot) -> Group:
    tool_calls = {tc.id: tc for tc in snapshot.tool_calls}
    renderables: list[Text] = []
    for message in snapshot.messages:
        renderables.append(format_message(message, tool_calls))
        renderables.append(Text(""))
    if not renderables:
        renderables.append(Text("No messages yet. Type below to start.", style="dim italic"))
    return Group(*renderables)


class ConversationView(VerticalScroll):
    """Scrollable transcript. Call :meth:`show` with a fresh snapshot."""

    DEFAULT_CSS = """
    ConversationView {
        height: 1fr;
        padding: 0 1;
    }

    ConversationView #transcript {
        height: auto;
    }
    """

    def compose(self):
        yield Static(id="transcript")

    def show(self, snapshot: TranscriptSnapshot) -> None:
        self.query_one("#transcript", Static).update(format_transcript(snapshot))
        self.scroll_end(animate=False)
