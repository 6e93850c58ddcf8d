"""Status bar: bottom bar showing worker state and session info."""

from __future__ import annotations

import time
from typing import Optional

from rich.text import Text
from textual.reactive import reactive
from textual.timer import Timer
from textual.widget import Widget


def _format_elapsed(seconds: float) -> str:
    """Format elapsed seconds into a human-readable string."""
    secs = int(seconds)
    if secs < 60:
        return f"{secs}s"
    elif secs < 3600:
        m, s = divmod(secs, 60)
        return f"{m}m {s}s"
    else:
        h, remainder = divmod(secs, 3600)
        m = remainder // 60
        return f"{h}h {m}m"


class StatusBar(Widget):
    """Single-line status bar with worker state and conversation info."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        dock: bottom;
    }
    """

    status: reactive[str] = reactive("stopped")
    conversation: reactive[str] = reactive("new")
    version: reactive[int] = reactive(0)
    pending_tools: reactive[int] = reactive(0)
    model: reactive[str] = reactive("default")

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._query_started_at: Optional[float] = None
        self._elapsed_timer: Timer | None = None

    def watch_status(self, old_value: str, new_value: str) -> None:
        """Track query elapsed time while the worker is busy."""
        if new_value == "busy" and old_value != "busy":
            self._query_started_at = time.monotonic()
            if self._elapsed_timer is None:
                self._elapsed_timer = self.set_interval(1.0, self.refresh)
        elif old_value == "busy" and new_value != "busy":
            self._query_started_at = None
            if self._elapsed_timer is not None:
                self._elapsed_timer.stop()
                self._elapsed_timer = None

    def render(self) -> Text:
        status_colors = {
            "ready": "green",
            "busy": "yellow",
            "starting": "yellow",
            "stopped": "red",
            "error": "red bold",
        }
        color = status_colors.get(self.status, "white")

        bar = Text()
        bar.append(f" {self.conversation} ", style="bold")
        bar.append(" │ ", style="dim")
        bar.append(self.model, style="cyan")
        bar.append(" │ ", style="dim")
        bar.append(f"v{self.version}", style="dim")
        if self.pending_tools:
            bar.append(" │ ", style="dim")
            bar.append(f"{self.pending_tools} tool(s) running", style="yellow")
        bar.append(" │ ", style="dim")

        status_display = f"● {self.status}"
        if self._query_started_at is not None:
            elapsed = _format_elapsed(time.monotonic() - self._query_started_at)
            status_display += f" ({elapsed})"
        bar.append(status_display, style=color)
        return bar
