"""deskagent TUI: Textual application class."""

from __future__ import annotations

import logging
from functools import partial
from logging.handlers import RotatingFileHandler
from pathlib import Path

from textual.app import App, ComposeResult
from textual.widgets import Footer, Header, Input

from deskagent.engine.config import DESK_HOME, SessionConfig
from deskagent.engine.errors import Busy, DeskAgentError, PersistenceError
from deskagent.engine.reducer import ConversationReducer
from deskagent.engine.supervisor import SessionSupervisor, new_query_id
from deskagent.shared.services.conversation_db import ConversationStore
from deskagent.shared.services.session_naming import generate_conversation_title
from deskagent.tui.widgets.conversation import ConversationView
from deskagent.tui.widgets.status_bar import StatusBar

logger = logging.getLogger(__name__)

LOG_FILE = DESK_HOME / "logs" / "deskagent.log"


def configure_file_logging(level: str = "INFO", log_file: Path = LOG_FILE) -> Path:
    """Route logging to a rotating file so it never draws over the UI."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    ))
    root.addHandler(file_handler)
    return log_file


class DeskAgentApp(App):
    """Terminal chat client for the deskagent worker."""

    TITLE = "deskagent"
    SUB_TITLE = "Desktop Assistant"

    BINDINGS = [
        ("ctrl+q", "quit", "Quit"),
        ("ctrl+c", "interrupt", "Interrupt"),
        ("ctrl+n", "new_conversation", "New"),
        ("ctrl+l", "clear_history", "Clear"),
        ("escape", "blur", "Blur"),
    ]

    def __init__(
        self,
        config: SessionConfig | None = None,
        conversation_id: str | None = None,
    ) -> None:
        super().__init__()
        self._config = config or SessionConfig.from_env()
        self._resume_id = conversation_id
        self._refresh_pending = False
        store = ConversationStore(self._config.db_path)
        self.supervisor = SessionSupervisor(
            self._config,
            store=store,
            on_persistence_error=self._on_persistence_error,
            titler=partial(generate_conversation_title, model_id=self._config.model_id),
        )

    def compose(self) -> ComposeResult:
        yield Header()
        yield ConversationView(id="conversation")
        yield Input(placeholder="Message (Enter to send)", id="prompt")
        yield StatusBar(id="status")
        yield Footer()

    async def on_mount(self) -> None:
        status = self.query_one(StatusBar)
        status.model = self._config.model_id or "default"
        self.supervisor.reducer.add_listener(self._on_transcript_changed)
        self.query_one(Input).focus()
        self._render_transcript()
        self.run_worker(self._boot(), exclusive=True, group="session")

    async def _boot(self) -> None:
        status = self.query_one(StatusBar)
        status.status = "starting"
        try:
            if self._resume_id:
                await self.supervisor.load_conversation(self._resume_id)
            await self.supervisor.start()
        except DeskAgentError as exc:
            logger.warning("Worker startup failed: %s", exc)
            status.status = "error"
            self.notify(str(exc), severity="error", title="Worker")
            return
        self._update_status()

    # ── Transcript ───────────────────────────────────────────────

    def _on_transcript_changed(self, reducer: ConversationReducer) -> None:
        # Coalesce bursts of tokens into one repaint.
        if self._refresh_pending:
            return
        self._refresh_pending = True
        self.call_later(self._render_transcript)

    def _render_transcript(self) -> None:
        self._refresh_pending = False
        self.query_one(ConversationView).show(self.supervisor.reducer.snapshot())
        self._update_status()

    def _update_status(self) -> None:
        status = self.query_one(StatusBar)
        supervisor = self.supervisor
        if supervisor.busy:
            status.status = "busy"
        elif supervisor.ready:
            status.status = "ready"
        elif status.status != "error":
            status.status = "stopped"
        status.version = supervisor.version
        status.pending_tools = len(supervisor.reducer.pending_tool_calls())
        conversation_id = supervisor.conversation_id
        status.conversation = conversation_id[:8] if conversation_id else "new"

    def _on_persistence_error(self, exc: PersistenceError) -> None:
        self.notify(str(exc), severity="warning", title="History")

    # ── Input ────────────────────────────────────────────────────

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        text = event.value.strip()
        if not text:
            return
        try:
            await self.supervisor.send(new_query_id(), text)
        except Busy:
            self.notify("A reply is still streaming. Press ctrl+c to interrupt.", severity="warning")
            return
        except DeskAgentError as exc:
            self.notify(str(exc), severity="error")
            self._update_status()
            return
        event.input.value = ""
        self._update_status()

    # ── Actions ──────────────────────────────────────────────────

    async def action_interrupt(self) -> None:
        if not self.supervisor.busy:
            return
        try:
            await self.supervisor.interrupt()
        except DeskAgentError as exc:
            self.notify(str(exc), severity="error")

    async def action_new_conversation(self) -> None:
        try:
            await self.supervisor.reset_conversation()
        except DeskAgentError as exc:
            self.notify(str(exc), severity="error")
        self._render_transcript()

    async def action_clear_history(self) -> None:
        try:
            await self.supervisor.clear_history()
        except DeskAgentError as exc:
            self.notify(str(exc), severity="error")
        self._render_transcript()

    def action_blur(self) -> None:
        self.screen.set_focus(None)

    async def action_quit(self) -> None:
        """Stop the worker and flush history before quitting."""
        self.supervisor.reducer.remove_listener(self._on_transcript_changed)
        await self.supervisor.stop()
        if self.supervisor.recorder is not None:
            self.supervisor.recorder.store.close()
        await super().action_quit()


def run_tui(config: SessionConfig, conversation_id: str | None = None) -> None:
    log_file = configure_file_logging(config.log_level)
    logger.info("Starting deskagent TUI (log=%s, db=%s)", log_file, config.db_path)
    DeskAgentApp(config, conversation_id=conversation_id).run()
