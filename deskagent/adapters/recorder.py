"""Writes finalized turns to the conversation store off the event path.

Jobs are queued in order and executed by a single writer task; each
store call runs in a thread via ``asyncio.to_thread`` so SQLite I/O
never blocks frame ingestion. Persistence failures are reported to a
callback and logged; the in-memory transcript is never rolled back.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from deskagent.engine.errors import PersistenceError
from deskagent.shared.models.conversation import DEFAULT_TITLE, new_conversation_id
from deskagent.shared.models.message import ContentBlock, ErrorBlock, Message
from deskagent.shared.services.conversation_db import ConversationStore
from deskagent.shared.services.session_naming import fallback_title

logger = logging.getLogger(__name__)

# async def titler(user_text, assistant_text) -> str | None
Titler = Callable[[str, str], Awaitable["str | None"]]
ErrorCallback = Callable[[PersistenceError], None]


@dataclass
class Turn:
    """The user and assistant messages of one finalized query."""
    query_id: str
    user: Message | None
    assistant: Message | None


def persisted_content(message: Message) -> list[ContentBlock]:
    """Blocks to store for a message, with its error as a trailing block."""
    blocks: list[ContentBlock] = list(message.content)
    if message.error and not any(isinstance(b, ErrorBlock) for b in blocks):
        blocks.append(ErrorBlock(message=message.error))
    return blocks


class TranscriptRecorder:
    """Ordered, asynchronous writer in front of a ConversationStore."""

    def __init__(
        self,
        store: ConversationStore,
        on_error: ErrorCallback | None = None,
        titler: Titler | None = None,
    ) -> None:
        self._store = store
        self._on_error = on_error
        self._titler = titler
        self._conversation_id: str | None = None
        self._created: set[str] = set()
        self._queue: asyncio.Queue[Callable[[], Awaitable[None]]] = asyncio.Queue()
        self._writer: asyncio.Task | None = None
        self._title_tasks: set[asyncio.Task] = set()
        self.failures = 0

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def conversation_id(self) -> str | None:
        """Conversation the next turn is written to (None: not created yet)."""
        return self._conversation_id

    # ── Queueing ─────────────────────────────────────────────────

    def _enqueue(self, job: Callable[[], Awaitable[None]]) -> None:
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(
                self._run(), name="transcript-recorder",
            )
        self._queue.put_nowait(job)

    def record_turn(self, turn: Turn) -> None:
        """Queue a finalized turn. Creates the conversation lazily."""
        if turn.user is None and turn.assistant is None:
            return
        if self._conversation_id is None:
            self._conversation_id = new_conversation_id()
        conversation_id = self._conversation_id
        self._enqueue(lambda: self._write_turn(conversation_id, turn))

    def detach(self) -> None:
        """Start a fresh conversation on the next recorded turn."""
        self._conversation_id = None

    def attach(self, conversation_id: str) -> None:
        """Append subsequent turns to an existing conversation."""
        self._conversation_id = conversation_id
        self._created.add(conversation_id)

    def clear(self) -> None:
        """Delete the stored messages of the current conversation."""
        conversation_id = self._conversation_id
        if conversation_id is None:
            return
        self._enqueue(lambda: self._clear(conversation_id))

    async def flush(self) -> None:
        """Wait until every queued job has been executed."""
        if self._writer is not None and not self._writer.done():
            await self._queue.join()

    async def stop(self) -> None:
        await self.flush()
        for task in list(self._title_tasks):
            task.cancel()
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None

    # ── Writer ───────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await job()
            except PersistenceError as exc:
                self._report(exc)
            except Exception:
                logger.exception("Transcript recorder job failed")
            finally:
                self._queue.task_done()

    def _report(self, exc: PersistenceError) -> None:
        self.failures += 1
        logger.warning("%s", exc)
        if self._on_error is not None:
            try:
                self._on_error(exc)
            except Exception:
                logger.exception("Persistence error callback failed")

    async def _ensure_conversation(self, conversation_id: str) -> None:
        if conversation_id in self._created:
            return
        existing = await asyncio.to_thread(self._store.get_conversation, conversation_id)
        if existing is None:
            await asyncio.to_thread(
                self._store.create_conversation, DEFAULT_TITLE, conversation_id,
            )
            logger.info("Started conversation %s", conversation_id)
        self._created.add(conversation_id)

    async def _write_turn(self, conversation_id: str, turn: Turn) -> None:
        await self._ensure_conversation(conversation_id)
        for message in (turn.user, turn.assistant):
            if message is None:
                continue
            await asyncio.to_thread(
                self._store.append_message,
                conversation_id,
                message.role,
                persisted_content(message),
                message.timestamp,
                message.id,
            )
        if turn.user is not None and turn.user.text.strip():
            await self._apply_title(conversation_id, turn)

    async def _apply_title(self, conversation_id: str, turn: Turn) -> None:
        conversation = await asyncio.to_thread(self._store.get_conversation, conversation_id)
        if conversation is None or conversation.title != DEFAULT_TITLE:
            return
        user_text = turn.user.text if turn.user is not None else ""
        await asyncio.to_thread(
            self._store.rename_conversation, conversation_id, fallback_title(user_text),
        )
        if self._titler is not None:
            assistant_text = turn.assistant.text if turn.assistant is not None else ""
            task = asyncio.get_running_loop().create_task(
                self._generate_title(conversation_id, user_text, assistant_text),
            )
            self._title_tasks.add(task)
            task.add_done_callback(self._title_tasks.discard)

    async def _generate_title(self, conversation_id: str, user_text: str, assistant_text: str) -> None:
        title = await self._titler(user_text, assistant_text)
        if not title:
            return
        try:
            await asyncio.to_thread(self._store.rename_conversation, conversation_id, title)
        except PersistenceError as exc:
            self._report(exc)

    async def _clear(self, conversation_id: str) -> None:
        if conversation_id not in self._created:
            existing = await asyncio.to_thread(self._store.get_conversation, conversation_id)
            if existing is None:
                return
        removed = await asyncio.to_thread(self._store.clear_messages, conversation_id)
        logger.info("Cleared %d messages from conversation %s", removed, conversation_id)
