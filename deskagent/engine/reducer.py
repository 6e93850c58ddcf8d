"""Folds worker protocol events into the conversation transcript.

The reducer owns the observable read model: ordered messages, tool
calls keyed by id, per-query lifecycle records and an anomaly log.
All state is keyed by query id; there is no "current query".

Every event is checked against the session version individually:
an event stamped with a version older than the current one belongs
to a conversation that has since been reset and is dropped without
any effect.
"""
from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from deskagent.adapters.events import (
    Done,
    Error,
    ProtocolEvent,
    Ready,
    Token,
    ToolResult,
    ToolUse,
)
from deskagent.adapters.recorder import TranscriptRecorder, Turn
from deskagent.engine.lifecycle import validate_transition
from deskagent.engine.models import QueryRecord, QueryState
from deskagent.engine.tool_inputs import dump_tool_input
from deskagent.shared.models.conversation import StoredMessage
from deskagent.shared.models.message import (
    ErrorBlock,
    ImageAttachment,
    ImageBlock,
    Message,
    MessageRole,
    TextBlock,
    ToolCall,
    ToolReferenceBlock,
    now_ms,
)

logger = logging.getLogger(__name__)

Listener = Callable[["ConversationReducer"], None]


@dataclass
class Anomaly:
    """Something the worker sent that did not fit the transcript."""
    kind: str
    query_id: str
    detail: str
    timestamp: int = field(default_factory=now_ms)


@dataclass
class TranscriptSnapshot:
    messages: list[Message]
    tool_calls: list[ToolCall]
    anomalies: list[Anomaly]
    worker_ready: bool


class ConversationReducer:
    """Applies protocol events to the in-memory transcript."""

    def __init__(
        self,
        current_version: Callable[[], int] | None = None,
        recorder: TranscriptRecorder | None = None,
        on_query_finished: Callable[[str], None] | None = None,
    ) -> None:
        self._current_version = current_version or (lambda: 0)
        self._recorder = recorder
        self._on_query_finished = on_query_finished
        self._messages: list[Message] = []
        self._messages_by_id: dict[str, Message] = {}
        self._tool_calls: dict[str, ToolCall] = {}
        self._queries: dict[str, QueryRecord] = {}
        self._anomalies: list[Anomaly] = []
        self._listeners: list[Listener] = []
        self.worker_ready = False
        self.stale_dropped = 0

    # ── Read model ───────────────────────────────────────────────

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def tool_calls(self) -> list[ToolCall]:
        return list(self._tool_calls.values())

    @property
    def anomalies(self) -> list[Anomaly]:
        return list(self._anomalies)

    def tool_call(self, tool_call_id: str) -> ToolCall | None:
        return self._tool_calls.get(tool_call_id)

    def pending_tool_calls(self) -> list[ToolCall]:
        return [tc for tc in self._tool_calls.values() if tc.is_pending]

    def query_state(self, query_id: str) -> QueryState | None:
        record = self._queries.get(query_id)
        return record.state if record is not None else None

    def assistant_message(self, query_id: str) -> Message | None:
        record = self._queries.get(query_id)
        if record is None or record.assistant_message_id is None:
            return None
        return self._messages_by_id.get(record.assistant_message_id)

    def user_message(self, query_id: str) -> Message | None:
        record = self._queries.get(query_id)
        if record is None or record.user_message_id is None:
            return None
        return self._messages_by_id.get(record.user_message_id)

    def active_queries(self) -> list[str]:
        return [qid for qid, r in self._queries.items() if not r.is_terminal]

    def snapshot(self) -> TranscriptSnapshot:
        """Deep copy of the read model, safe to hand to another component."""
        return TranscriptSnapshot(
            messages=copy.deepcopy(self._messages),
            tool_calls=copy.deepcopy(list(self._tool_calls.values())),
            anomalies=list(self._anomalies),
            worker_ready=self.worker_ready,
        )

    # ── Listeners ────────────────────────────────────────────────

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Transcript listener failed")

    # ── Commands from the supervisor ─────────────────────────────

    def begin_query(
        self,
        query_id: str,
        text: str,
        attachments: list[ImageAttachment] | None = None,
        version: int | None = None,
    ) -> Message:
        """Register a query and record its user message."""
        if query_id in self._queries:
            raise ValueError(f"Query {query_id} already registered")
        content: list = [TextBlock(text=text)] if text else []
        for attachment in attachments or []:
            content.append(ImageBlock(data=attachment.data, media_type=attachment.mime_type))
        message = Message(
            role=MessageRole.USER,
            query_id=query_id,
            content=content,
            timestamp=self._next_timestamp(now_ms()),
        )
        self._append_message(message)
        self._queries[query_id] = QueryRecord(
            query_id=query_id,
            version=self._current_version() if version is None else version,
            user_message_id=message.id,
        )
        self._notify()
        return message

    def set_worker_ready(self, ready: bool) -> None:
        if self.worker_ready != ready:
            self.worker_ready = ready
            self._notify()

    def reset(self) -> None:
        """Forget the transcript. Used on reset, clear and load."""
        self._messages.clear()
        self._messages_by_id.clear()
        self._tool_calls.clear()
        self._queries.clear()
        self._anomalies.clear()
        self._notify()

    def load(self, stored: list[StoredMessage]) -> None:
        """Replace the transcript with messages read back from the store."""
        self._messages.clear()
        self._messages_by_id.clear()
        self._tool_calls.clear()
        self._queries.clear()
        self._anomalies.clear()
        for record in stored:
            error = next(
                (b.message for b in record.content if isinstance(b, ErrorBlock)), None,
            )
            message = Message(
                role=record.role,
                query_id="",
                content=list(record.content),
                id=record.id,
                timestamp=record.timestamp,
                error=error,
            )
            self._append_message(message)
            for block in record.content:
                if isinstance(block, ToolReferenceBlock):
                    self._tool_calls[block.tool_call_id] = ToolCall(
                        id=block.tool_call_id,
                        query_id="",
                        name=block.name,
                        input=dict(block.input),
                        result=block.result,
                        error=block.error,
                        timestamp=record.timestamp,
                        completed_at=record.timestamp,
                    )
        self._notify()

    def cancel_outstanding(self, reason: str) -> list[str]:
        """Finalize every non-terminal query as cancelled and persist it."""
        cancelled: list[str] = []
        for record in self._queries.values():
            if record.is_terminal:
                continue
            message = self._ensure_assistant(record, now_ms())
            message.is_streaming = False
            message.error = reason
            for tool_call_id in record.tool_call_ids:
                tc = self._tool_calls.get(tool_call_id)
                if tc is not None and tc.is_pending:
                    self._complete_tool_call(tc, None, reason, now_ms())
            record.state = QueryState.CANCELLED
            cancelled.append(record.query_id)
            self._persist(record)
        if cancelled:
            logger.info("Cancelled outstanding queries %s: %s", cancelled, reason)
            self._notify()
        return cancelled

    # ── Event application ────────────────────────────────────────

    def apply(self, event: ProtocolEvent) -> bool:
        """Apply one event. Returns True if the transcript changed."""
        current = self._current_version()
        if event.version < current:
            self.stale_dropped += 1
            logger.debug(
                "Dropping stale %s for %s (v%d < v%d)",
                event.event_type, event.query_id, event.version, current,
            )
            return False

        if isinstance(event, Ready):
            self.set_worker_ready(True)
            return True
        if isinstance(event, Token):
            changed = self._on_token(event)
        elif isinstance(event, ToolUse):
            changed = self._on_tool_use(event)
        elif isinstance(event, ToolResult):
            changed = self._on_tool_result(event)
        elif isinstance(event, Done):
            changed = self._on_done(event)
        elif isinstance(event, Error):
            changed = self._on_error(event)
        else:
            logger.warning("Unhandled event type %s", event.event_type)
            return False
        if changed:
            self._notify()
        return changed

    def _on_token(self, event: Token) -> bool:
        record = self._record_for(event)
        if not self._transition(record, self._active_state(record), event):
            return False
        message = self._ensure_assistant(record, event.timestamp)
        message.is_streaming = True
        message.append_text(event.text)
        return True

    def _on_tool_use(self, event: ToolUse) -> bool:
        if event.tool_call_id in self._tool_calls:
            self._anomaly("duplicate_tool_use", event.query_id, f"tool call {event.tool_call_id} already exists")
            return False
        record = self._record_for(event)
        if not self._transition(record, QueryState.TOOL_PENDING, event):
            return False
        message = self._ensure_assistant(record, event.timestamp)
        message.is_streaming = True
        tc = ToolCall(
            id=event.tool_call_id,
            query_id=event.query_id,
            name=event.tool_name,
            input=event.tool_input,
            timestamp=event.timestamp,
        )
        self._tool_calls[tc.id] = tc
        record.tool_call_ids.append(tc.id)
        message.content.append(ToolReferenceBlock(
            tool_call_id=tc.id,
            name=tc.name,
            input=dump_tool_input(event.tool_input),
        ))
        return True

    def _on_tool_result(self, event: ToolResult) -> bool:
        tc = self._tool_calls.get(event.tool_call_id)
        if tc is None:
            self._tool_calls[event.tool_call_id] = ToolCall(
                id=event.tool_call_id,
                query_id=event.query_id,
                name=event.tool_name,
                result=event.result,
                error=event.error,
                timestamp=event.timestamp,
                completed_at=event.timestamp,
                orphaned=True,
            )
            self._anomaly(
                "orphan_tool_result", event.query_id,
                f"tool_result for unknown tool call {event.tool_call_id}",
            )
            return True
        if not tc.is_pending:
            self._anomaly(
                "duplicate_tool_result", event.query_id,
                f"tool call {tc.id} already completed",
            )
            return False

        record = self._queries.get(tc.query_id)
        if record is not None:
            remaining = [
                tid for tid in record.tool_call_ids
                if tid != tc.id and self._tool_calls[tid].is_pending
            ]
            target = QueryState.TOOL_PENDING if remaining else QueryState.STREAMING
            if not self._transition(record, target, event):
                return False
        self._complete_tool_call(tc, event.result, event.error, event.timestamp)
        return True

    def _on_done(self, event: Done) -> bool:
        record = self._queries.get(event.query_id)
        if record is None:
            logger.debug("done for unknown query %s ignored", event.query_id)
            return False
        if not self._transition(record, QueryState.DONE, event):
            return False
        message = self._ensure_assistant(record, event.timestamp)
        message.is_streaming = False
        message.usage = event.data
        self._finish(record)
        return True

    def _on_error(self, event: Error) -> bool:
        record = self._record_for(event)
        if not self._transition(record, QueryState.ERRORED, event):
            return False
        message = self._ensure_assistant(record, event.timestamp)
        message.is_streaming = False
        message.error = event.message
        logger.warning("Query %s failed: %s", event.query_id, event.message)
        self._finish(record)
        return True

    # ── Helpers ──────────────────────────────────────────────────

    def _record_for(self, event: ProtocolEvent) -> QueryRecord:
        record = self._queries.get(event.query_id)
        if record is None:
            record = QueryRecord(query_id=event.query_id, version=event.version)
            self._queries[event.query_id] = record
        return record

    def _active_state(self, record: QueryRecord) -> QueryState:
        if any(self._tool_calls[tid].is_pending for tid in record.tool_call_ids):
            return QueryState.TOOL_PENDING
        return QueryState.STREAMING

    def _transition(self, record: QueryRecord, target: QueryState, event: ProtocolEvent) -> bool:
        try:
            validate_transition(record.state, target)
        except ValueError as exc:
            logger.warning("Ignoring %s for query %s: %s", event.event_type, record.query_id, exc)
            self._anomaly("invalid_transition", record.query_id, str(exc))
            return False
        record.state = target
        return True

    def _next_timestamp(self, timestamp: int) -> int:
        if self._messages and timestamp < self._messages[-1].timestamp:
            return self._messages[-1].timestamp
        return timestamp

    def _append_message(self, message: Message) -> None:
        self._messages.append(message)
        self._messages_by_id[message.id] = message

    def _ensure_assistant(self, record: QueryRecord, timestamp: int) -> Message:
        if record.assistant_message_id is not None:
            return self._messages_by_id[record.assistant_message_id]
        message = Message(
            role=MessageRole.ASSISTANT,
            query_id=record.query_id,
            timestamp=self._next_timestamp(timestamp),
            is_streaming=True,
        )
        self._append_message(message)
        record.assistant_message_id = message.id
        return message

    def _complete_tool_call(self, tc: ToolCall, result: Any, error: str | None, timestamp: int) -> None:
        tc.result = result
        tc.error = error
        tc.completed_at = timestamp
        record = self._queries.get(tc.query_id)
        if record is None:
            return
        message = self.assistant_message(record.query_id)
        block = message.tool_reference(tc.id) if message is not None else None
        if block is not None:
            block.result = result
            block.error = error

    def _anomaly(self, kind: str, query_id: str, detail: str) -> None:
        logger.warning("Transcript anomaly (%s) in query %s: %s", kind, query_id, detail)
        self._anomalies.append(Anomaly(kind=kind, query_id=query_id, detail=detail))

    def _finish(self, record: QueryRecord) -> None:
        self._persist(record)
        if self._on_query_finished is not None:
            try:
                self._on_query_finished(record.query_id)
            except Exception:
                logger.exception("on_query_finished callback failed")

    def _persist(self, record: QueryRecord) -> None:
        if self._recorder is None:
            return
        user = self.user_message(record.query_id)
        assistant = self.assistant_message(record.query_id)
        self._recorder.record_turn(Turn(
            query_id=record.query_id,
            user=copy.deepcopy(user),
            assistant=copy.deepcopy(assistant),
        ))
