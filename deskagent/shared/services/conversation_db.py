"""SQLite-backed conversation history.

Two tables: ``conversations`` and ``messages``. Message content is a
JSON-encoded list of content blocks so new block kinds need no schema
migration. Each operation opens its own connection, which lets the
transcript recorder call into the store from a worker thread.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from deskagent.engine.errors import PersistenceError, ValidationError
from deskagent.shared.models.conversation import (
    DEFAULT_TITLE,
    Conversation,
    StoredMessage,
    StoreStats,
    new_conversation_id,
)
from deskagent.shared.models.message import (
    ContentBlock,
    MessageRole,
    new_message_id,
    block_from_dict,
    block_to_dict,
    now_ms,
)

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
        content TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations(updated_at DESC)",
)


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=str(row["id"]),
        title=str(row["title"]),
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
    )


class ConversationStore:
    """Durable conversation and message records."""

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._closed = False
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        if self._closed:
            raise PersistenceError(operation, "store is closed")
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceError(operation, str(exc)) from exc
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(operation, str(exc)) from exc
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._transaction("ensure schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        """Reject further operations."""
        self._closed = True

    # ── Conversations ────────────────────────────────────────────

    def create_conversation(
        self,
        title: str = DEFAULT_TITLE,
        conversation_id: str | None = None,
    ) -> Conversation:
        conversation = Conversation(
            id=conversation_id or new_conversation_id(),
            title=title or DEFAULT_TITLE,
        )
        with self._transaction("create conversation") as conn:
            conn.execute(
                "INSERT INTO conversations(id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (conversation.id, conversation.title, conversation.created_at, conversation.updated_at),
            )
        logger.debug("Created conversation %s", conversation.id)
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._transaction("get conversation") as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,),
            ).fetchone()
        return _row_to_conversation(row) if row is not None else None

    def list_conversations(self, limit: int | None = None) -> list[Conversation]:
        """All conversations, most recently updated first."""
        sql = "SELECT * FROM conversations ORDER BY updated_at DESC, created_at DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        with self._transaction("list conversations") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_conversation(r) for r in rows]

    def rename_conversation(self, conversation_id: str, title: str) -> bool:
        title = title.strip()
        if not title:
            raise ValidationError("title", "must not be empty")
        with self._transaction("rename conversation") as conn:
            cur = conn.execute(
                "UPDATE conversations SET title = ? WHERE id = ?",
                (title, conversation_id),
            )
        return cur.rowcount > 0

    def touch(self, conversation_id: str, timestamp: int | None = None) -> None:
        """Move ``updated_at`` forward. Never moves it backwards."""
        with self._transaction("touch conversation") as conn:
            self._touch(conn, conversation_id, timestamp if timestamp is not None else now_ms())

    @staticmethod
    def _touch(conn: sqlite3.Connection, conversation_id: str, timestamp: int) -> None:
        conn.execute(
            "UPDATE conversations SET updated_at = MAX(updated_at, ?) WHERE id = ?",
            (timestamp, conversation_id),
        )

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and, by cascade, all its messages."""
        with self._transaction("delete conversation") as conn:
            cur = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        deleted = cur.rowcount > 0
        if deleted:
            logger.info("Deleted conversation %s", conversation_id)
        return deleted

    # ── Messages ─────────────────────────────────────────────────

    def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: list[ContentBlock],
        timestamp: int | None = None,
        message_id: str | None = None,
    ) -> StoredMessage:
        """Insert one finalized message and touch its conversation atomically.

        The timestamp is clamped to the conversation's latest message so
        messages stay ordered even if the wall clock steps backwards.
        """
        payload = json.dumps([block_to_dict(b) for b in content], ensure_ascii=False)
        ts = timestamp if timestamp is not None else now_ms()
        with self._transaction("append message") as conn:
            conv = conn.execute(
                "SELECT id FROM conversations WHERE id = ?", (conversation_id,),
            ).fetchone()
            if conv is None:
                raise PersistenceError("append message", f"unknown conversation {conversation_id}")
            last = conn.execute(
                "SELECT MAX(timestamp) AS last FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            if last is not None and last["last"] is not None and ts < int(last["last"]):
                ts = int(last["last"])
            stored = StoredMessage(
                id=message_id or new_message_id(),
                conversation_id=conversation_id,
                role=role,
                content=list(content),
                timestamp=ts,
            )
            conn.execute(
                "INSERT INTO messages(id, conversation_id, role, content, timestamp) VALUES (?, ?, ?, ?, ?)",
                (stored.id, conversation_id, role.value, payload, ts),
            )
            self._touch(conn, conversation_id, max(ts, now_ms()))
        return stored

    def list_messages(self, conversation_id: str) -> list[StoredMessage]:
        """Messages of a conversation in timestamp order.

        Rows that cannot be decoded are skipped with a warning.
        """
        with self._transaction("list messages") as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY timestamp ASC, rowid ASC",
                (conversation_id,),
            ).fetchall()
        messages: list[StoredMessage] = []
        for row in rows:
            try:
                messages.append(self._row_to_message(row))
            except ValidationError as exc:
                logger.warning("Skipping stored message %s: %s", row["id"], exc)
        return messages

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> StoredMessage:
        try:
            role = MessageRole(row["role"])
        except ValueError as exc:
            raise ValidationError("stored message", f"unknown role {row['role']!r}") from exc
        try:
            raw = json.loads(row["content"])
        except (TypeError, json.JSONDecodeError) as exc:
            raise ValidationError("stored message", f"content is not valid json ({exc})") from exc
        if not isinstance(raw, list):
            raise ValidationError("stored message", "content is not a block list")
        return StoredMessage(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=role,
            content=[block_from_dict(b) for b in raw],
            timestamp=int(row["timestamp"]),
        )

    def clear_messages(self, conversation_id: str) -> int:
        """Delete every message of a conversation, keeping the conversation."""
        with self._transaction("clear messages") as conn:
            cur = conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            self._touch(conn, conversation_id, now_ms())
        return cur.rowcount

    def stats(self) -> StoreStats:
        with self._transaction("stats") as conn:
            conversations = conn.execute("SELECT COUNT(*) AS n FROM conversations").fetchone()["n"]
            messages = conn.execute("SELECT COUNT(*) AS n FROM messages").fetchone()["n"]
        try:
            size = os.path.getsize(self._db_path)
        except OSError:
            size = 0
        return StoreStats(
            conversations=int(conversations),
            messages=int(messages),
            database_bytes=size,
        )
