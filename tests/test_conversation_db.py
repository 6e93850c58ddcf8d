"""Conversation store: schema, ordering, cascade delete, corrupt rows."""

from __future__ import annotations

import sqlite3

import pytest

from deskagent.engine.errors import PersistenceError, ValidationError
from deskagent.shared.models.message import (
    ErrorBlock,
    ImageBlock,
    MessageRole,
    TextBlock,
    ToolReferenceBlock,
    UnknownBlock,
)
from deskagent.shared.services.conversation_db import ConversationStore


@pytest.fixture
def store(tmp_path):
    return ConversationStore(tmp_path / "history.db")


def test_schema_created_in_nested_directory(tmp_path):
    db_path = tmp_path / "nested" / "dir" / "history.db"
    ConversationStore(db_path)
    conn = sqlite3.connect(db_path)
    try:
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    finally:
        conn.close()
    assert {"conversations", "messages"} <= tables


def test_create_and_get_conversation(store):
    conv = store.create_conversation()
    assert conv.title == "New Chat"
    assert conv.updated_at >= conv.created_at
    loaded = store.get_conversation(conv.id)
    assert loaded == conv
    assert store.get_conversation("missing") is None


def test_append_message_keeps_updated_at_monotonic(store):
    conv = store.create_conversation()
    before = store.get_conversation(conv.id).updated_at

    store.append_message(conv.id, MessageRole.USER, [TextBlock(text="hi")], timestamp=conv.created_at + 10)
    after_first = store.get_conversation(conv.id).updated_at
    assert after_first >= before
    assert after_first >= conv.created_at

    # A message with an older timestamp must not move updated_at backwards.
    store.append_message(conv.id, MessageRole.ASSISTANT, [TextBlock(text="yo")], timestamp=1)
    after_second = store.get_conversation(conv.id).updated_at
    assert after_second >= after_first


def test_message_timestamps_are_clamped_non_decreasing(store):
    conv = store.create_conversation()
    store.append_message(conv.id, MessageRole.USER, [TextBlock(text="a")], timestamp=5000)
    late = store.append_message(conv.id, MessageRole.ASSISTANT, [TextBlock(text="b")], timestamp=4000)
    assert late.timestamp == 5000
    stamps = [m.timestamp for m in store.list_messages(conv.id)]
    assert stamps == sorted(stamps)
    assert [m.content[0].text for m in store.list_messages(conv.id)] == ["a", "b"]


def test_touch_never_moves_backwards(store):
    conv = store.create_conversation()
    store.touch(conv.id, conv.updated_at + 1000)
    store.touch(conv.id, 1)
    assert store.get_conversation(conv.id).updated_at == conv.updated_at + 1000


def test_append_to_unknown_conversation_raises(store):
    with pytest.raises(PersistenceError):
        store.append_message("nope", MessageRole.USER, [TextBlock(text="x")])


def test_delete_conversation_cascades_to_messages(store, tmp_path):
    conv = store.create_conversation()
    for i in range(3):
        store.append_message(conv.id, MessageRole.USER, [TextBlock(text=str(i))])
    assert store.delete_conversation(conv.id) is True
    assert store.delete_conversation(conv.id) is False

    conn = sqlite3.connect(tmp_path / "history.db")
    try:
        count = conn.execute(
            "SELECT COUNT(*) FROM messages WHERE conversation_id = ?", (conv.id,)
        ).fetchone()[0]
    finally:
        conn.close()
    assert count == 0


def test_content_blocks_survive_storage(store):
    conv = store.create_conversation()
    blocks = [
        TextBlock(text="result:"),
        ImageBlock(data="aGk=", media_type="image/jpeg"),
        ToolReferenceBlock(tool_call_id="t1", name="list_files", input={"path": "."}, result=["a"]),
        ToolReferenceBlock(tool_call_id="t2", name="read_file", input={"path": "x"}, error="denied"),
        ErrorBlock(message="Interrupted by user"),
    ]
    stored = store.append_message(conv.id, MessageRole.ASSISTANT, blocks, message_id="msg_1")
    assert stored.id == "msg_1"
    loaded = store.list_messages(conv.id)[0]
    assert loaded.content == blocks
    assert loaded.role == MessageRole.ASSISTANT


def test_unknown_block_kind_is_preserved(store, tmp_path):
    conv = store.create_conversation()
    conn = sqlite3.connect(tmp_path / "history.db")
    try:
        with conn:
            conn.execute(
                "INSERT INTO messages(id, conversation_id, role, content, timestamp) VALUES (?, ?, ?, ?, ?)",
                ("m1", conv.id, "assistant", '[{"type": "thinking", "text": "hmm"}]', 1),
            )
    finally:
        conn.close()
    message = store.list_messages(conv.id)[0]
    assert message.content == [UnknownBlock(raw={"type": "thinking", "text": "hmm"})]


def test_corrupt_rows_are_skipped(store, tmp_path):
    conv = store.create_conversation()
    store.append_message(conv.id, MessageRole.USER, [TextBlock(text="good")], timestamp=1)
    conn = sqlite3.connect(tmp_path / "history.db")
    try:
        with conn:
            conn.execute(
                "INSERT INTO messages(id, conversation_id, role, content, timestamp) VALUES (?, ?, ?, ?, ?)",
                ("bad1", conv.id, "user", "{not json", 2),
            )
            conn.execute(
                "INSERT INTO messages(id, conversation_id, role, content, timestamp) VALUES (?, ?, ?, ?, ?)",
                ("bad2", conv.id, "assistant", '[{"text": "no type"}]', 3),
            )
    finally:
        conn.close()
    messages = store.list_messages(conv.id)
    assert [m.content[0].text for m in messages] == ["good"]


def test_list_conversations_newest_first(store):
    first = store.create_conversation(title="first")
    second = store.create_conversation(title="second")
    store.touch(first.id, second.updated_at + 5000)
    assert [c.title for c in store.list_conversations()] == ["first", "second"]
    assert len(store.list_conversations(limit=1)) == 1


def test_rename_conversation(store):
    conv = store.create_conversation()
    assert store.rename_conversation(conv.id, "  Trip planning  ") is True
    assert store.get_conversation(conv.id).title == "Trip planning"
    assert store.rename_conversation("missing", "x") is False
    with pytest.raises(ValidationError):
        store.rename_conversation(conv.id, "   ")


def test_clear_messages_keeps_conversation(store):
    conv = store.create_conversation()
    store.append_message(conv.id, MessageRole.USER, [TextBlock(text="a")])
    store.append_message(conv.id, MessageRole.ASSISTANT, [TextBlock(text="b")])
    assert store.clear_messages(conv.id) == 2
    assert store.list_messages(conv.id) == []
    assert store.get_conversation(conv.id) is not None


def test_stats_counts_rows(store):
    conv = store.create_conversation()
    store.append_message(conv.id, MessageRole.USER, [TextBlock(text="a")])
    stats = store.stats()
    assert stats.conversations == 1
    assert stats.messages == 1
    assert stats.database_bytes > 0


def test_closed_store_raises_persistence_error(store):
    store.close()
    with pytest.raises(PersistenceError):
        store.create_conversation()
