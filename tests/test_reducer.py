"""Conversation reducer: streaming, staleness, tool correlation, finalization."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from deskagent.adapters.events import Done, Error, Ready, Token, ToolResult, ToolUse
from deskagent.engine.models import QueryState
from deskagent.engine.reducer import ConversationReducer
from deskagent.engine.tool_inputs import ListFilesInput
from deskagent.shared.models.conversation import StoredMessage
from deskagent.shared.models.message import (
    ErrorBlock,
    ImageAttachment,
    ImageBlock,
    MessageRole,
    TextBlock,
    ToolReferenceBlock,
)


class VersionClock:
    def __init__(self) -> None:
        self.value = 1

    def __call__(self) -> int:
        return self.value


@pytest.fixture
def clock():
    return VersionClock()


@pytest.fixture
def recorder():
    return MagicMock()


@pytest.fixture
def reducer(clock, recorder):
    return ConversationReducer(current_version=clock, recorder=recorder)


def _assistant_texts(reducer):
    return [m.text for m in reducer.messages if m.role == MessageRole.ASSISTANT]


# ── Streaming ──


def test_tokens_concatenate_in_arrival_order(reducer):
    reducer.begin_query("m1", "hi", version=1)
    for piece in ["Hel", "lo", ", ", "world"]:
        reducer.apply(Token(query_id="m1", text=piece, version=1))
    assistant = reducer.assistant_message("m1")
    assert assistant.text == "Hello, world"
    assert assistant.is_streaming
    assert reducer.query_state("m1") == QueryState.STREAMING


def test_simple_reply_finalizes_one_assistant_message(reducer, recorder):
    reducer.begin_query("m1", "2+2", version=1)
    reducer.apply(Token(query_id="m1", text="4", version=1))
    reducer.apply(Done(query_id="m1", version=1, data={"num_turns": 1}))

    assistants = [m for m in reducer.messages if m.role == MessageRole.ASSISTANT]
    assert len(assistants) == 1
    assert assistants[0].text == "4"
    assert assistants[0].is_streaming is False
    assert assistants[0].usage == {"num_turns": 1}
    assert reducer.tool_calls == []
    assert reducer.query_state("m1") == QueryState.DONE

    recorder.record_turn.assert_called_once()
    turn = recorder.record_turn.call_args.args[0]
    assert turn.user.text == "2+2"
    assert turn.assistant.text == "4"


def test_recorded_turn_is_a_copy(reducer, recorder):
    reducer.begin_query("m1", "hi", version=1)
    reducer.apply(Token(query_id="m1", text="a", version=1))
    reducer.apply(Done(query_id="m1", version=1))
    turn = recorder.record_turn.call_args.args[0]
    turn.assistant.content.append(TextBlock(text="mutated"))
    assert reducer.assistant_message("m1").text == "a"


def test_done_without_tokens_creates_empty_assistant_message(reducer):
    reducer.begin_query("m1", "hi", version=1)
    reducer.apply(Done(query_id="m1", version=1))
    assistant = reducer.assistant_message("m1")
    assert assistant is not None
    assert assistant.text == ""
    assert not assistant.is_streaming


def test_done_for_unknown_query_is_ignored(reducer, recorder):
    assert reducer.apply(Done(query_id="control-ack", version=1)) is False
    assert reducer.messages == []
    recorder.record_turn.assert_not_called()


# ── Staleness ──


def test_reset_makes_in_flight_events_inert(reducer, clock):
    reducer.begin_query("m1", "hi", version=1)
    reducer.apply(Token(query_id="m1", text="A", version=1))
    assert reducer.assistant_message("m1").text == "A"

    clock.value = 2
    reducer.reset()
    assert reducer.apply(Token(query_id="m1", text="B", version=1)) is False
    assert reducer.messages == []
    assert reducer.stale_dropped == 1


def test_stale_events_do_not_touch_newer_query(reducer, clock):
    reducer.begin_query("m1", "old", version=1)
    clock.value = 2
    reducer.reset()
    reducer.begin_query("m2", "new", version=2)
    reducer.apply(Token(query_id="m1", text="late", version=1))
    reducer.apply(Done(query_id="m1", version=1))
    reducer.apply(Token(query_id="m2", text="fresh", version=2))
    assert _assistant_texts(reducer) == ["fresh"]
    assert reducer.query_state("m1") is None


def test_stale_check_is_per_event_not_per_query(reducer, clock):
    reducer.begin_query("m1", "hi", version=1)
    reducer.apply(Token(query_id="m1", text="A", version=1))
    clock.value = 2
    # Same query id, but only the events stamped before the bump are dropped.
    reducer.apply(Token(query_id="m1", text="B", version=1))
    reducer.apply(Token(query_id="m1", text="C", version=2))
    assert reducer.assistant_message("m1").text == "AC"


# ── Tool calls ──


def test_tool_round_trip_then_text(reducer):
    reducer.begin_query("m1", "list", version=1)
    reducer.apply(ToolUse(
        query_id="m1", tool_call_id="t1", tool_name="list_files",
        tool_input=ListFilesInput(path="."), version=1,
    ))
    assert reducer.query_state("m1") == QueryState.TOOL_PENDING
    assert [tc.id for tc in reducer.pending_tool_calls()] == ["t1"]

    reducer.apply(ToolResult(query_id="m1", tool_call_id="t1", result=["a.txt"], version=1))
    assert reducer.query_state("m1") == QueryState.STREAMING
    reducer.apply(Token(query_id="m1", text="abc", version=1))
    reducer.apply(Done(query_id="m1", version=1))

    calls = reducer.tool_calls
    assert len(calls) == 1
    assert calls[0].id == "t1"
    assert calls[0].result == ["a.txt"]
    assert not calls[0].is_pending

    assistants = [m for m in reducer.messages if m.role == MessageRole.ASSISTANT]
    assert len(assistants) == 1
    assert "abc" in assistants[0].text
    block = assistants[0].tool_reference("t1")
    assert block.input == {"path": "."}
    assert block.result == ["a.txt"]


def test_text_interleaved_around_tool_calls_keeps_block_order(reducer):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(Token(query_id="m1", text="Looking", version=1))
    reducer.apply(ToolUse(query_id="m1", tool_call_id="t1", tool_name="x", version=1))
    reducer.apply(ToolResult(query_id="m1", tool_call_id="t1", result="ok", version=1))
    reducer.apply(Token(query_id="m1", text="Found", version=1))
    kinds = [type(b) for b in reducer.assistant_message("m1").content]
    assert kinds == [TextBlock, ToolReferenceBlock, TextBlock]


def test_token_while_tool_pending_keeps_tool_pending(reducer):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(ToolUse(query_id="m1", tool_call_id="t1", tool_name="x", version=1))
    reducer.apply(Token(query_id="m1", text="waiting", version=1))
    assert reducer.query_state("m1") == QueryState.TOOL_PENDING


def test_orphan_tool_result_is_recorded_without_corrupting_others(reducer):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(ToolUse(query_id="m1", tool_call_id="t1", tool_name="x", version=1))
    reducer.apply(ToolResult(query_id="m1", tool_call_id="ghost", result="?", version=1))

    orphan = reducer.tool_call("ghost")
    assert orphan.orphaned is True
    assert orphan.result == "?"
    assert reducer.tool_call("t1").is_pending
    assert reducer.tool_call("t1").result is None
    assert [a.kind for a in reducer.anomalies] == ["orphan_tool_result"]
    assert reducer.query_state("m1") == QueryState.TOOL_PENDING


def test_duplicate_tool_result_is_an_anomaly(reducer):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(ToolUse(query_id="m1", tool_call_id="t1", tool_name="x", version=1))
    reducer.apply(ToolResult(query_id="m1", tool_call_id="t1", result="first", version=1))
    assert reducer.apply(ToolResult(query_id="m1", tool_call_id="t1", result="second", version=1)) is False
    assert reducer.tool_call("t1").result == "first"
    assert reducer.anomalies[-1].kind == "duplicate_tool_result"


def test_duplicate_tool_use_is_an_anomaly(reducer):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(ToolUse(query_id="m1", tool_call_id="t1", tool_name="x", version=1))
    assert reducer.apply(ToolUse(query_id="m1", tool_call_id="t1", tool_name="x", version=1)) is False
    assert len(reducer.assistant_message("m1").content) == 1


def test_tool_call_without_result_stays_pending_after_done(reducer):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(ToolUse(query_id="m1", tool_call_id="t1", tool_name="x", version=1))
    reducer.apply(Done(query_id="m1", version=1))
    assert [tc.id for tc in reducer.pending_tool_calls()] == ["t1"]


def test_tool_error_is_reflected_in_block(reducer):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(ToolUse(query_id="m1", tool_call_id="t1", tool_name="read_file", version=1))
    reducer.apply(ToolResult(query_id="m1", tool_call_id="t1", error="Access denied", version=1))
    assert reducer.tool_call("t1").is_error
    assert reducer.assistant_message("m1").tool_reference("t1").error == "Access denied"


# ── Terminal states ──


def test_error_finalizes_pending_message(reducer, recorder):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(Token(query_id="m1", text="par", version=1))
    reducer.apply(Error(query_id="m1", message="Interrupted by user", version=1))
    assistant = reducer.assistant_message("m1")
    assert assistant.text == "par"
    assert assistant.error == "Interrupted by user"
    assert not assistant.is_streaming
    assert reducer.query_state("m1") == QueryState.ERRORED
    recorder.record_turn.assert_called_once()


def test_events_after_terminal_state_are_ignored(reducer):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(Token(query_id="m1", text="a", version=1))
    reducer.apply(Done(query_id="m1", version=1))
    assert reducer.apply(Token(query_id="m1", text="late", version=1)) is False
    assert reducer.assistant_message("m1").text == "a"
    assert reducer.anomalies[-1].kind == "invalid_transition"


def test_on_query_finished_called_once(clock):
    finished: list[str] = []
    reducer = ConversationReducer(current_version=clock, on_query_finished=finished.append)
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(Done(query_id="m1", version=1))
    reducer.apply(Done(query_id="m1", version=1))
    assert finished == ["m1"]


def test_cancel_outstanding_marks_queries_and_tools(reducer, recorder):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(ToolUse(query_id="m1", tool_call_id="t1", tool_name="x", version=1))
    cancelled = reducer.cancel_outstanding("Cancelled: worker did not respond")
    assert cancelled == ["m1"]
    assert reducer.query_state("m1") == QueryState.CANCELLED
    assert reducer.tool_call("t1").error == "Cancelled: worker did not respond"
    assert reducer.assistant_message("m1").error == "Cancelled: worker did not respond"
    recorder.record_turn.assert_called_once()
    assert reducer.cancel_outstanding("again") == []


# ── Commands and read model ──


def test_begin_query_records_user_message_with_images(reducer):
    image = ImageAttachment(data="aGk=", mime_type="image/png")
    message = reducer.begin_query("m1", "see", [image], version=1)
    assert message.role == MessageRole.USER
    assert isinstance(message.content[0], TextBlock)
    assert isinstance(message.content[1], ImageBlock)
    with pytest.raises(ValueError):
        reducer.begin_query("m1", "again", version=1)


def test_message_timestamps_never_decrease(reducer):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(Token(query_id="m1", text="x", version=1, timestamp=1))
    stamps = [m.timestamp for m in reducer.messages]
    assert stamps == sorted(stamps)


def test_ready_sets_worker_ready_and_notifies(reducer):
    seen = []
    reducer.add_listener(lambda r: seen.append(r.worker_ready))
    reducer.apply(Ready(version=1))
    assert reducer.worker_ready is True
    assert seen == [True]


def test_listener_failure_does_not_break_reduction(reducer):
    def broken(_reducer):
        raise RuntimeError("ui bug")

    reducer.add_listener(broken)
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(Token(query_id="m1", text="still works", version=1))
    assert reducer.assistant_message("m1").text == "still works"


def test_snapshot_is_detached_from_live_state(reducer):
    reducer.begin_query("m1", "go", version=1)
    reducer.apply(Token(query_id="m1", text="a", version=1))
    snap = reducer.snapshot()
    reducer.apply(Token(query_id="m1", text="b", version=1))
    assert snap.messages[-1].text == "a"
    assert reducer.assistant_message("m1").text == "ab"


def test_load_rebuilds_messages_and_completed_tool_calls(reducer):
    stored = [
        StoredMessage(id="u1", conversation_id="c1", role=MessageRole.USER,
                      content=[TextBlock(text="list")], timestamp=10),
        StoredMessage(id="a1", conversation_id="c1", role=MessageRole.ASSISTANT,
                      content=[
                          ToolReferenceBlock(tool_call_id="t1", name="list_files",
                                             input={"path": "."}, result=["a"]),
                          TextBlock(text="done"),
                          ErrorBlock(message="Interrupted by user"),
                      ], timestamp=20),
    ]
    reducer.load(stored)
    assert [m.id for m in reducer.messages] == ["u1", "a1"]
    assert reducer.messages[1].error == "Interrupted by user"
    assert reducer.tool_call("t1").result == ["a"]
    assert reducer.pending_tool_calls() == []
