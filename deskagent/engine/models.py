"""Core data models for the session runtime.

Enums and small records shared by the supervisor and the reducer.
Kept in one module to avoid circular imports.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class QueryState(str, Enum):
    """Per-query lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    DONE = "done"
    ERRORED = "errored"
    CANCELLED = "cancelled"


class WorkerLogSource(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass
class WorkerLog:
    """A worker output line that was not a protocol frame."""
    source: WorkerLogSource
    message: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class QueryRecord:
    """Reducer bookkeeping for one query id."""
    query_id: str
    version: int
    state: QueryState = QueryState.IDLE
    user_message_id: str | None = None
    assistant_message_id: str | None = None
    tool_call_ids: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    QueryState.DONE,
    QueryState.ERRORED,
    QueryState.CANCELLED,
})
