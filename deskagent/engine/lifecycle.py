"""Query lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> STREAMING ──┬──> DONE
                         │
                         ├──> TOOL_PENDING ──> STREAMING
                         │
                         └──> ERRORED

    IDLE and TOOL_PENDING may also finish directly (empty replies,
    errors raised while a tool runs).

    Any non-terminal state ──> CANCELLED  (abandoned by the supervisor)
"""
from __future__ import annotations

from .models import QueryState

VALID_TRANSITIONS: dict[QueryState, set[QueryState]] = {
    QueryState.IDLE: {
        QueryState.STREAMING,
        QueryState.TOOL_PENDING,
        QueryState.DONE,
        QueryState.ERRORED,
        QueryState.CANCELLED,
    },
    QueryState.STREAMING: {
        QueryState.STREAMING,
        QueryState.TOOL_PENDING,
        QueryState.DONE,
        QueryState.ERRORED,
        QueryState.CANCELLED,
    },
    QueryState.TOOL_PENDING: {
        QueryState.STREAMING,
        QueryState.TOOL_PENDING,
        QueryState.DONE,
        QueryState.ERRORED,
        QueryState.CANCELLED,
    },
    QueryState.DONE: set(),
    QueryState.ERRORED: set(),
    QueryState.CANCELLED: set(),
}


def validate_transition(current: QueryState, target: QueryState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
