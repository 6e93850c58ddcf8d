"""Adapters package - Bridge between the engine and the UI.

Protocol events, the event bus feeding the reducer, and the transcript
recorder that writes finalized turns to the conversation store.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "TranscriptRecorder",
    "Turn",
    "frame_to_event",
    "event_to_frame",
]

from deskagent.adapters.event_bus import EventBus
from deskagent.adapters.events import event_to_frame, frame_to_event
from deskagent.adapters.recorder import TranscriptRecorder, Turn
