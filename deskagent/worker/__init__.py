"""Worker process: serves the frame protocol on stdin/stdout."""
from __future__ import annotations

__all__ = [
    "FrameWriter",
    "QueryContext",
    "Responder",
    "WorkerRuntime",
]

from deskagent.worker.runtime import FrameWriter, QueryContext, Responder, WorkerRuntime
