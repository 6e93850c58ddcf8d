"""Exception hierarchy for the agent session runtime.

Specific exceptions for each failure mode. Failures scoped to a
single query or to optional inputs are recoverable; only a worker
crash or an unresponsive interrupt forces a restart.
"""
from __future__ import annotations


class DeskAgentError(Exception):
    """Base exception for all session runtime errors."""


class StartupTimeout(DeskAgentError):
    """Worker did not announce readiness in time."""
    def __init__(self, timeout_seconds: float, command: list[str] | None = None):
        self.timeout_seconds = timeout_seconds
        self.command = list(command or [])
        super().__init__(
            f"Worker did not become ready within {timeout_seconds}s"
        )


class Busy(DeskAgentError):
    """A query is already in flight for this session."""
    def __init__(self, in_flight_query_id: str):
        self.in_flight_query_id = in_flight_query_id
        super().__init__(
            f"Query {in_flight_query_id} is still in flight"
        )


class WorkerNotRunning(DeskAgentError):
    """An operation needed a live worker process."""
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Cannot {operation}: worker is not running")


class WorkerCrashed(DeskAgentError):
    """Worker process exited while a query was in flight."""
    def __init__(self, query_id: str, returncode: int | None):
        self.query_id = query_id
        self.returncode = returncode
        super().__init__(
            f"Worker exited unexpectedly (rc={returncode}) "
            f"during query {query_id}"
        )


class MalformedFrame(DeskAgentError):
    """A wire frame could not be decoded. Never fatal to the stream."""
    def __init__(self, reason: str, line: bytes | str = b""):
        self.reason = reason
        if isinstance(line, str):
            line = line.encode("utf-8", errors="replace")
        self.preview = line[:200]
        super().__init__(f"Malformed frame: {reason}")


class ValidationError(DeskAgentError):
    """Bad input: persisted row, definition file, attachment or tool input."""
    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid {source}: {reason}")


class ToolExecutionError(DeskAgentError):
    """A capability failed while executing. Reported inside tool_result."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Tool '{tool_name}' failed: {reason}")


class QueryError(DeskAgentError):
    """Worker reported a failure for a query."""
    def __init__(self, query_id: str, message: str):
        self.query_id = query_id
        self.message = message
        super().__init__(f"Query {query_id} failed: {message}")


class PersistenceError(DeskAgentError):
    """Durable write or read failed. The in-memory transcript is kept."""
    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Persistence failure during {operation}: {reason}")
