"""Worker side of the stdio protocol.

Reads request frames from stdin, hands user messages to a Responder
and writes event frames to stdout. Stdout carries nothing but frames;
all logging goes to stderr.

One query runs at a time. ``interrupt`` cancels the running query,
which is then reported as an ``error`` frame.
"""
from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from abc import ABC, abstractmethod
from typing import Any, BinaryIO

from deskagent.adapters.events import (
    Done,
    Error,
    ProtocolEvent,
    Ready,
    Token,
    ToolResult,
    ToolUse,
    event_to_frame,
)
from deskagent.engine.capabilities import CapabilityRegistry
from deskagent.engine.codec import WorkerRequest, decode_line, encode_frame, parse_request
from deskagent.engine.errors import DeskAgentError, MalformedFrame
from deskagent.engine.tool_inputs import decode_tool_input

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted by user"


class FrameWriter:
    """Writes event frames to a binary stream, one line each."""

    def __init__(self, stream: BinaryIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout.buffer

    def emit(self, event: ProtocolEvent) -> None:
        self._stream.write(encode_frame(event_to_frame(event)))
        self._stream.flush()


class QueryContext:
    """Handle a Responder uses to stream one query's events."""

    def __init__(
        self,
        query_id: str,
        writer: FrameWriter,
        registry: CapabilityRegistry | None = None,
    ) -> None:
        self.query_id = query_id
        self._writer = writer
        self._registry = registry
        self._tool_names: dict[str, str] = {}

    def token(self, text: str) -> None:
        if text:
            self._writer.emit(Token(query_id=self.query_id, text=text))

    def tool_use(self, tool_call_id: str, tool_name: str, tool_input: Any) -> None:
        self._tool_names[tool_call_id] = tool_name
        self._writer.emit(ToolUse(
            query_id=self.query_id,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            tool_input=decode_tool_input(tool_name, tool_input),
        ))

    def tool_result(
        self,
        tool_call_id: str,
        result: Any = None,
        error: str | None = None,
        tool_name: str | None = None,
    ) -> None:
        self._writer.emit(ToolResult(
            query_id=self.query_id,
            tool_call_id=tool_call_id,
            tool_name=tool_name or self._tool_names.get(tool_call_id, ""),
            result=result,
            error=error,
        ))

    async def invoke_tool(
        self,
        tool_name: str,
        tool_input: dict[str, Any] | None = None,
        tool_call_id: str | None = None,
    ) -> Any:
        """Run a registry tool, bracketed by tool_use and tool_result frames.

        Failures are reported in the tool_result and re-raised.
        """
        if self._registry is None:
            raise DeskAgentError("no capability registry configured")
        tool_call_id = tool_call_id or f"toolu_{uuid.uuid4().hex[:16]}"
        self.tool_use(tool_call_id, tool_name, tool_input or {})
        try:
            result = await self._registry.invoke(tool_name, tool_input or {})
        except DeskAgentError as exc:
            self.tool_result(tool_call_id, error=str(exc))
            raise
        self.tool_result(tool_call_id, result=result)
        return result


class Responder(ABC):
    """Produces the assistant side of a conversation."""

    @abstractmethod
    async def respond(self, request: WorkerRequest, ctx: QueryContext) -> dict[str, Any] | None:
        """Stream the reply to *request*. Returns usage data for ``done``."""

    async def new_conversation(self) -> None:
        """Forget conversational context."""

    async def clear_history(self) -> None:
        await self.new_conversation()

    async def load_conversation(self, conversation_id: str) -> None:
        """Switch to the context of a stored conversation."""


class WorkerRuntime:
    """Request loop of the worker process."""

    def __init__(
        self,
        responder: Responder,
        registry: CapabilityRegistry | None = None,
        writer: FrameWriter | None = None,
    ) -> None:
        self._responder = responder
        self._registry = registry
        self._writer = writer or FrameWriter()
        self._task: asyncio.Task | None = None
        self._query_id: str | None = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, reader: asyncio.StreamReader) -> None:
        """Announce readiness and serve requests until stdin closes."""
        self._writer.emit(Ready())
        logger.info("Worker ready")
        while True:
            line = await reader.readline()
            if not line:
                break
            if not line.strip():
                continue
            await self.handle_line(line)
        logger.info("stdin closed; shutting down")
        await self._cancel_running()

    async def handle_line(self, line: bytes) -> None:
        try:
            frame = decode_line(line)
        except MalformedFrame as exc:
            logger.warning("Ignoring request line: %s", exc)
            return
        try:
            request = parse_request(frame)
        except MalformedFrame as exc:
            query_id = frame.get("id")
            if isinstance(query_id, str) and query_id:
                self._writer.emit(Error(query_id=query_id, message=str(exc)))
            else:
                logger.warning("Ignoring request: %s", exc)
            return
        await self.handle_request(request)

    async def handle_request(self, request: WorkerRequest) -> None:
        if request.kind == "user_message":
            if self.busy:
                self._writer.emit(Error(
                    query_id=request.id,
                    message=f"Query {self._query_id} is still in flight",
                ))
                return
            self._query_id = request.id
            self._task = asyncio.create_task(
                self._run_query(request), name=f"query-{request.id}",
            )
            return

        if request.kind == "interrupt":
            if self.busy:
                logger.info("Interrupting query %s", self._query_id)
                self._task.cancel()
            return

        await self._cancel_running()
        try:
            if request.kind == "new_conversation":
                await self._responder.new_conversation()
            elif request.kind == "clear_history":
                await self._responder.clear_history()
            elif request.kind == "load_conversation" and request.conversation_id:
                await self._responder.load_conversation(request.conversation_id)
        except Exception as exc:
            logger.exception("%s failed", request.kind)
            self._writer.emit(Error(query_id=request.id, message=str(exc)))
            return
        self._writer.emit(Done(query_id=request.id))

    async def _run_query(self, request: WorkerRequest) -> None:
        ctx = QueryContext(request.id, self._writer, self._registry)
        try:
            data = await self._responder.respond(request, ctx)
        except asyncio.CancelledError:
            self._writer.emit(Error(query_id=request.id, message=INTERRUPTED_MESSAGE))
            return
        except Exception as exc:
            logger.exception("Query %s failed", request.id)
            self._writer.emit(Error(query_id=request.id, message=str(exc) or type(exc).__name__))
            return
        self._writer.emit(Done(query_id=request.id, data=data))

    async def _cancel_running(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


async def open_stdin_reader() -> asyncio.StreamReader:
    """Wrap the process's stdin in an asyncio StreamReader."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=64 * 1024 * 1024)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader
