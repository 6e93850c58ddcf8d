"""Worker process supervisor for one agent session.

Owns the worker subprocess and its pipes, the session version counter
and the busy flag. Frames read from the worker's stdout are decoded,
stamped with the version their query was sent under and pushed onto
an EventBus; a consumer task folds them into the ConversationReducer.

Session-facing commands acknowledge synchronously (or raise a typed
error); none of them waits for the worker's full response.
"""
from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections import deque
from typing import Any

from deskagent.adapters.event_bus import EventBus
from deskagent.adapters.events import Error, Ready, frame_to_event
from deskagent.adapters.recorder import ErrorCallback, Titler, TranscriptRecorder
from deskagent.engine.codec import (
    FrameDecoder,
    control_frame,
    encode_frame,
    user_message_frame,
)
from deskagent.engine.config import SessionConfig
from deskagent.engine.errors import (
    Busy,
    MalformedFrame,
    PersistenceError,
    StartupTimeout,
    ValidationError,
    WorkerCrashed,
    WorkerNotRunning,
)
from deskagent.engine.models import WorkerLog, WorkerLogSource
from deskagent.engine.reducer import ConversationReducer
from deskagent.shared.models.message import ImageAttachment
from deskagent.shared.services.conversation_db import ConversationStore

logger = logging.getLogger(__name__)

MAX_WORKER_LOGS = 1000
_READ_CHUNK = 64 * 1024
_STOP_GRACE_SECONDS = 5.0


def new_query_id() -> str:
    return f"q_{uuid.uuid4().hex[:12]}"


class SessionSupervisor:
    """Supervises the worker process and routes its events."""

    def __init__(
        self,
        config: SessionConfig | None = None,
        store: ConversationStore | None = None,
        on_persistence_error: ErrorCallback | None = None,
        titler: Titler | None = None,
    ) -> None:
        self._config = config or SessionConfig()
        self._store = store
        self._recorder = (
            TranscriptRecorder(store, on_error=on_persistence_error, titler=titler)
            if store is not None else None
        )
        self._version = 0
        self._query_versions: dict[str, int] = {}
        self._control_ids: dict[str, str] = {}
        self._in_flight: str | None = None
        self._idle = asyncio.Event()
        self._idle.set()

        self._proc: asyncio.subprocess.Process | None = None
        self._worker_ready = False
        self._ready_event = asyncio.Event()
        self._expected_exits: set[int] = set()
        self._start_lock = asyncio.Lock()
        self._stdout_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._waiter_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._consumer_task: asyncio.Task | None = None

        self._bus = EventBus(maxsize=self._config.event_queue_size)
        self._logs: deque[WorkerLog] = deque(maxlen=MAX_WORKER_LOGS)
        self.reducer = ConversationReducer(
            current_version=lambda: self._version,
            recorder=self._recorder,
            on_query_finished=self._on_query_finished,
        )

    # ── State ────────────────────────────────────────────────────

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def version(self) -> int:
        return self._version

    @property
    def ready(self) -> bool:
        return self._worker_ready and self.running

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def busy(self) -> bool:
        return self._in_flight is not None

    @property
    def in_flight_query_id(self) -> str | None:
        return self._in_flight

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def logs(self) -> list[WorkerLog]:
        return list(self._logs)

    @property
    def recorder(self) -> TranscriptRecorder | None:
        return self._recorder

    @property
    def conversation_id(self) -> str | None:
        return self._recorder.conversation_id if self._recorder is not None else None

    def _set_in_flight(self, query_id: str | None) -> None:
        self._in_flight = query_id
        if query_id is None:
            self._idle.set()
        else:
            self._idle.clear()

    def _bump_version(self, reason: str) -> int:
        self._version += 1
        # Every query sent before this point is now stale.
        self._query_versions.clear()
        logger.info("Session version -> %d (%s)", self._version, reason)
        return self._version

    def _on_query_finished(self, query_id: str) -> None:
        self._query_versions.pop(query_id, None)
        if query_id == self._in_flight:
            self._set_in_flight(None)

    def _log_worker(self, source: WorkerLogSource, message: str) -> None:
        self._logs.append(WorkerLog(source=source, message=message))

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn the worker and wait for its ``ready`` frame."""
        async with self._start_lock:
            if self.ready:
                return
            self._ensure_consumer()
            if self.running:
                await self._kill(self._proc)

            command = list(self._config.worker_command)
            env = dict(os.environ)
            env.setdefault("PYTHONUNBUFFERED", "1")
            try:
                # create_subprocess_exec passes args as array, no shell
                proc = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self._config.worker_cwd,
                    env=env,
                )
            except OSError as exc:
                logger.error("Failed to start worker %s: %s", command, exc)
                raise WorkerNotRunning(f"start worker ({exc})") from exc

            logger.info("Worker started (pid=%d)", proc.pid)
            self._proc = proc
            self._worker_ready = False
            self._ready_event = asyncio.Event()
            self._stdout_task = asyncio.create_task(
                self._read_stdout(proc), name=f"worker-stdout-{proc.pid}",
            )
            self._stderr_task = asyncio.create_task(
                self._read_stderr(proc), name=f"worker-stderr-{proc.pid}",
            )
            self._waiter_task = asyncio.create_task(
                self._watch_process(proc), name=f"worker-wait-{proc.pid}",
            )

            try:
                await asyncio.wait_for(
                    self._ready_event.wait(),
                    timeout=self._config.startup_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.error(
                    "Worker pid=%d not ready after %.1fs; killing",
                    proc.pid, self._config.startup_timeout_seconds,
                )
                await self._kill(proc)
                raise StartupTimeout(self._config.startup_timeout_seconds, command) from None

            if not self._worker_ready:
                raise WorkerNotRunning(
                    f"start worker (exited with rc={proc.returncode} before ready)"
                )

    async def stop(self) -> None:
        """Terminate the worker, drain pending events, flush persistence."""
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None
        if self._proc is not None:
            proc = self._proc
            self._expected_exits.add(proc.pid)
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.close()
            try:
                await asyncio.wait_for(proc.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
            await self._kill(proc)
        for task in (self._stdout_task, self._stderr_task, self._waiter_task):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._stdout_task, self._stderr_task, self._waiter_task) if t is not None),
            return_exceptions=True,
        )
        self._set_in_flight(None)
        self._bus.close()
        if self._consumer_task is not None:
            await self._consumer_task
            self._consumer_task = None
        self.reducer.cancel_outstanding("Cancelled: session stopped")
        if self._recorder is not None:
            await self._recorder.stop()
        logger.info("Session stopped")

    async def __aenter__(self) -> SessionSupervisor:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        """Terminate *proc* (kill after a grace period). Never reported as a crash."""
        self._expected_exits.add(proc.pid)
        if proc is self._proc:
            self._worker_ready = False
            self.reducer.set_worker_ready(False)
        if proc.returncode is None:
            try:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=_STOP_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
            except ProcessLookupError:
                pass
            logger.info("Worker stopped (pid=%d)", proc.pid)
        if proc is self._proc:
            self._proc = None

    # ── Readers ──────────────────────────────────────────────────

    def _ensure_consumer(self) -> None:
        if self._consumer_task is None or self._consumer_task.done():
            self._bus.reset()
            self._consumer_task = asyncio.create_task(
                self._consume(), name="session-events",
            )

    async def _consume(self) -> None:
        async for event in self._bus.consume():
            try:
                self.reducer.apply(event)
            except Exception:
                logger.exception("Reducer failed on %s", event.event_type)

    def _on_malformed(self, diag: MalformedFrame) -> None:
        self._log_worker(
            WorkerLogSource.STDOUT,
            diag.preview.decode("utf-8", errors="replace").rstrip(),
        )

    def _stamp(self, frame: dict[str, Any]) -> int:
        query_id = frame.get("id")
        if not isinstance(query_id, str):
            return self._version
        version = self._query_versions.get(query_id)
        if version is None:
            # Finished, abandoned or never sent by this session: inert.
            logger.debug("Frame for unknown query %s treated as stale", query_id)
            return self._version - 1
        return version

    def _on_control_reply(self, query_id: str, frame: dict[str, Any]) -> None:
        frame_type = frame.get("type")
        if frame_type not in ("done", "error"):
            logger.debug("Ignoring %s frame for control request %s", frame_type, query_id)
            return
        kind = self._control_ids.pop(query_id)
        if frame_type == "error":
            message = f"{kind} failed in worker: {frame.get('error')}"
            logger.warning("%s", message)
            self._log_worker(WorkerLogSource.STDOUT, message)
        else:
            logger.debug("Worker acknowledged %s", kind)

    async def _dispatch(self, frame: dict[str, Any], proc: asyncio.subprocess.Process) -> None:
        query_id = frame.get("id")
        if isinstance(query_id, str) and query_id in self._control_ids:
            self._on_control_reply(query_id, frame)
            return
        try:
            event = frame_to_event(frame, version=self._stamp(frame))
        except MalformedFrame as diag:
            logger.warning("%s", diag)
            self._log_worker(WorkerLogSource.STDOUT, str(frame)[:200])
            return
        if isinstance(event, Ready) and proc is self._proc:
            self._worker_ready = True
            self._ready_event.set()
        await self._bus.emit(event)

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        decoder = FrameDecoder(
            max_line_bytes=self._config.max_line_bytes,
            on_malformed=self._on_malformed,
        )
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            for frame in decoder.feed(chunk):
                await self._dispatch(frame, proc)
        for frame in decoder.flush():
            await self._dispatch(frame, proc)

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        while True:
            line = await proc.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._log_worker(WorkerLogSource.STDERR, text)
                logger.debug("[worker] %s", text)

    async def _watch_process(self, proc: asyncio.subprocess.Process) -> None:
        returncode = await proc.wait()
        # Frames written before exit are still delivered first.
        stdout_task = self._stdout_task if proc is self._proc else None
        if stdout_task is not None and not stdout_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(stdout_task), timeout=2.0)
            except asyncio.TimeoutError:
                logger.warning("Worker stdout did not close after exit")
        if proc is self._proc:
            self._ready_event.set()

        if proc.pid in self._expected_exits:
            self._expected_exits.discard(proc.pid)
            return
        if proc is not self._proc:
            return

        logger.warning("Worker exited unexpectedly (pid=%d rc=%s)", proc.pid, returncode)
        self._proc = None
        self._worker_ready = False
        self.reducer.set_worker_ready(False)
        query_id = self._in_flight
        if query_id is None:
            return
        crash = WorkerCrashed(query_id, returncode)
        await self._bus.emit(Error(
            query_id=query_id,
            version=self._query_versions.get(query_id, self._version),
            message=str(crash),
        ))
        if self._in_flight == query_id:
            self._set_in_flight(None)

    # ── Commands ─────────────────────────────────────────────────

    async def _write(self, frame: dict[str, Any], operation: str) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.returncode is not None:
            raise WorkerNotRunning(operation)
        try:
            proc.stdin.write(encode_frame(frame))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise WorkerNotRunning(operation) from exc

    async def send(
        self,
        query_id: str,
        text: str,
        attachments: list[ImageAttachment] | None = None,
    ) -> None:
        """Submit a user message. Raises Busy if a query is in flight."""
        if self._in_flight is not None:
            raise Busy(self._in_flight)
        for attachment in attachments or []:
            attachment.validate()
        if not text.strip() and not attachments:
            raise ValidationError("message", "must contain text or an attachment")
        if query_id in self._query_versions or self.reducer.query_state(query_id) is not None:
            raise ValidationError("query id", f"{query_id} was already used")

        if not self.ready:
            await self.start()
            if self._in_flight is not None:
                raise Busy(self._in_flight)

        version = self._version
        self._query_versions[query_id] = version
        self.reducer.begin_query(query_id, text, attachments, version)
        self._set_in_flight(query_id)
        frame = user_message_frame(query_id, text, attachments, self.conversation_id)
        try:
            await self._write(frame, "send message")
        except WorkerNotRunning:
            await self._bus.emit(Error(
                query_id=query_id, version=version,
                message="Worker is not accepting input",
            ))
            if self._in_flight == query_id:
                self._set_in_flight(None)
            raise
        logger.debug("Sent query %s (v%d)", query_id, version)

    async def interrupt(self) -> None:
        """Ask the worker to stop the in-flight query. Returns immediately."""
        query_id = self._in_flight
        if query_id is None:
            return
        try:
            await self._write(control_frame(query_id, "interrupt"), "interrupt")
        except WorkerNotRunning:
            logger.warning("Interrupt for %s could not be delivered", query_id)
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.create_task(
                self._interrupt_watchdog(query_id), name="interrupt-watchdog",
            )

    async def _interrupt_watchdog(self, query_id: str) -> None:
        try:
            await asyncio.wait_for(
                self._idle.wait(), timeout=self._config.interrupt_grace_seconds,
            )
            return
        except asyncio.TimeoutError:
            pass
        if self._in_flight != query_id:
            return
        logger.warning(
            "Worker ignored interrupt for %s after %.1fs; terminating",
            query_id, self._config.interrupt_grace_seconds,
        )
        if self._proc is not None:
            await self._kill(self._proc)
        self._set_in_flight(None)
        self._bump_version("unresponsive interrupt")
        self.reducer.cancel_outstanding("Cancelled: worker did not respond to interrupt")

    async def _abandon_in_flight(self, reason: str) -> None:
        query_id = self._in_flight
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None
        if query_id is not None:
            if self.running:
                try:
                    await self._write(control_frame(query_id, "interrupt"), "interrupt")
                except WorkerNotRunning:
                    pass
            self._set_in_flight(None)
            logger.info("Abandoned in-flight query %s", query_id)
        self.reducer.cancel_outstanding(f"Cancelled: {reason}")

    async def _send_control(self, kind: str, conversation_id: str | None = None) -> None:
        if not self.running:
            return
        query_id = new_query_id()
        self._control_ids[query_id] = kind
        try:
            await self._write(control_frame(query_id, kind, conversation_id), kind)
        except WorkerNotRunning:
            self._control_ids.pop(query_id, None)
            logger.warning("Could not deliver %s to worker", kind)

    async def reset_conversation(self) -> None:
        """Start a new conversation without restarting the worker."""
        await self._abandon_in_flight("conversation reset")
        self._bump_version("reset conversation")
        self.reducer.reset()
        if self._recorder is not None:
            self._recorder.detach()
        await self._send_control("new_conversation")

    async def clear_history(self) -> None:
        """Forget the transcript and the stored messages of this conversation."""
        await self._abandon_in_flight("history cleared")
        self._bump_version("clear history")
        self.reducer.reset()
        if self._recorder is not None:
            self._recorder.clear()
        await self._send_control("clear_history")

    async def load_conversation(self, conversation_id: str) -> None:
        """Replace the transcript with a stored conversation."""
        if self._store is None or self._recorder is None:
            raise PersistenceError("load conversation", "no conversation store configured")
        await self._recorder.flush()
        conversation = await asyncio.to_thread(self._store.get_conversation, conversation_id)
        if conversation is None:
            raise ValidationError("conversation", f"unknown id {conversation_id}")
        messages = await asyncio.to_thread(self._store.list_messages, conversation_id)

        await self._abandon_in_flight("conversation switched")
        self._bump_version("load conversation")
        self.reducer.load(messages)
        self._recorder.attach(conversation_id)
        await self._send_control("load_conversation", conversation_id)
        logger.info(
            "Loaded conversation %s (%d messages)", conversation_id, len(messages),
        )

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until no query is in flight and queued events are applied."""
        await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        await asyncio.wait_for(self._bus.join(), timeout=timeout)
