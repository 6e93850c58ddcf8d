"""Async event bus bridging the worker reader to the reducer.

The stdout reader decodes frames, stamps them with their originating
version and puts them here. A single consumer task applies them to
the reducer in arrival order.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from deskagent.adapters.events import ProtocolEvent

logger = logging.getLogger(__name__)

_PUT_TIMEOUT = 30.0


class EventBus:
    """Async queue between the stdout reader and event consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[ProtocolEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._closed = False
        self._dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def dropped(self) -> int:
        """Events discarded because the queue stayed full."""
        return self._dropped

    async def emit(self, event: ProtocolEvent) -> None:
        """Queue an event, applying backpressure when the consumer lags."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=_PUT_TIMEOUT)
        except asyncio.TimeoutError:
            self._dropped += 1
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                _PUT_TIMEOUT,
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[ProtocolEvent]:
        """Yield events as they arrive. Stops on close() once drained."""
        while not (self._closed and self._queue.empty()):
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            try:
                yield event
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued event has been consumed."""
        await self._queue.join()

    def close(self) -> None:
        """Stop the consumer loop after the queue drains."""
        self._closed = True

    def reset(self) -> None:
        """Drop queued events and re-open the bus."""
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
        self._closed = False
