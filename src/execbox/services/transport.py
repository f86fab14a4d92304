from __future__ import annotations

import asyncio
from typing import AsyncIterator, List, Optional

import structlog

from ..core.models import EventType, OutputEvent

log = structlog.get_logger(__name__)

DEFAULT_MAX_BUFFERED = 1 << 20


class OutputChannel:
    """Ordered push channel for one session.

    Events are queued until a consumer attaches, so output produced before the
    client opens the stream is not lost. Exactly one terminal event (``end`` or
    ``error``) is ever delivered; anything emitted after it is discarded.

    ``put`` waits while more than ``max_buffered`` characters of output sit
    unread, so a slow or absent reader throttles the producer instead of
    growing the queue. Terminal events never wait.
    """

    def __init__(self, session_id: str, max_buffered: int = DEFAULT_MAX_BUFFERED):
        self.session_id = session_id
        self.max_buffered = max_buffered
        self._queue: asyncio.Queue[OutputEvent] = asyncio.Queue()
        self._buffered = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._terminal: Optional[OutputEvent] = None
        self._consumed = False

    @property
    def closed(self) -> bool:
        return self._terminal is not None

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def buffered(self) -> int:
        return self._buffered

    def emit(self, event: OutputEvent) -> bool:
        if self._terminal is not None:
            log.debug("event_after_close_dropped", session_id=self.session_id, type=event.type.value)
            return False
        if event.type.terminal:
            self._terminal = event
            # nothing more will be produced; release a blocked producer
            self._drained.set()
        else:
            self._buffered += len(event.data)
        self._queue.put_nowait(event)
        return True

    async def put(self, event: OutputEvent) -> bool:
        while self._buffered >= self.max_buffered and self._terminal is None:
            self._drained.clear()
            await self._drained.wait()
        return self.emit(event)

    def end(self, exit_code: Optional[int] = None) -> bool:
        return self.emit(OutputEvent(EventType.END, "", exit_code=exit_code))

    def error(self, message: str) -> bool:
        return self.emit(OutputEvent(EventType.ERROR, message))

    async def events(self) -> AsyncIterator[OutputEvent]:
        if self._consumed:
            raise RuntimeError(f"output of session {self.session_id} is already being consumed")
        self._consumed = True
        while True:
            event = await self._queue.get()
            if not event.type.terminal:
                self._buffered -= len(event.data)
                if self._buffered < self.max_buffered:
                    self._drained.set()
            yield event
            if event.type.terminal:
                return

    async def collect(self) -> List[OutputEvent]:
        return [e async for e in self.events()]
