"""Helpers layered on top of EventBus.

EventLogger keeps a bounded history of a run's events and logs each one.
BatchEventEmitter buffers events and emits them in batches, flushing when
the buffer reaches ``batch_size`` or every ``flush_interval`` seconds,
whichever comes first.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from typing import Any

from pytaxis.events.bus import EventBus, EventKind, WorkflowEvent

logger = logging.getLogger(__name__)


class EventLogger:
    """Records the last ``max_events`` events of a bus."""

    def __init__(self, bus: EventBus, max_events: int = 100):
        self._bus = bus
        self._events: deque[WorkflowEvent] = deque(maxlen=max_events)
        self._attached = False

    def attach(self) -> EventLogger:
        if not self._attached:
            for kind in EventKind:
                self._bus.on(kind, self._record)
            self._attached = True
        return self

    def detach(self) -> None:
        if self._attached:
            for kind in EventKind:
                self._bus.off(kind, self._record)
            self._attached = False

    def _record(self, event: WorkflowEvent) -> None:
        self._events.append(event)
        if event.unit_id is not None:
            logger.info(f"[{event.workflow_id}] {event.kind} unit={event.unit_id}")
        else:
            logger.info(f"[{event.workflow_id}] {event.kind}")

    @property
    def events(self) -> list[WorkflowEvent]:
        return list(self._events)

    def kinds(self) -> list[EventKind]:
        return [event.kind for event in self._events]

    def clear(self) -> None:
        self._events.clear()


class BatchEventEmitter:
    """
    Buffers events and emits them through a bus in batches.

    A batch goes out once ``batch_size`` events are buffered or every
    ``flush_interval`` seconds, whichever comes first. The interval task
    starts with the first ``emit`` (or ``start()``); call ``stop()`` or use
    ``async with`` to end it and flush the remainder.

    Usage:
        async with BatchEventEmitter(bus, batch_size=10, flush_interval=1.0) as batch:
            await batch.emit(EventKind.UNIT_QUEUED, unit_id="HERO_COPY")
    """

    def __init__(self, bus: EventBus, batch_size: int = 10, flush_interval: float = 1.0):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._bus = bus
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._buffer: list[tuple[EventKind, dict[str, Any] | None, str | None]] = []
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def start(self) -> None:
        """Start the periodic flush task; a no-op if it is running."""
        if self._task is None:
            self._task = asyncio.create_task(self._flush_periodically())

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Periodic event flush failed: {e}")

    async def emit(
        self, kind: EventKind, data: dict[str, Any] | None = None, unit_id: str | None = None
    ) -> None:
        self.start()
        self._buffer.append((kind, data, unit_id))
        if len(self._buffer) >= self._batch_size:
            await self.flush()

    async def flush(self) -> int:
        """Emit everything buffered so far; returns the number of events emitted."""
        async with self._flush_lock:
            batch, self._buffer = self._buffer, []
            for kind, data, unit_id in batch:
                await self._bus.emit(kind, data, unit_id=unit_id)
            if batch:
                logger.debug(f"Flushed {len(batch)} events for {self._bus.workflow_id}")
            return len(batch)

    async def stop(self) -> None:
        """Stop the periodic task and flush what remains."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.flush()

    async def __aenter__(self) -> BatchEventEmitter:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
