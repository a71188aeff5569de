"""Workflow event bus.

Every event takes two paths:

1. Local dispatch to listeners registered on this bus, in registration
   order, one after the other. A failing listener is logged and the
   remaining listeners still run.
2. Best-effort publication to the workflow's durable stream through an
   EventTransport, for observers in other processes. Publication failures
   are logged and never reach the caller.

Design: Closed event vocabulary
    Event kinds are an Enum rather than free-form strings, so listeners
    register against a known set and typos fail at import time.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pytaxis.storage.base import EventTransport, workflow_stream_key

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of events emitted during a workflow run."""

    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_PAUSED = "workflow.paused"
    WORKFLOW_RESUMED = "workflow.resumed"
    WORKFLOW_CANCELLED = "workflow.cancelled"

    UNIT_QUEUED = "unit.queued"
    UNIT_STARTED = "unit.started"
    UNIT_COMPLETED = "unit.completed"
    UNIT_FAILED = "unit.failed"
    UNIT_RETRYING = "unit.retrying"
    UNIT_SKIPPED = "unit.skipped"

    STAGE_STARTED = "stage.started"
    STAGE_COMPLETED = "stage.completed"

    REFINEMENT_STARTED = "refinement.started"
    REFINEMENT_DECISION = "refinement.decision"
    REFINEMENT_COMPLETED = "refinement.completed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_unit_event(self) -> bool:
        return self.value.startswith("unit.")

    @property
    def is_terminal_workflow_event(self) -> bool:
        return self in (
            EventKind.WORKFLOW_COMPLETED,
            EventKind.WORKFLOW_FAILED,
            EventKind.WORKFLOW_CANCELLED,
        )


@dataclass(frozen=True)
class WorkflowEvent:
    """One event of one workflow run."""

    kind: EventKind
    workflow_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    unit_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, str]:
        """Flatten into stream fields; ``data`` is JSON-encoded."""
        payload = {
            "event_type": self.kind.value,
            "workflow_id": self.workflow_id,
            "timestamp": self.timestamp.isoformat(),
            "data": json.dumps(self.data, default=str),
        }
        if self.unit_id is not None:
            payload["unit_id"] = self.unit_id
        return payload

    @classmethod
    def from_payload(cls, fields: dict[str, str]) -> WorkflowEvent:
        """Rebuild an event read back from a stream."""
        return cls(
            kind=EventKind(fields["event_type"]),
            workflow_id=fields["workflow_id"],
            timestamp=datetime.fromisoformat(fields["timestamp"]),
            unit_id=fields.get("unit_id"),
            data=json.loads(fields.get("data") or "{}"),
        )


Listener = Callable[[WorkflowEvent], Awaitable[None] | None]
"""Event listener; may be a plain function or a coroutine function."""


class EventBus:
    """
    Publish/subscribe hub for one workflow run.

    Usage:
        bus = EventBus("tenant_1", "workflow_123", transport)
        bus.on(EventKind.UNIT_COMPLETED, lambda e: print(e.unit_id))
        await bus.emit(EventKind.WORKFLOW_STARTED, {"units": 3})
    """

    def __init__(
        self, tenant_id: str, workflow_id: str, transport: EventTransport | None = None
    ):
        self.tenant_id = tenant_id
        self.workflow_id = workflow_id
        self._transport = transport
        # {kind: [listener]}, registration ordered
        self._listeners: dict[EventKind, list[Listener]] = {}
        # {unit_id: [listener]} receive every unit event of that unit
        self._unit_listeners: dict[str, list[Listener]] = {}
        self._remote_unsubscribers: list[Callable[[], Awaitable[None]]] = []

    def __repr__(self) -> str:
        return f"EventBus(workflow_id={self.workflow_id!r})"

    @property
    def stream_key(self) -> str:
        return workflow_stream_key(self.tenant_id, self.workflow_id)

    # ========================================================================
    # Listener registration
    # ========================================================================

    def on(self, kind: EventKind, listener: Listener) -> None:
        self._listeners.setdefault(kind, []).append(listener)

    def once(self, kind: EventKind, listener: Listener) -> Listener:
        """Register a listener that removes itself after the first event.

        Returns the wrapper actually registered, so it can be passed to ``off``.
        """

        async def wrapper(event: WorkflowEvent) -> None:
            self.off(kind, wrapper)
            result = listener(event)
            if inspect.isawaitable(result):
                await result

        self.on(kind, wrapper)
        return wrapper

    def off(self, kind: EventKind, listener: Listener) -> bool:
        """Remove a listener; returns False if it was not registered."""
        listeners = self._listeners.get(kind, [])
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def on_unit(self, unit_id: str, listener: Listener) -> None:
        """Listen to every ``unit.*`` event of one unit."""
        self._unit_listeners.setdefault(unit_id, []).append(listener)

    def remove_all_listeners(self, kind: EventKind | None = None) -> None:
        if kind is None:
            self._listeners.clear()
            self._unit_listeners.clear()
        else:
            self._listeners.pop(kind, None)

    def listener_count(self, kind: EventKind) -> int:
        return len(self._listeners.get(kind, []))

    # ========================================================================
    # Emission
    # ========================================================================

    async def emit(
        self, kind: EventKind, data: dict[str, Any] | None = None, unit_id: str | None = None
    ) -> WorkflowEvent:
        """Dispatch an event locally, then publish it to the durable stream."""
        event = WorkflowEvent(
            kind=kind, workflow_id=self.workflow_id, unit_id=unit_id, data=dict(data or {})
        )
        await self.dispatch(event)
        await self._publish(event)
        return event

    async def emit_unit_event(
        self, kind: EventKind, unit_id: str, data: dict[str, Any] | None = None
    ) -> WorkflowEvent:
        return await self.emit(kind, data, unit_id=unit_id)

    async def dispatch(self, event: WorkflowEvent) -> None:
        """Deliver an event to local listeners only."""
        listeners = list(self._listeners.get(event.kind, []))
        if event.unit_id is not None and event.kind.is_unit_event:
            listeners.extend(self._unit_listeners.get(event.unit_id, []))

        for listener in listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event listener for {event.kind} raised: {e}")

    async def _publish(self, event: WorkflowEvent) -> None:
        if self._transport is None:
            return
        try:
            await self._transport.publish(self.stream_key, event.to_payload())
        except Exception as e:
            logger.warning(f"Failed to publish {event.kind} to {self.stream_key}: {e}")

    # ========================================================================
    # Waiting and remote subscription
    # ========================================================================

    async def wait_for_event(
        self, kind: EventKind, timeout: float | None = None, unit_id: str | None = None
    ) -> WorkflowEvent:
        """
        Wait for the next local event of ``kind`` (optionally for one unit).

        Raises:
            TimeoutError: If no matching event arrives within ``timeout`` seconds
        """
        future: asyncio.Future[WorkflowEvent] = asyncio.get_running_loop().create_future()

        def listener(event: WorkflowEvent) -> None:
            if unit_id is not None and event.unit_id != unit_id:
                return
            if not future.done():
                future.set_result(event)

        self.on(kind, listener)
        try:
            return await asyncio.wait_for(future, timeout)
        except TimeoutError:
            raise TimeoutError(f"Timed out waiting for {kind} on {self.workflow_id}") from None
        finally:
            self.off(kind, listener)

    async def subscribe_remote(
        self, listener: Listener, from_id: str = "$"
    ) -> Callable[[], Awaitable[None]]:
        """
        Follow this workflow's durable stream, e.g. from another process.

        Raises:
            RuntimeError: If the bus has no transport
        """
        if self._transport is None:
            raise RuntimeError("EventBus has no transport to subscribe to")

        async def handle(message_id: str, fields: dict[str, str]) -> None:
            result = listener(WorkflowEvent.from_payload(fields))
            if inspect.isawaitable(result):
                await result

        unsubscribe = await self._transport.subscribe(self.stream_key, from_id, handle)
        self._remote_unsubscribers.append(unsubscribe)
        return unsubscribe

    async def close(self) -> None:
        """Stop remote subscriptions and drop all listeners."""
        for unsubscribe in self._remote_unsubscribers:
            await unsubscribe()
        self._remote_unsubscribers.clear()
        self.remove_all_listeners()
