"""Workflow events: in-process dispatch plus durable stream publication."""

from pytaxis.events.bus import EventBus, EventKind, Listener, WorkflowEvent
from pytaxis.events.observers import BatchEventEmitter, EventLogger

__all__ = [
    "BatchEventEmitter",
    "EventBus",
    "EventKind",
    "EventLogger",
    "Listener",
    "WorkflowEvent",
]
