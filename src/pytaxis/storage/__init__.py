"""Storage backends for execution records, locks and event streams.

Provides multiple implementations behind common interfaces:
    - ExecutionStore / LockProvider / EventTransport: Abstract interfaces
    - InMemoryExecutionStore, InMemoryLockProvider, InMemoryEventTransport
    - SqliteExecutionStore: SQLite-backed execution store
    - RedisLockProvider, RedisEventTransport: Redis-backed distributed pieces

Design: Adapter Pattern + Dependency Inversion (SOLID)
    Clients depend on the abstractions, enabling easy swapping between
    backends.
"""

from pytaxis.storage.base import (
    EventHandler,
    EventTransport,
    ExecutionStore,
    LockProvider,
    StoredExecution,
    StoredWorkflow,
    tenant_key,
    unit_lock_key,
    workflow_stream_key,
)
from pytaxis.storage.memory import (
    InMemoryEventTransport,
    InMemoryExecutionStore,
    InMemoryLockProvider,
)

# Lazy imports so optional backends only load their driver when used


def __getattr__(name: str):
    if name == "SqliteExecutionStore":
        from pytaxis.storage.sqlite import SqliteExecutionStore

        return SqliteExecutionStore
    elif name == "RedisLockProvider":
        from pytaxis.storage.redis import RedisLockProvider

        return RedisLockProvider
    elif name == "RedisEventTransport":
        from pytaxis.storage.redis import RedisEventTransport

        return RedisEventTransport
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "EventHandler",
    "EventTransport",
    "ExecutionStore",
    "InMemoryEventTransport",
    "InMemoryExecutionStore",
    "InMemoryLockProvider",
    "LockProvider",
    "RedisEventTransport",
    "RedisLockProvider",
    "SqliteExecutionStore",
    "StoredExecution",
    "StoredWorkflow",
    "tenant_key",
    "unit_lock_key",
    "workflow_stream_key",
]
