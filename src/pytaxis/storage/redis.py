"""Redis-backed lock provider and event transport.

Provides the cross-process pieces of pytaxis: leased unit locks and
durable workflow event streams, shared by every orchestrator process
pointing at the same Redis.

Data Structures:
- tenant:{tenant}:lock:unit:{execution_id} (STRING): lock token, PX expiry
- tenant:{tenant}:stream:workflow:{workflow_id} (STREAM): workflow events

Key Features:
- Lock acquisition: SET NX PX, bounded retries with a fixed delay
- Lock release: Lua compare-and-delete, atomic on the server
- Streams: XADD to publish, XREAD BLOCK polling task per subscription
- Connection pooling: redis-py asyncio connection pool

Design: Adapter Pattern
Implements LockProvider and EventTransport for Redis.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from uuid_extensions import uuid7

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError("redis-py is required for the Redis backends. Install with: pip install redis")

from pytaxis.errors import StorageError
from pytaxis.storage.base import EventHandler, EventTransport, LockProvider

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
else
  return 0
end
"""


class _RedisBackend:
    """Connection handling shared by the Redis adapters.

    Either pass an existing client, or a URL and call ``connect()``.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        client: redis.Redis | None = None,
    ):
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = client
        self._owns_client = client is None

    async def connect(self) -> None:
        """Establish the Redis connection pool."""
        if self._redis is None:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=self._max_connections,
            )

    async def close(self) -> None:
        """Close the Redis connection pool if this adapter created it."""
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    def _client(self) -> redis.Redis:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")
        return self._redis


class RedisLockProvider(_RedisBackend, LockProvider):
    """Distributed unit locks on Redis.

    Usage:
        locks = RedisLockProvider("redis://localhost:6379")
        await locks.connect()
        token = await locks.acquire("tenant:t1:lock:unit:abc", ttl_ms=30000)
    """

    async def acquire(
        self, resource_id: str, ttl_ms: int, max_retries: int = 0, retry_delay_ms: int = 100
    ) -> str | None:
        client = self._client()
        token = str(uuid7())

        for attempt in range(max_retries + 1):
            if await client.set(resource_id, token, px=ttl_ms, nx=True):
                return token
            if attempt < max_retries:
                await asyncio.sleep(retry_delay_ms / 1000)

        logger.debug(f"Lock {resource_id} not acquired after {max_retries + 1} attempt(s)")
        return None

    async def release(self, resource_id: str, token: str) -> bool:
        result = await self._client().eval(_RELEASE_SCRIPT, 1, resource_id, token)
        return result == 1


class RedisEventTransport(_RedisBackend, EventTransport):
    """Workflow event streams on Redis Streams.

    Usage:
        transport = RedisEventTransport("redis://localhost:6379")
        await transport.connect()
        await transport.publish(stream_key, {"event_type": "workflow.started"})
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        client: redis.Redis | None = None,
        block_ms: int = 1000,
        batch_size: int = 10,
    ):
        super().__init__(redis_url, max_connections, client)
        self._block_ms = block_ms
        self._batch_size = batch_size

    async def publish(self, stream_key: str, payload: dict[str, str]) -> str:
        return await self._client().xadd(stream_key, payload)

    async def read(
        self, stream_key: str, last_id: str = "0", count: int = 10, block_ms: int | None = None
    ) -> list[tuple[str, dict[str, str]]]:
        """Read entries after ``last_id`` (one XREAD call)."""
        result = await self._client().xread({stream_key: last_id}, count=count, block=block_ms)
        messages: list[tuple[str, dict[str, str]]] = []
        for _stream, entries in result or []:
            messages.extend((message_id, fields) for message_id, fields in entries)
        return messages

    async def subscribe(
        self, stream_key: str, from_id: str, handler: EventHandler
    ) -> Callable[[], Awaitable[None]]:
        client = self._client()
        current_id = from_id
        if current_id == "$":
            # Resolve "$" once so entries published between polls aren't missed
            latest = await client.xrevrange(stream_key, count=1)
            current_id = latest[0][0] if latest else "0"

        async def poll() -> None:
            nonlocal current_id
            while True:
                try:
                    messages = await self.read(
                        stream_key, current_id, self._batch_size, self._block_ms
                    )
                except Exception as e:
                    logger.error(f"Stream subscription error on {stream_key}: {e}")
                    await asyncio.sleep(1.0)
                    continue

                for message_id, fields in messages:
                    try:
                        await handler(message_id, fields)
                    except Exception as e:
                        logger.error(f"Stream handler error on {stream_key} ({message_id}): {e}")
                    current_id = message_id

        task = asyncio.create_task(poll())

        async def unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        return unsubscribe
