"""Scoped acquisition of unit locks.

``hold_lock`` turns the token-based LockProvider API into an async context
manager: acquisition is bounded by the retry budget, and release happens on
every exit path, including executor errors and cancellation. A release that
fails is logged and left to the lease expiry; it never fails the block.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from pytaxis.errors import LockContentionError
from pytaxis.storage.base import LockProvider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def hold_lock(
    provider: LockProvider,
    resource_id: str,
    ttl_ms: int,
    max_retries: int = 0,
    retry_delay_ms: int = 100,
) -> AsyncIterator[str]:
    """
    Hold ``resource_id`` for the duration of the block.

    Yields:
        The lock token

    Raises:
        LockContentionError: If the lock is not acquired within the retry budget

    Example:
        ```python
        async with hold_lock(locks, unit_lock_key("t1", ctx.execution_id), 30_000):
            await executor.execute(ctx.unit_id, input)
        ```
    """
    token = await provider.acquire(resource_id, ttl_ms, max_retries, retry_delay_ms)
    if token is None:
        raise LockContentionError(resource_id)

    logger.debug(f"Acquired lock {resource_id}")
    try:
        yield token
    finally:
        try:
            released = await provider.release(resource_id, token)
        except Exception as e:
            # The lease still expires on its own after ttl_ms
            logger.warning(f"Failed to release lock {resource_id}: {e}")
        else:
            if not released:
                # Lease expired while held; another holder may have taken it since
                logger.warning(f"Lock {resource_id} expired before release (ttl={ttl_ms}ms)")
