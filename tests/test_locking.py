"""Tests for leased unit locks and the hold_lock context manager."""

import asyncio

import pytest

from pytaxis.errors import LockContentionError
from pytaxis.executor import hold_lock
from pytaxis.storage import InMemoryLockProvider, unit_lock_key


def test_lock_keys_are_tenant_scoped():
    assert unit_lock_key("t1", "unit_1") == "tenant:t1:lock:unit:unit_1"


@pytest.mark.asyncio
async def test_acquire_and_release(lock_provider):
    token = await lock_provider.acquire("r1", 10_000)

    assert token is not None
    assert await lock_provider.is_locked("r1")
    assert await lock_provider.acquire("r1", 10_000) is None
    assert await lock_provider.release("r1", token)
    assert not await lock_provider.is_locked("r1")


@pytest.mark.asyncio
async def test_release_with_wrong_token_keeps_lock(lock_provider):
    token = await lock_provider.acquire("r1", 10_000)

    assert not await lock_provider.release("r1", "someone-else")
    assert await lock_provider.is_locked("r1")
    assert await lock_provider.release("r1", token)


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over(lock_provider):
    stale = await lock_provider.acquire("r1", 20)
    await asyncio.sleep(0.05)

    fresh = await lock_provider.acquire("r1", 10_000)

    assert fresh is not None and fresh != stale
    # The stale holder must not free the new lease
    assert not await lock_provider.release("r1", stale)
    assert await lock_provider.is_locked("r1")


@pytest.mark.asyncio
async def test_release_after_expiry_reports_false(lock_provider):
    token = await lock_provider.acquire("r1", 20)
    await asyncio.sleep(0.05)

    assert not await lock_provider.release("r1", token)


@pytest.mark.asyncio
async def test_acquire_retries_until_released(lock_provider):
    token = await lock_provider.acquire("r1", 10_000)

    async def release_soon():
        await asyncio.sleep(0.03)
        await lock_provider.release("r1", token)

    releaser = asyncio.create_task(release_soon())
    acquired = await lock_provider.acquire("r1", 10_000, max_retries=10, retry_delay_ms=10)
    await releaser

    assert acquired is not None


@pytest.mark.asyncio
async def test_hold_lock_releases_on_exit(lock_provider):
    async with hold_lock(lock_provider, "r1", 10_000) as token:
        assert token
        assert await lock_provider.is_locked("r1")

    assert not await lock_provider.is_locked("r1")


@pytest.mark.asyncio
async def test_hold_lock_releases_on_error(lock_provider):
    with pytest.raises(RuntimeError):
        async with hold_lock(lock_provider, "r1", 10_000):
            raise RuntimeError("executor blew up")

    assert not await lock_provider.is_locked("r1")


@pytest.mark.asyncio
async def test_hold_lock_contention(lock_provider):
    await lock_provider.acquire("r1", 10_000)

    with pytest.raises(LockContentionError) as exc_info:
        async with hold_lock(lock_provider, "r1", 10_000, max_retries=2, retry_delay_ms=1):
            pytest.fail("lock should not have been acquired")

    assert exc_info.value.resource_id == "r1"


@pytest.mark.asyncio
async def test_hold_lock_warns_when_lease_expired(lock_provider, caplog):
    with caplog.at_level("WARNING", logger="pytaxis.executor.locking"):
        async with hold_lock(lock_provider, "r1", 10):
            await asyncio.sleep(0.03)

    assert any("expired before release" in r.message for r in caplog.records)


@pytest.mark.asyncio
async def test_hold_lock_survives_failed_release(caplog):
    class UnreleasableLocks(InMemoryLockProvider):
        async def release(self, resource_id, token):
            raise ConnectionError("lock store down")

    with caplog.at_level("WARNING", logger="pytaxis.executor.locking"):
        async with hold_lock(UnreleasableLocks(), "r1", 10_000) as token:
            assert token

    assert any("Failed to release lock r1" in r.message for r in caplog.records)


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_only_one_holder_at_a_time():
    provider = InMemoryLockProvider()
    holders = 0
    max_holders = 0

    async def worker():
        nonlocal holders, max_holders
        async with hold_lock(provider, "shared", 10_000, max_retries=200, retry_delay_ms=1):
            holders += 1
            max_holders = max(max_holders, holders)
            await asyncio.sleep(0.002)
            holders -= 1

    await asyncio.gather(*(worker() for _ in range(5)))

    assert max_holders == 1
