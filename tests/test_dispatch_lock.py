"""Tests for the dispatch run lock."""

import pytest
import redis.asyncio as redis

from releasewatch.config import settings
from releasewatch.worker.dispatch_lock import DispatchLockManager

TEST_LOCK_KEY = "dispatch:queue:lock:test"


async def _redis_available() -> bool:
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True
    except Exception:
        return False


@pytest.fixture
async def manager():
    if not await _redis_available():
        pytest.skip("Redis not available")
    manager = DispatchLockManager(redis_url=settings.redis_url, lock_key=TEST_LOCK_KEY)
    await manager.force_unlock()
    yield manager
    await manager.force_unlock()
    await manager.close()


@pytest.mark.asyncio
async def test_lock_acquire_and_release(manager):
    token = await manager.acquire_lock("run_one", ttl_seconds=30)
    assert token is not None

    info = await manager.get_lock_info()
    assert info["run_id"] == "run_one"
    assert 0 < info["ttl_seconds"] <= 30

    assert await manager.acquire_lock("run_two", ttl_seconds=30) is None

    assert await manager.release_lock("run_one", token) is True
    assert await manager.get_lock_info() is None


@pytest.mark.asyncio
async def test_release_requires_matching_token(manager):
    token = await manager.acquire_lock("run_one", ttl_seconds=30)

    assert await manager.release_lock("run_one", "bad_token") is False
    assert await manager.release_lock("run_two", token) is False
    assert await manager.release_lock("run_one", None) is False
    assert await manager.get_lock_info() is not None

    # Releasing an expired/missing lock counts as released
    await manager.force_unlock()
    assert await manager.release_lock("run_one", token) is True
