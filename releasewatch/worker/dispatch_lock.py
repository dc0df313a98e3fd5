"""Redis-based run lock so scheduled dispatch invocations never overlap."""

import json
import logging
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from releasewatch.config import settings
from releasewatch.utils.time import utcnow

logger = logging.getLogger(__name__)

LOCK_KEY = "dispatch:queue:lock"

# Delete the lock only if run_id and token match
# Returns: 0 = not found, 1 = deleted, 2 = mismatch
UNLOCK_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local cjson = require('cjson')
local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 2
end

if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('DEL', KEYS[1])
    return 1
else
    return 2
end
"""


class DispatchLockManager:
    """
    Distributed run lock using Redis.

    - SET NX EX acquisition with a TTL so a crashed run cannot hold it forever
    - Token-verified release via a Lua script
    """

    def __init__(self, redis_url: Optional[str] = None, lock_key: str = LOCK_KEY):
        """
        Initialize lock manager.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            lock_key: Redis key holding the lock
        """
        self.redis_url = redis_url or settings.redis_url
        self.lock_key = lock_key
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def acquire_lock(self, run_id: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Acquire the lock.

        Args:
            run_id: Unique run identifier
            ttl_seconds: Lock expiry (defaults to settings)

        Returns:
            Token string if acquired, None if another run holds it
        """
        redis_client = await self._get_redis()
        token = uuid4().hex
        lock_value = json.dumps({
            "run_id": run_id,
            "token": token,
            "started_at": utcnow().isoformat(),
        })

        acquired = await redis_client.set(
            self.lock_key,
            lock_value,
            nx=True,
            ex=ttl_seconds or settings.dispatch_lock_ttl_seconds,
        )

        if acquired:
            logger.info(f"Acquired dispatch lock for run_id: {run_id[:16]}...")
            return token

        existing_value = await redis_client.get(self.lock_key)
        if existing_value:
            try:
                existing_run_id = json.loads(existing_value).get("run_id", "unknown")
                logger.debug(f"Dispatch lock already held by run_id: {existing_run_id[:16]}...")
            except (json.JSONDecodeError, AttributeError):
                logger.warning(f"Dispatch lock exists but value is invalid: {existing_value}")
        return None

    async def release_lock(self, run_id: str, token: Optional[str]) -> bool:
        """
        Release the lock if this run still owns it.

        Returns:
            True if released (or already gone), False on owner mismatch
        """
        if not token:
            logger.warning("Unlock requested without token; refusing")
            return False

        redis_client = await self._get_redis()
        try:
            result = await redis_client.eval(UNLOCK_SCRIPT, 1, self.lock_key, run_id, token)
        except Exception as e:
            logger.error(f"Error executing dispatch unlock script: {e}")
            return False

        if result == 0:
            logger.debug("Dispatch lock already released")
            return True
        if result == 1:
            logger.info(f"Released dispatch lock for run_id: {run_id[:16]}...")
            return True
        logger.warning(f"Refused to release dispatch lock held by another run (requested={run_id[:16]}...)")
        return False

    async def force_unlock(self) -> bool:
        """Delete the lock regardless of owner (operator recovery)."""
        redis_client = await self._get_redis()
        deleted = await redis_client.delete(self.lock_key)
        if deleted:
            logger.warning("Dispatch lock force-released")
        return bool(deleted)

    async def get_lock_info(self) -> Optional[Dict[str, Any]]:
        """Current holder and remaining TTL, or None when unlocked."""
        redis_client = await self._get_redis()
        value = await redis_client.get(self.lock_key)
        if not value:
            return None
        ttl = await redis_client.ttl(self.lock_key)
        try:
            data = json.loads(value)
        except json.JSONDecodeError:
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}
        return {
            "run_id": data.get("run_id"),
            "started_at": data.get("started_at"),
            "ttl_seconds": ttl if ttl > 0 else None,
        }


dispatch_lock_manager = DispatchLockManager()
