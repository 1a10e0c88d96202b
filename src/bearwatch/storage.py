"""
Snapshot persistence: Redis when reachable, process memory otherwise.
SnapshotStore is the single holder of the "latest snapshot"; it only ever
swaps whole immutable snapshots, so readers never observe a partial update.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .models import ProviderCounts, Sighting, Snapshot

try:
    import redis.asyncio as redis
    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False

logger = logging.getLogger(__name__)


class StorageManager:
    """Manages Redis or in-memory storage with automatic fallback"""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url
        self.redis_client: Optional["redis.Redis"] = None
        self.memory_storage: Dict[str, Any] = {}
        self.use_redis = False

    async def connect(self):
        """Attempt Redis connection, fallback to memory"""
        if not self.redis_url:
            logger.info("No REDIS_URL configured, using in-memory storage")
            return
        if not REDIS_AVAILABLE:
            logger.warning("Redis not available, using in-memory storage")
            return

        try:
            self.redis_client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5
            )
            await self.redis_client.ping()
            self.use_redis = True
            logger.info("Redis connected successfully")
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}. Using in-memory storage")
            self.redis_client = None

    async def close(self):
        """Close Redis connection"""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            self.use_redis = False

    async def ping(self) -> bool:
        if not (self.use_redis and self.redis_client):
            return False
        try:
            return bool(await self.redis_client.ping())
        except Exception as e:
            logger.error(f"Redis ping error: {e}")
            return False

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Retrieve value from storage"""
        if self.use_redis and self.redis_client:
            try:
                data = await self.redis_client.get(key)
                if data:
                    return json.loads(data)
            except Exception as e:
                logger.error(f"Redis get error: {e}")

        return self.memory_storage.get(key)

    async def set(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None):
        """Store value, optionally with TTL"""
        self.memory_storage[key] = value
        if self.use_redis and self.redis_client:
            try:
                await self.redis_client.set(key, json.dumps(value, ensure_ascii=False), ex=ttl)
            except Exception as e:
                logger.error(f"Redis set error: {e}")

    async def delete(self, key: str):
        """Delete value from storage"""
        if self.use_redis and self.redis_client:
            try:
                await self.redis_client.delete(key)
            except Exception as e:
                logger.error(f"Redis delete error: {e}")

        self.memory_storage.pop(key, None)


class SnapshotStore:
    """Holds the latest aggregation result; last writer wins."""

    def __init__(self, storage: Optional[StorageManager] = None, *, key: str = "bear_hotspots_cache_v1"):
        self._storage = storage or StorageManager()
        self._key = key
        self._snapshot = Snapshot()

    @property
    def storage(self) -> StorageManager:
        return self._storage

    async def load(self) -> Snapshot:
        """Warm the in-process snapshot from persistent storage, if any."""
        payload = await self._storage.get(self._key)
        if payload:
            try:
                self._snapshot = Snapshot.model_validate(payload)
                logger.info(f"Restored cached snapshot with {len(self._snapshot.sightings)} sightings")
            except ValidationError as e:
                logger.warning(f"Ignoring unreadable cached snapshot: {e}")
        return self._snapshot

    def get(self) -> Snapshot:
        return self._snapshot

    async def replace(self, snapshot: Snapshot) -> Snapshot:
        self._snapshot = snapshot
        await self._storage.set(self._key, snapshot.model_dump(mode="json", by_alias=True))
        return snapshot

    async def prepend(self, sighting: Sighting) -> Snapshot:
        """Put a new sighting first; user reports take visual priority."""
        current = self._snapshot
        others = [item for item in current.sightings if item.id != sighting.id]
        snapshot = Snapshot(
            sightings=[sighting, *others],
            timestamp=current.timestamp,
            counts=ProviderCounts(**current.counts.model_dump()),
        )
        return await self.replace(snapshot)
