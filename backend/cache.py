# backend/cache.py
"""
Redis response cache for catalog reads.

Keys are request paths (with query string). Writes to the catalog call
invalidate() before returning, so readers never see data older than the
last acknowledged write. When Redis rejects the delete, reads skip the
cache until a later invalidation of the same pattern goes through.
"""
import json
import logging
from typing import Any, Optional

import redis

import config

logger = logging.getLogger(__name__)

CONSULTANTS_PATTERN = "cache:/api/consultants*"
SERVICES_PATTERN = "cache:/api/services*"


class ResponseCache:
    """Redis cache wrapper with JSON serialization"""

    def __init__(self, url: Optional[str] = None, enabled: Optional[bool] = None):
        self.url = url or config.REDIS_URL
        self.enabled = config.CACHE_ENABLED if enabled is None else enabled
        self.redis_client = None
        # Patterns whose invalidation failed; reads bypass the cache until they are cleared
        self.pending_invalidations = set()

    def _get_client(self):
        """Lazy load Redis client"""
        if not self.enabled:
            return None
        if self.redis_client is None:
            try:
                self.redis_client = redis.Redis.from_url(self.url, socket_timeout=2, decode_responses=True)
            except (redis.RedisError, ValueError) as e:
                logger.warning(f"Redis cache unavailable: {e}")
                return None
        return self.redis_client

    @staticmethod
    def key_for(path: str, query: str = "") -> str:
        return f"cache:{path}?{query}" if query else f"cache:{path}"

    def _retry_pending(self) -> bool:
        for pattern in list(self.pending_invalidations):
            self.invalidate(pattern, reason="retry")
        return not self.pending_invalidations

    def get(self, key: str) -> Optional[Any]:
        client = self._get_client()
        if not client:
            return None
        if self.pending_invalidations and not self._retry_pending():
            logger.debug(f"Cache bypassed for {key}: invalidation pending")
            return None

        try:
            value = client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Cache get error for {key}: {e}")
            return None
        if value is None:
            logger.debug(f"Cache miss: {key}")
            return None
        logger.debug(f"Cache hit: {key}")
        return json.loads(value)

    def set(self, key: str, value: Any, ttl: int) -> bool:
        client = self._get_client()
        if not client or self.pending_invalidations:
            return False

        try:
            client.setex(key, ttl, json.dumps(value, default=str))
        except redis.RedisError as e:
            logger.warning(f"Cache set error for {key}: {e}")
            return False
        logger.debug(f"Cached {key} for {ttl} seconds")
        return True

    def invalidate(self, pattern: str, reason: Optional[str] = None) -> int:
        """Delete all keys matching a glob pattern, e.g. 'cache:/api/services*'"""
        client = self._get_client()
        if not client:
            return 0

        try:
            keys = list(client.scan_iter(match=pattern))
            deleted = client.delete(*keys) if keys else 0
        except redis.RedisError as e:
            self.pending_invalidations.add(pattern)
            logger.error(
                f"Cache invalidation failed for {pattern} ({reason or 'unspecified write'}): {e}. "
                f"Reads bypass the cache until it succeeds"
            )
            return 0
        self.pending_invalidations.discard(pattern)
        if deleted:
            logger.info(f"Cleared {deleted} cache keys for pattern: {pattern}")
        return deleted

    def invalidate_catalog(self, reason: Optional[str] = None):
        self.invalidate(CONSULTANTS_PATTERN, reason)
        self.invalidate(SERVICES_PATTERN, reason)

    def ping(self) -> bool:
        client = self._get_client()
        if not client:
            return False
        try:
            return bool(client.ping())
        except redis.RedisError:
            return False


# Global cache instance
cache = ResponseCache()
