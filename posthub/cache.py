import json
import logging

import redis.asyncio as redis

from posthub.errors import CacheUnavailable

POSTS_ALL_KEY = "posts:all"


def post_key(post_id: int) -> str:
    return f"post:{post_id}"


class CacheManager:
    """
    Cache-aside manager backed by Redis.

    The cache is advisory: every public method except ``ping`` is safe to
    call when Redis is down.  Reads report a miss and writes or deletes
    are skipped, so callers always fall through to the store.
    """

    def __init__(
        self,
        url: str,
        *,
        socket_timeout: float = 2.0,
        client: redis.Redis | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._url = url
        self._socket_timeout = socket_timeout
        self._redis: redis.Redis | None = client
        self._log = logger or logging.getLogger(__name__)
        self._hits: int = 0
        self._misses: int = 0
        self._errors: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection pool unless a client was injected."""
        if self._redis is None:
            self._redis = redis.from_url(
                self._url,
                decode_responses=True,
                socket_connect_timeout=self._socket_timeout,
                socket_timeout=self._socket_timeout,
            )
        try:
            await self._redis.ping()
            self._log.info("Redis connected: %s", self._url)
        except Exception as exc:
            self._log.warning("Redis ping failed, serving from the store only: %s", exc)

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def ping(self) -> None:
        """Raise ``CacheUnavailable`` when the backend cannot be reached."""
        if not self._redis:
            raise CacheUnavailable("cache is not connected")
        try:
            await self._redis.ping()
        except Exception as exc:
            raise CacheUnavailable(f"cache unreachable: {exc}") from exc

    # ------------------------------------------------------------------
    # Core cache operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> dict | list | None:
        """Return the cached value for *key*, or None on a miss or error."""
        if not self._redis:
            self._misses += 1
            return None
        try:
            data = await self._redis.get(key)
        except Exception as exc:
            self._errors += 1
            self._misses += 1
            self._log.warning("Cache GET failed for key=%r, treating as miss: %s", key, exc)
            return None
        if data is None:
            self._misses += 1
            return None
        try:
            value = json.loads(data)
        except ValueError:
            self._misses += 1
            self._log.warning("Discarding undecodable cache entry key=%r", key)
            return None
        self._hits += 1
        return value

    async def set(self, key: str, value: dict | list, ttl: int | None = None) -> None:
        """Store *value* under *key* with a TTL in seconds; failures are logged only."""
        if not self._redis:
            return
        try:
            await self._redis.set(key, json.dumps(value, default=str), ex=ttl)
        except Exception as exc:
            self._errors += 1
            self._log.warning("Cache SET failed for key=%r: %s", key, exc)

    async def delete(self, *keys: str) -> None:
        if not self._redis or not keys:
            return
        try:
            await self._redis.delete(*keys)
            self._log.debug("Cache invalidated %s", ", ".join(keys))
        except Exception as exc:
            self._errors += 1
            self._log.warning("Cache DELETE failed for keys=%r: %s", keys, exc)

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching *pattern* using SCAN (avoids blocking KEYS).
        Returns the number of keys removed.
        """
        if not self._redis:
            return 0
        try:
            keys: list[str] = [key async for key in self._redis.scan_iter(match=pattern)]
            if keys:
                await self._redis.delete(*keys)
            self._log.debug("Cache invalidated %d key(s) matching %r", len(keys), pattern)
            return len(keys)
        except Exception as exc:
            self._errors += 1
            self._log.warning("Cache DELETE_PATTERN failed for pattern=%r: %s", pattern, exc)
            return 0

    # ------------------------------------------------------------------
    # Domain-level invalidation
    # ------------------------------------------------------------------

    async def invalidate_posts(self, post_id: int | None = None) -> None:
        """
        Drop the collection entry, plus the item entry when *post_id* is
        given.  The collection is never patched in place.
        """
        keys = [POSTS_ALL_KEY]
        if post_id is not None:
            keys.append(post_key(post_id))
        await self.delete(*keys)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }
