import json
import logging

import redis.asyncio as redis

from forum_api.config import settings

logger = logging.getLogger(__name__)

_POST_LIST_PREFIX = "posts:list"


class CacheManager:
    """
    Cache-aside store for rendered post listing pages, backed by Redis.

    Only listing pages are cached.  Vote tallies, ledger rows and single
    post views are always read from the database so concurrent handlers
    never act on a stale count.

    Every method tolerates Redis being absent or failing: reads report a
    miss and writes are skipped, so requests never fail because of the
    cache.
    """

    def __init__(self) -> None:
        self._redis: redis.Redis | None = None
        self._hits: int = 0
        self._misses: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        self._redis = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        try:
            await self._redis.ping()
            logger.info("Redis connected: %s", settings.REDIS_URL)
        except Exception as exc:  # pragma: no cover
            logger.warning("Redis unreachable, post listing cache disabled: %s", exc)

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Post listing pages
    # ------------------------------------------------------------------

    @staticmethod
    def post_list_key(page: int, limit: int) -> str:
        return f"{_POST_LIST_PREFIX}:{page}:{limit}"

    async def get_post_page(self, page: int, limit: int) -> dict | None:
        """Return the cached listing page, or None on a miss or error."""
        if not self._redis:
            self._misses += 1
            return None
        key = self.post_list_key(page, limit)
        try:
            raw = await self._redis.get(key)
        except Exception as exc:
            logger.debug("Cache GET failed for %r: %s", key, exc)
            raw = None
        if raw is None:
            self._misses += 1
            return None
        self._hits += 1
        return json.loads(raw)

    async def set_post_page(self, page: int, limit: int, payload: dict) -> None:
        if not self._redis:
            return
        key = self.post_list_key(page, limit)
        try:
            await self._redis.set(
                key, json.dumps(payload, default=str), ex=settings.CACHE_TTL_LIST
            )
        except Exception as exc:
            logger.debug("Cache SET failed for %r: %s", key, exc)

    async def invalidate_posts(self) -> None:
        """
        Drop every cached listing page.

        Called after any committed write that changes what a listing
        shows: new or deleted posts, new comments, votes, reconciliations
        and user cascades.
        """
        if not self._redis:
            return
        try:
            # SCAN rather than KEYS so a large keyspace never blocks Redis.
            keys = [key async for key in self._redis.scan_iter(match=f"{_POST_LIST_PREFIX}:*")]
            if keys:
                await self._redis.delete(*keys)
                logger.debug("Cache dropped %d post listing page(s)", len(keys))
        except Exception as exc:
            logger.debug("Cache invalidation failed: %s", exc)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }


# Module-level singleton shared across all request handlers.
cache = CacheManager()
