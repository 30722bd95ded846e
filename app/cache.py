import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import redis.asyncio as redis

from app.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key namespace
# ---------------------------------------------------------------------------

USERS_ALL_KEY = "users:all"
POSTS_ALL_KEY = "posts:all"
RECENT_POSTS_PATTERN = "users:recent_posts:*"


def user_key(user_id: int) -> str:
    return f"user:{user_id}"


def user_email_key(email: str) -> str:
    return f"user:email:{email.strip().lower()}"


def user_stats_key(user_id: int) -> str:
    return f"user:stats:{user_id}"


def recent_posts_key(days: int) -> str:
    return f"users:recent_posts:{days}"


def post_key(post_id: int) -> str:
    return f"post:{post_id}"


class CacheManager:
    """
    Cache-aside manager backed by Redis.

    All public methods are safe to call even when Redis is unavailable:
    read operations return None and write operations are silently skipped,
    so a cache outage degrades to plain store queries instead of failing
    the request.
    """

    def __init__(self) -> None:
        self._redis: redis.Redis | None = None
        self._hits: int = 0
        self._misses: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection pool.  Called once at application startup."""
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
            logger.warning("Redis ping failed, reads will fall through to the database: %s", exc)

    async def disconnect(self) -> None:
        """Close the connection pool.  Called once at application shutdown."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Core cache operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Return the cached value for *key*, or None on a miss / error."""
        if not self._redis:
            self._misses += 1
            return None
        try:
            data = await self._redis.get(key)
            if data is not None:
                self._hits += 1
                return json.loads(data)
            self._misses += 1
            return None
        except Exception as exc:
            logger.debug("Cache GET error for key=%r: %s", key, exc)
            self._misses += 1
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """
        Persist *value* under *key* with a TTL in seconds.

        ``ttl`` defaults to ``settings.CACHE_TTL``.  Failures are logged and
        never propagated.
        """
        if not self._redis:
            return
        try:
            serialised = json.dumps(value, default=str)
            await self._redis.set(key, serialised, ex=ttl if ttl is not None else settings.CACHE_TTL)
        except Exception as exc:
            logger.debug("Cache SET error for key=%r: %s", key, exc)

    async def delete(self, *keys: str) -> None:
        if not self._redis or not keys:
            return
        try:
            await self._redis.delete(*keys)
            logger.debug("Cache invalidated %s", ", ".join(keys))
        except Exception as exc:
            logger.debug("Cache DELETE error for keys=%r: %s", keys, exc)

    async def delete_pattern(self, pattern: str) -> None:
        """Delete all keys matching *pattern* using SCAN (avoids blocking KEYS)."""
        if not self._redis:
            return
        try:
            keys: list[str] = []
            async for key in self._redis.scan_iter(match=pattern):
                keys.append(key)
            if keys:
                await self._redis.delete(*keys)
                logger.debug("Cache invalidated %d key(s) matching %r", len(keys), pattern)
        except Exception as exc:
            logger.debug("Cache DELETE_PATTERN error for pattern=%r: %s", pattern, exc)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: int | None = None,
    ) -> Any:
        """
        Cache-aside read: return the cached value for *key* or await
        *loader*, cache its result and return it.

        ``None`` results are returned but not cached, and exceptions from
        *loader* propagate without touching the cache.  There is no
        single-flight guard: concurrent misses each call *loader*.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await self.set(key, value, ttl=ttl)
        return value

    # ------------------------------------------------------------------
    # Domain-level invalidation helpers
    # ------------------------------------------------------------------

    async def invalidate_user(self, user_id: int, emails: Iterable[str] = ()) -> None:
        """
        Drop every key derived from the user: its detail, stats and email
        lookups, the active-user list and all recent-posts windows.
        """
        keys = [USERS_ALL_KEY, user_key(user_id), user_stats_key(user_id)]
        keys.extend(user_email_key(e) for e in emails if e)
        await self.delete(*keys)
        await self.delete_pattern(RECENT_POSTS_PATTERN)

    async def invalidate_post(
        self,
        post_id: int | None = None,
        author_id: int | None = None,
        author_email: str | None = None,
    ) -> None:
        """
        Drop the post list and, when given, the post detail.  When the
        author is known its user keys go too, since the author's resolved
        posts and stats embed the post.
        """
        keys = [POSTS_ALL_KEY]
        if post_id is not None:
            keys.append(post_key(post_id))
        await self.delete(*keys)
        if author_id is not None:
            await self.invalidate_user(author_id, [author_email] if author_email else ())

    async def invalidate_posts(self, post_ids: Iterable[int]) -> None:
        """Drop the post list and the detail entries of *post_ids*."""
        await self.delete(POSTS_ALL_KEY, *(post_key(pid) for pid in post_ids))

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict:
        """Return a snapshot of hit/miss counters for metrics endpoints."""
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0


# Module-level singleton shared across all request handlers.
cache = CacheManager()
