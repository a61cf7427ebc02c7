"""
Consent Cache Service

Redis-backed cache of active-consent snapshots keyed by (domain_id, user_id),
with an in-memory fallback for when Redis is not configured or unreachable.

The cache is a hint. A miss, a timeout or a backend error all mean
"read the repository", never "no consent".

Every key carries an invalidation generation. A reader that repopulates the
cache after a repository read passes the generation it saw before the read,
and the snapshot is only stored if no invalidation happened in between.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from collections.abc import Callable
from typing import Any

import structlog
from redis.exceptions import RedisError

from consent_ledger.config import Settings
from consent_ledger.models.consent import ConsentSnapshot

logger = structlog.get_logger(__name__)

CACHE_ERRORS = (ConnectionError, TimeoutError, OSError, ValueError, RedisError)

# Must outlive any in-flight repository read
GENERATION_TTL_SECONDS = 24 * 3600

# KEYS: snapshot, generation. ARGV: expected generation, payload, ttl
SET_IF_GENERATION_SCRIPT = """
if (redis.call('GET', KEYS[2]) or '0') == ARGV[1] then
  redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
  return 1
end
return 0
"""

# KEYS: snapshot, generation. ARGV: generation ttl
INVALIDATE_SCRIPT = """
redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[1])
return redis.call('DEL', KEYS[1])
"""


def hash_key(domain_id: str, user_id: str) -> str:
    """Deterministic, delimiter-safe digest of a consent key."""
    content = f"{len(domain_id)}:{domain_id}:{user_id}"
    return hashlib.sha256(content.encode()).hexdigest()[:32]


class ConsentCache:
    """
    Redis-backed snapshot cache.

    Every call is bounded by timeout_seconds.
    """

    def __init__(
        self,
        redis_client: Any,
        prefix: str = "consent_ledger:consent:",
        ttl_seconds: int = 300,
        timeout_seconds: float = 0.5,
    ):
        self._redis = redis_client
        self._prefix = prefix
        self._ttl_seconds = ttl_seconds
        self._timeout = timeout_seconds
        self._logger = logger.bind(service="consent_cache")

        self._stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "stale_sets": 0,
            "deletes": 0,
            "errors": 0,
        }

    def _make_key(self, domain_id: str, user_id: str) -> str:
        return f"{self._prefix}{hash_key(domain_id, user_id)}"

    def _generation_key(self, domain_id: str, user_id: str) -> str:
        return f"{self._prefix}generation:{hash_key(domain_id, user_id)}"

    async def get(self, domain_id: str, user_id: str) -> ConsentSnapshot | None:
        """
        Get a cached snapshot.

        Returns:
            The snapshot, or None on miss, timeout or error
        """
        key = self._make_key(domain_id, user_id)

        try:
            data = await asyncio.wait_for(self._redis.get(key), self._timeout)
            if not data:
                self._stats["misses"] += 1
                return None

            snapshot = ConsentSnapshot.model_validate_json(data)
            self._stats["hits"] += 1
            self._logger.debug("cache_hit", domain_id=domain_id)
            return snapshot

        except CACHE_ERRORS as e:
            self._logger.error("cache_get_error", domain_id=domain_id, error=str(e))
            self._stats["errors"] += 1
            self._stats["misses"] += 1
            return None

    async def generation(self, domain_id: str, user_id: str) -> str | None:
        """Current invalidation generation for a key, or None if Redis failed."""
        try:
            value = await asyncio.wait_for(
                self._redis.get(self._generation_key(domain_id, user_id)), self._timeout
            )
        except CACHE_ERRORS as e:
            self._logger.error("cache_generation_error", domain_id=domain_id, error=str(e))
            self._stats["errors"] += 1
            return None

        if value is None:
            return "0"
        return value.decode() if isinstance(value, bytes) else str(value)

    async def set(
        self,
        domain_id: str,
        user_id: str,
        snapshot: ConsentSnapshot,
        ttl_seconds: int | None = None,
        generation: str | None = None,
    ) -> bool:
        """
        Cache a snapshot. Returns True if stored.

        With a generation, the snapshot is stored only if the key has not
        been invalidated since that generation was read.
        """
        key = self._make_key(domain_id, user_id)
        ttl = ttl_seconds or self._ttl_seconds
        payload = snapshot.model_dump_json()

        try:
            if generation is None:
                await asyncio.wait_for(self._redis.set(key, payload, ex=ttl), self._timeout)
            else:
                stored = await asyncio.wait_for(
                    self._redis.eval(
                        SET_IF_GENERATION_SCRIPT,
                        2,
                        key,
                        self._generation_key(domain_id, user_id),
                        generation,
                        payload,
                        ttl,
                    ),
                    self._timeout,
                )
                if not stored:
                    self._stats["stale_sets"] += 1
                    self._logger.debug("cache_set_skipped_invalidated", domain_id=domain_id)
                    return False

            self._stats["sets"] += 1
            self._logger.debug("cache_set", domain_id=domain_id, ttl_seconds=ttl)
            return True

        except CACHE_ERRORS as e:
            self._logger.error("cache_set_error", domain_id=domain_id, error=str(e))
            self._stats["errors"] += 1
            return False

    async def invalidate(self, domain_id: str, user_id: str) -> bool:
        """Remove the snapshot and bump the key's generation. False if the backend failed."""
        try:
            await asyncio.wait_for(
                self._redis.eval(
                    INVALIDATE_SCRIPT,
                    2,
                    self._make_key(domain_id, user_id),
                    self._generation_key(domain_id, user_id),
                    GENERATION_TTL_SECONDS,
                ),
                self._timeout,
            )
            self._stats["deletes"] += 1
            return True
        except CACHE_ERRORS as e:
            self._logger.error("cache_invalidate_error", domain_id=domain_id, error=str(e))
            self._stats["errors"] += 1
            return False

    async def get_stats(self) -> dict[str, Any]:
        lookups = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "hit_rate": round(self._stats["hits"] / lookups, 4) if lookups else 0.0,
            "backend": "redis",
        }

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except CACHE_ERRORS as e:
            self._logger.warning("cache_redis_close_error", error=str(e))


class InMemoryConsentCache:
    """
    In-memory fallback cache.

    Used when Redis is not configured or unavailable.
    """

    def __init__(
        self,
        max_size: int = 10000,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache: dict[str, tuple[float, float, str]] = {}
        self._max_size = max_size
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "stale_sets": 0, "deletes": 0, "errors": 0}
        self._logger = logger.bind(service="consent_cache_memory")

        # Generations come from one counter, so a value is never handed out twice.
        # Keys evicted from _generations read as _generation_floor.
        self._generations: dict[str, int] = {}
        self._generation_counter = 0
        self._generation_floor = 0

    def _current_generation(self, key: str) -> int:
        return self._generations.get(key, self._generation_floor)

    async def get(self, domain_id: str, user_id: str) -> ConsentSnapshot | None:
        key = hash_key(domain_id, user_id)
        entry = self._cache.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None

        _, expires_at, payload = entry
        if self._clock() >= expires_at:
            del self._cache[key]
            self._stats["misses"] += 1
            return None

        self._stats["hits"] += 1
        return ConsentSnapshot.model_validate_json(payload)

    async def generation(self, domain_id: str, user_id: str) -> str | None:
        return str(self._current_generation(hash_key(domain_id, user_id)))

    async def set(
        self,
        domain_id: str,
        user_id: str,
        snapshot: ConsentSnapshot,
        ttl_seconds: int | None = None,
        generation: str | None = None,
    ) -> bool:
        key = hash_key(domain_id, user_id)
        if generation is not None and generation != str(self._current_generation(key)):
            self._stats["stale_sets"] += 1
            self._logger.debug("cache_set_skipped_invalidated", domain_id=domain_id)
            return False

        now = self._clock()

        # Evict the oldest entry if at capacity
        if key not in self._cache and len(self._cache) >= self._max_size:
            oldest_key = min(self._cache, key=lambda k: self._cache[k][0])
            del self._cache[oldest_key]

        self._cache[key] = (now, now + (ttl_seconds or self._ttl_seconds), snapshot.model_dump_json())
        self._stats["sets"] += 1
        return True

    async def invalidate(self, domain_id: str, user_id: str) -> bool:
        key = hash_key(domain_id, user_id)
        if self._cache.pop(key, None) is not None:
            self._stats["deletes"] += 1

        self._generation_counter += 1
        self._generations.pop(key, None)
        self._generations[key] = self._generation_counter
        if len(self._generations) > self._max_size:
            del self._generations[next(iter(self._generations))]
            self._generation_floor = self._generation_counter
        return True

    async def get_stats(self) -> dict[str, Any]:
        lookups = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "total_cached": len(self._cache),
            "max_size": self._max_size,
            "hit_rate": round(self._stats["hits"] / lookups, 4) if lookups else 0.0,
            "backend": "memory",
        }

    async def close(self) -> None:
        self._cache.clear()


SnapshotCache = ConsentCache | InMemoryConsentCache


async def create_consent_cache(settings: Settings) -> SnapshotCache:
    """Build the consent cache with Redis or fall back to memory."""
    if settings.redis_url:
        try:
            import redis.asyncio as redis

            client = redis.from_url(
                settings.redis_url,
                password=settings.redis_password,
                decode_responses=True,
            )
            await asyncio.wait_for(client.ping(), settings.cache_timeout_seconds * 4)

            logger.info("consent_cache_initialized", backend="redis")
            return ConsentCache(
                client,
                prefix=settings.consent_cache_prefix,
                ttl_seconds=settings.consent_cache_ttl_seconds,
                timeout_seconds=settings.cache_timeout_seconds,
            )

        except CACHE_ERRORS as e:
            logger.warning("redis_unavailable_using_memory", error=str(e))
    else:
        logger.info("consent_cache_initialized", backend="memory")

    return InMemoryConsentCache(
        max_size=settings.consent_cache_max_size,
        ttl_seconds=settings.consent_cache_ttl_seconds,
    )
