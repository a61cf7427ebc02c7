"""
Tests for Consent Cache Service

Tests cover:
- ConsentCache (Redis-backed) get/set/invalidate
- Backend errors and timeouts reported as misses
- InMemoryConsentCache TTL and eviction
- Generation-guarded sets that skip keys invalidated mid-read
- Cache construction with Redis fallback to memory
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from consent_ledger.config import Settings
from consent_ledger.models.consent import ConsentSnapshot
from consent_ledger.services.consent_cache import (
    ConsentCache,
    InMemoryConsentCache,
    create_consent_cache,
    hash_key,
)

SNAPSHOT = ConsentSnapshot(
    record_id="rec-1",
    purposes={1: True, 2: False},
    vendors={755: True},
    start_time=datetime(2026, 3, 1, tzinfo=UTC),
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestHashKey:
    def test_deterministic(self):
        assert hash_key("d1", "u1") == hash_key("d1", "u1")

    def test_delimiter_safe(self):
        assert hash_key("a:b", "c") != hash_key("a", "b:c")


class TestConsentCache:
    """Tests for the Redis-backed cache."""

    @pytest.mark.asyncio
    async def test_get_miss(self, mock_redis):
        cache = ConsentCache(mock_redis)
        assert await cache.get("d1", "u1") is None
        stats = await cache.get_stats()
        assert stats["misses"] == 1

    @pytest.mark.asyncio
    async def test_set_then_get(self, mock_redis):
        cache = ConsentCache(mock_redis, prefix="test:", ttl_seconds=120)

        assert await cache.set("d1", "u1", SNAPSHOT)
        key, payload = mock_redis.set.call_args[0]
        assert key == f"test:{hash_key('d1', 'u1')}"
        assert mock_redis.set.call_args.kwargs["ex"] == 120

        mock_redis.get.return_value = payload
        cached = await cache.get("d1", "u1")
        assert cached.record_id == "rec-1"
        assert cached.purposes == {1: True, 2: False}

    @pytest.mark.asyncio
    async def test_explicit_ttl(self, mock_redis):
        cache = ConsentCache(mock_redis, ttl_seconds=120)
        await cache.set("d1", "u1", SNAPSHOT, ttl_seconds=30)
        assert mock_redis.set.call_args.kwargs["ex"] == 30

    @pytest.mark.asyncio
    async def test_redis_error_is_a_miss(self, mock_redis):
        mock_redis.get.side_effect = RedisConnectionError("connection refused")
        cache = ConsentCache(mock_redis)

        assert await cache.get("d1", "u1") is None
        assert (await cache.get_stats())["errors"] == 1

    @pytest.mark.asyncio
    async def test_corrupt_payload_is_a_miss(self, mock_redis):
        mock_redis.get.return_value = "{not json"
        cache = ConsentCache(mock_redis)
        assert await cache.get("d1", "u1") is None

    @pytest.mark.asyncio
    async def test_timeout_is_a_miss(self, mock_redis):
        async def slow_get(key):
            await asyncio.sleep(1)

        mock_redis.get.side_effect = slow_get
        cache = ConsentCache(mock_redis, timeout_seconds=0.01)

        assert await cache.get("d1", "u1") is None

    @pytest.mark.asyncio
    async def test_invalidate_deletes_and_bumps_generation(self, mock_redis):
        cache = ConsentCache(mock_redis, prefix="test:")

        assert await cache.invalidate("d1", "u1")

        script, numkeys, snapshot_key, generation_key, _ = mock_redis.eval.call_args[0]
        assert "INCR" in script and "DEL" in script
        assert numkeys == 2
        assert snapshot_key == f"test:{hash_key('d1', 'u1')}"
        assert generation_key == f"test:generation:{hash_key('d1', 'u1')}"

    @pytest.mark.asyncio
    async def test_invalidate_failure_returns_false(self, mock_redis):
        mock_redis.eval.side_effect = RedisConnectionError("gone")
        cache = ConsentCache(mock_redis)
        assert await cache.invalidate("d1", "u1") is False

    @pytest.mark.asyncio
    async def test_generation_defaults_to_zero(self, mock_redis):
        cache = ConsentCache(mock_redis)
        assert await cache.generation("d1", "u1") == "0"

    @pytest.mark.asyncio
    async def test_generation_unknown_on_error(self, mock_redis):
        mock_redis.get.side_effect = RedisConnectionError("refused")
        cache = ConsentCache(mock_redis)
        assert await cache.generation("d1", "u1") is None

    @pytest.mark.asyncio
    async def test_set_with_generation_is_conditional(self, mock_redis):
        cache = ConsentCache(mock_redis, prefix="test:", ttl_seconds=120)

        assert await cache.set("d1", "u1", SNAPSHOT, generation="3")

        mock_redis.set.assert_not_awaited()
        script, numkeys, _, generation_key, expected, payload, ttl = mock_redis.eval.call_args[0]
        assert "SET" in script
        assert numkeys == 2
        assert generation_key == f"test:generation:{hash_key('d1', 'u1')}"
        assert expected == "3"
        assert ConsentSnapshot.model_validate_json(payload) == SNAPSHOT
        assert ttl == 120

    @pytest.mark.asyncio
    async def test_set_skipped_after_invalidation(self, mock_redis):
        mock_redis.eval.return_value = 0
        cache = ConsentCache(mock_redis)

        assert await cache.set("d1", "u1", SNAPSHOT, generation="3") is False
        stats = await cache.get_stats()
        assert stats["stale_sets"] == 1
        assert stats["sets"] == 0

class TestInMemoryConsentCache:
    """Tests for the in-memory fallback cache."""

    @pytest.mark.asyncio
    async def test_set_and_get(self):
        cache = InMemoryConsentCache()
        await cache.set("d1", "u1", SNAPSHOT)
        cached = await cache.get("d1", "u1")
        assert cached == SNAPSHOT

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = InMemoryConsentCache(ttl_seconds=60, clock=clock)
        await cache.set("d1", "u1", SNAPSHOT)

        clock.now += 59
        assert await cache.get("d1", "u1") is not None
        clock.now += 1
        assert await cache.get("d1", "u1") is None

    @pytest.mark.asyncio
    async def test_evicts_oldest_at_capacity(self):
        clock = FakeClock()
        cache = InMemoryConsentCache(max_size=2, clock=clock)
        for user in ("u1", "u2", "u3"):
            await cache.set("d1", user, SNAPSHOT)
            clock.now += 1

        assert await cache.get("d1", "u1") is None
        assert await cache.get("d1", "u3") is not None
        assert (await cache.get_stats())["total_cached"] == 2

    @pytest.mark.asyncio
    async def test_invalidate(self):
        cache = InMemoryConsentCache()
        await cache.set("d1", "u1", SNAPSHOT)
        assert await cache.invalidate("d1", "u1")
        assert await cache.get("d1", "u1") is None

    @pytest.mark.asyncio
    async def test_invalidate_missing_key_succeeds(self):
        cache = InMemoryConsentCache()
        assert await cache.invalidate("d1", "nobody")

    @pytest.mark.asyncio
    async def test_set_with_current_generation(self):
        cache = InMemoryConsentCache()
        generation = await cache.generation("d1", "u1")

        assert await cache.set("d1", "u1", SNAPSHOT, generation=generation)
        assert await cache.get("d1", "u1") == SNAPSHOT

    @pytest.mark.asyncio
    async def test_set_rejected_after_invalidation(self):
        cache = InMemoryConsentCache()
        generation = await cache.generation("d1", "u1")

        await cache.invalidate("d1", "u1")

        assert await cache.set("d1", "u1", SNAPSHOT, generation=generation) is False
        assert await cache.get("d1", "u1") is None
        assert (await cache.get_stats())["stale_sets"] == 1

    @pytest.mark.asyncio
    async def test_invalidating_other_key_keeps_generation(self):
        cache = InMemoryConsentCache()
        generation = await cache.generation("d1", "u1")

        await cache.invalidate("d1", "u2")

        assert await cache.set("d1", "u1", SNAPSHOT, generation=generation)

    @pytest.mark.asyncio
    async def test_generation_never_repeats_after_eviction(self):
        cache = InMemoryConsentCache(max_size=1)
        generation = await cache.generation("d1", "u1")

        await cache.invalidate("d1", "u1")
        # Pushes u1 out of the generation table
        await cache.invalidate("d1", "u2")

        assert await cache.generation("d1", "u1") != generation
        assert await cache.set("d1", "u1", SNAPSHOT, generation=generation) is False


class TestCreateConsentCache:
    """Tests for cache construction."""

    @pytest.mark.asyncio
    async def test_memory_when_redis_not_configured(self):
        cache = await create_consent_cache(Settings(_env_file=None, redis_url=None))
        assert isinstance(cache, InMemoryConsentCache)

    @pytest.mark.asyncio
    async def test_redis_when_reachable(self):
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        with patch("redis.asyncio.from_url", return_value=client):
            cache = await create_consent_cache(
                Settings(_env_file=None, redis_url="redis://localhost:6379/0")
            )
        assert isinstance(cache, ConsentCache)

    @pytest.mark.asyncio
    async def test_falls_back_to_memory_when_unreachable(self):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        with patch("redis.asyncio.from_url", return_value=client):
            cache = await create_consent_cache(
                Settings(_env_file=None, redis_url="redis://localhost:6379/0")
            )
        assert isinstance(cache, InMemoryConsentCache)
