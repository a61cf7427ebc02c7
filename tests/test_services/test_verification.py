"""
Tests for Verification Engine

Tests cover:
- Allowed, denied and never-decided ids
- Fail-closed answers when the repository fails or times out
- Cache hits, misses and negative snapshots
- Expired snapshots
- Reads that overlap a write never cache the superseded record
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from conftest import DOMAIN_ID, USER_ID, decisions
from redis.exceptions import ConnectionError as RedisConnectionError

from consent_ledger.bootstrap import wire_components
from consent_ledger.errors import StorageError
from consent_ledger.models.consent import ConsentSnapshot
from consent_ledger.repositories.consent_repository import InMemoryConsentRepository
from consent_ledger.services.consent_cache import ConsentCache, InMemoryConsentCache
from consent_ledger.services.verification import (
    NO_VALID_CONSENT,
    STORE_UNAVAILABLE,
    VerificationEngine,
)


class PausedReadRepository(InMemoryConsentRepository):
    """Holds the next find_active after it has read, until released."""

    def __init__(self):
        super().__init__()
        self.pause_next_read = False
        self.read_done = asyncio.Event()
        self.release = asyncio.Event()

    async def find_active(self, domain_id, user_id):
        active = await super().find_active(domain_id, user_id)
        if self.pause_next_read:
            self.pause_next_read = False
            self.read_done.set()
            await self.release.wait()
        return active


class TestVerify:
    """Verification against records written through the lifecycle manager."""

    @pytest.mark.asyncio
    async def test_granted_purpose_and_vendor(self, ledger):
        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: True}, {1: True}))

        result = await ledger.verification.verify(DOMAIN_ID, USER_ID, [1], [1])

        assert result.has_consent is True
        assert result.details.purposes == {1: True}
        assert result.details.vendors == {1: True}
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_update_to_denied_is_seen_immediately(self, ledger):
        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: True}))
        assert (await ledger.verification.verify(DOMAIN_ID, USER_ID, [1])).has_consent

        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: False}))

        result = await ledger.verification.verify(DOMAIN_ID, USER_ID, [1])
        assert result.has_consent is False
        assert result.details.purposes == {1: False}

    @pytest.mark.asyncio
    async def test_never_decided_id_is_denied(self, ledger):
        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: True}))

        result = await ledger.verification.verify(DOMAIN_ID, USER_ID, [99])

        assert result.has_consent is False
        assert result.details.purposes == {99: False}

    @pytest.mark.asyncio
    async def test_one_denied_id_denies_all(self, ledger):
        await ledger.lifecycle.create_or_update(
            DOMAIN_ID, USER_ID, decisions({1: True, 2: True}, {755: False})
        )

        result = await ledger.verification.verify(DOMAIN_ID, USER_ID, [1, 2], [755])

        assert result.has_consent is False
        assert result.details.purposes == {1: True, 2: True}
        assert result.details.vendors == {755: False}

    @pytest.mark.asyncio
    async def test_unknown_key_is_denied(self, ledger):
        result = await ledger.verification.verify(DOMAIN_ID, "nobody", [1], [1])

        assert result.has_consent is False
        assert result.reason == NO_VALID_CONSENT
        assert result.details.purposes == {1: False}
        assert result.details.vendors == {1: False}

    @pytest.mark.asyncio
    async def test_revoked_consent_is_denied(self, ledger):
        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: True}))
        await ledger.verification.verify(DOMAIN_ID, USER_ID, [1])

        await ledger.lifecycle.revoke(DOMAIN_ID, USER_ID)

        result = await ledger.verification.verify(DOMAIN_ID, USER_ID, [1])
        assert result.has_consent is False
        assert result.reason == NO_VALID_CONSENT

    @pytest.mark.asyncio
    async def test_nothing_requested_reports_record_presence(self, ledger):
        assert not (await ledger.verification.verify(DOMAIN_ID, USER_ID)).has_consent

        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: False}))

        result = await ledger.verification.verify(DOMAIN_ID, USER_ID)
        assert result.has_consent is True
        assert result.details.purposes == {}

    @pytest.mark.asyncio
    async def test_duplicate_requested_ids_collapse(self, ledger):
        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: True}))
        result = await ledger.verification.verify(DOMAIN_ID, USER_ID, [1, 1, 1])
        assert result.details.purposes == {1: True}


class TestFailClosed:
    """Repository failures must never read as consent."""

    @pytest.mark.asyncio
    async def test_repository_error_denies(self, cache):
        repository = AsyncMock()
        repository.find_active.side_effect = StorageError("database down")
        engine = VerificationEngine(repository, cache)

        result = await engine.verify(DOMAIN_ID, USER_ID, [1], [1])

        assert result.has_consent is False
        assert result.reason == STORE_UNAVAILABLE
        assert result.details.purposes == {1: False}
        assert result.details.vendors == {1: False}

    @pytest.mark.asyncio
    async def test_unexpected_error_denies(self, cache):
        repository = AsyncMock()
        repository.find_active.side_effect = RuntimeError("driver bug")
        engine = VerificationEngine(repository, cache)

        assert (await engine.verify(DOMAIN_ID, USER_ID, [1])).has_consent is False

    @pytest.mark.asyncio
    async def test_repository_timeout_denies(self, cache):
        async def hang(domain_id, user_id):
            await asyncio.sleep(1)

        repository = AsyncMock()
        repository.find_active.side_effect = hang
        engine = VerificationEngine(repository, cache, repository_timeout_seconds=0.01)

        result = await engine.verify(DOMAIN_ID, USER_ID, [1])
        assert result.has_consent is False
        assert result.reason == STORE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self, cache):
        repository = AsyncMock()
        repository.find_active.side_effect = StorageError("database down")
        engine = VerificationEngine(repository, cache)

        await engine.verify(DOMAIN_ID, USER_ID, [1])

        assert await cache.get(DOMAIN_ID, USER_ID) is None


class TestCaching:
    """Cache interaction."""

    @pytest.mark.asyncio
    async def test_miss_populates_cache_then_hits(self, ledger):
        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: True}))

        first = await ledger.verification.verify(DOMAIN_ID, USER_ID, [1])
        second = await ledger.verification.verify(DOMAIN_ID, USER_ID, [1])

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.record_id == first.record_id

    @pytest.mark.asyncio
    async def test_absence_is_cached(self, cache):
        repository = AsyncMock()
        repository.find_active.return_value = None
        engine = VerificationEngine(repository, cache)

        await engine.verify(DOMAIN_ID, USER_ID, [1])
        result = await engine.verify(DOMAIN_ID, USER_ID, [1])

        assert result.has_consent is False
        assert result.from_cache is True
        assert repository.find_active.await_count == 1

    @pytest.mark.asyncio
    async def test_write_invalidates_negative_snapshot(self, ledger):
        await ledger.verification.verify(DOMAIN_ID, USER_ID, [1])

        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: True}))

        assert (await ledger.verification.verify(DOMAIN_ID, USER_ID, [1])).has_consent

    @pytest.mark.asyncio
    async def test_expired_snapshot_is_denied(self):
        now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        cache = InMemoryConsentCache()
        await cache.set(
            DOMAIN_ID,
            USER_ID,
            ConsentSnapshot(
                record_id="rec-1",
                purposes={1: True},
                start_time=now - timedelta(days=30),
                end_time=now - timedelta(seconds=1),
            ),
        )
        repository = AsyncMock()
        engine = VerificationEngine(repository, cache, clock=lambda: now)

        result = await engine.verify(DOMAIN_ID, USER_ID, [1])

        assert result.has_consent is False
        assert result.reason == NO_VALID_CONSENT
        repository.find_active.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cache_failure_falls_through_to_repository(self, mock_redis, consent_repository):
        mock_redis.get.side_effect = RedisConnectionError("refused")
        mock_redis.set.side_effect = RedisConnectionError("refused")
        engine = VerificationEngine(consent_repository, ConsentCache(mock_redis))

        result = await engine.verify(DOMAIN_ID, USER_ID, [1])

        assert result.has_consent is False
        assert result.reason == NO_VALID_CONSENT


class TestReadDuringWrite:
    """A verification read that overlaps a write."""

    @pytest.mark.asyncio
    async def test_superseded_read_is_not_cached(self, settings, audit_repository, cache, catalog, domain_resolver):
        repository = PausedReadRepository()
        ledger = wire_components(settings, repository, audit_repository, cache, catalog, domain_resolver)
        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: True}))

        repository.pause_next_read = True
        pending = asyncio.create_task(ledger.verification.verify(DOMAIN_ID, USER_ID, [1]))
        await repository.read_done.wait()

        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: False}))
        repository.release.set()
        overlapping = await pending

        after = await ledger.verification.verify(DOMAIN_ID, USER_ID, [1])

        assert overlapping.has_consent is True
        assert after.has_consent is False
        assert after.from_cache is False
        assert (await cache.get_stats())["stale_sets"] == 1

    @pytest.mark.asyncio
    async def test_revoke_during_read_is_not_undone(self, settings, audit_repository, cache, catalog, domain_resolver):
        repository = PausedReadRepository()
        ledger = wire_components(settings, repository, audit_repository, cache, catalog, domain_resolver)
        await ledger.lifecycle.create_or_update(DOMAIN_ID, USER_ID, decisions({1: True}))

        repository.pause_next_read = True
        pending = asyncio.create_task(ledger.verification.verify(DOMAIN_ID, USER_ID, [1]))
        await repository.read_done.wait()

        await ledger.lifecycle.revoke(DOMAIN_ID, USER_ID)
        repository.release.set()
        await pending

        after = await ledger.verification.verify(DOMAIN_ID, USER_ID, [1])
        assert after.has_consent is False
        assert after.reason == NO_VALID_CONSENT

    @pytest.mark.asyncio
    async def test_unknown_generation_skips_cache_write(self, mock_redis, consent_repository):
        mock_redis.get.side_effect = RedisConnectionError("refused")
        engine = VerificationEngine(consent_repository, ConsentCache(mock_redis))

        await engine.verify(DOMAIN_ID, USER_ID, [1])

        mock_redis.eval.assert_not_awaited()
        mock_redis.set.assert_not_awaited()
