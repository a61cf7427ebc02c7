"""
Verification Engine

Answers "may this user's data be processed for these purposes and vendors?"
from the cache or, on a miss, from the consent repository.

Verification fails closed: any repository failure answers has_consent=False.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime

import structlog

from consent_ledger.models.base import utc_now
from consent_ledger.models.consent import (
    ConsentSnapshot,
    VerificationDetails,
    VerificationResult,
)
from consent_ledger.monitoring.logging import bound_context
from consent_ledger.repositories.base import ConsentRepository
from consent_ledger.services.consent_cache import SnapshotCache

logger = structlog.get_logger(__name__)

NO_VALID_CONSENT = "No valid consent found"
STORE_UNAVAILABLE = "Consent store unavailable"


class VerificationEngine:
    """Lock-free, cache-first consent verification."""

    def __init__(
        self,
        repository: ConsentRepository,
        cache: SnapshotCache,
        cache_ttl_seconds: int = 300,
        repository_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._repository = repository
        self._cache = cache
        self._cache_ttl = cache_ttl_seconds
        self._timeout = repository_timeout_seconds
        self._clock = clock
        self._logger = logger.bind(service="verification_engine")

    @staticmethod
    def _deny(purposes: list[int], vendors: list[int], reason: str, from_cache: bool = False) -> VerificationResult:
        return VerificationResult(
            has_consent=False,
            details=VerificationDetails(
                purposes={pid: False for pid in purposes},
                vendors={vid: False for vid in vendors},
            ),
            reason=reason,
            from_cache=from_cache,
        )

    async def _load_snapshot(self, domain_id: str, user_id: str) -> ConsentSnapshot | None:
        """
        Read the active record and repopulate the cache. None if the store failed.

        The cache generation is read before the repository so that a write
        landing during the read keeps this snapshot out of the cache.
        """
        generation = await self._cache.generation(domain_id, user_id)
        try:
            record = await asyncio.wait_for(
                self._repository.find_active(domain_id, user_id), self._timeout
            )
        except Exception as e:
            self._logger.error(
                "verification_fail_closed",
                domain_id=domain_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

        snapshot = ConsentSnapshot.from_record(record)
        if generation is not None:
            await self._cache.set(
                domain_id, user_id, snapshot, ttl_seconds=self._cache_ttl, generation=generation
            )
        return snapshot

    async def verify(
        self,
        domain_id: str,
        user_id: str,
        required_purposes: Iterable[int] = (),
        required_vendors: Iterable[int] = (),
    ) -> VerificationResult:
        """
        Verify consent for every requested purpose and vendor.

        Ids missing from the active record count as not allowed, and
        has_consent is the AND over all requested ids. With nothing
        requested, has_consent reports whether an active record exists.
        """
        with bound_context(domain_id=domain_id, consent_operation="verify"):
            return await self._verify(domain_id, user_id, required_purposes, required_vendors)

    async def _verify(
        self,
        domain_id: str,
        user_id: str,
        required_purposes: Iterable[int],
        required_vendors: Iterable[int],
    ) -> VerificationResult:
        purposes = sorted(set(required_purposes))
        vendors = sorted(set(required_vendors))

        snapshot = await self._cache.get(domain_id, user_id)
        from_cache = snapshot is not None
        if snapshot is None:
            snapshot = await self._load_snapshot(domain_id, user_id)
            if snapshot is None:
                return self._deny(purposes, vendors, STORE_UNAVAILABLE)

        if not snapshot.is_active(self._clock()):
            return self._deny(purposes, vendors, NO_VALID_CONSENT, from_cache=from_cache)

        details = VerificationDetails(
            purposes={pid: snapshot.purposes.get(pid, False) for pid in purposes},
            vendors={vid: snapshot.vendors.get(vid, False) for vid in vendors},
        )
        has_consent = all(details.purposes.values()) and all(details.vendors.values())

        self._logger.debug(
            "consent_verified",
            domain_id=domain_id,
            has_consent=has_consent,
            from_cache=from_cache,
        )
        return VerificationResult(
            has_consent=has_consent,
            details=details,
            reason=None if has_consent else "Consent not granted for all requested ids",
            record_id=snapshot.record_id,
            from_cache=from_cache,
        )
