"""
Consent Lifecycle Manager

Creates, supersedes and revokes consent records, keeping at most one valid
record per (domain_id, user_id).

Each write reads the current valid record, then asks the repository to swap
it for the new record atomically. A concurrent writer that got there first
makes the swap fail with StaleRecordError, and the write is retried from
the read. As soon as a write commits, the cached snapshot is invalidated
and a consent-change audit record is appended, before any post-write check.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

import pydantic
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from consent_ledger.errors import (
    ConsistencyError,
    InvalidReferenceError,
    StaleRecordError,
    StorageError,
    ValidationError,
)
from consent_ledger.models.audit import ConsentChangeAction, LegalProofInput
from consent_ledger.models.base import utc_now
from consent_ledger.models.consent import (
    ConsentDecisions,
    ConsentRecord,
    ConsentValidity,
)
from consent_ledger.monitoring.logging import bound_context, log_duration
from consent_ledger.repositories.base import ConsentRepository
from consent_ledger.services.audit_ledger import AuditLedger
from consent_ledger.services.catalog import CatalogProvider, VendorCatalog
from consent_ledger.services.consent_cache import SnapshotCache

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ConsentLifecycleManager:
    """Owns every write to the consent repository."""

    def __init__(
        self,
        repository: ConsentRepository,
        cache: SnapshotCache,
        audit_ledger: AuditLedger,
        catalog: CatalogProvider,
        max_attempts: int = 5,
        retry_backoff_seconds: float = 0.05,
        repository_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._repository = repository
        self._cache = cache
        self._audit = audit_ledger
        self._catalog = catalog
        self._max_attempts = max_attempts
        self._backoff = retry_backoff_seconds
        self._timeout = repository_timeout_seconds
        self._clock = clock
        self._logger = logger.bind(service="consent_lifecycle")

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Await a repository call under the repository timeout."""
        try:
            return await asyncio.wait_for(awaitable, self._timeout)
        except TimeoutError as e:
            raise StorageError(f"Consent repository timed out after {self._timeout}s") from e

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_random_exponential(multiplier=self._backoff, max=self._backoff * 20),
            retry=retry_if_exception_type(StaleRecordError),
        )

    @staticmethod
    def _require_key(domain_id: str, user_id: str) -> None:
        if not domain_id or not domain_id.strip():
            raise ValidationError("domain_id is required")
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required")

    @staticmethod
    def _coerce_decisions(decisions: ConsentDecisions | dict[str, Any]) -> ConsentDecisions:
        if isinstance(decisions, ConsentDecisions):
            return decisions.model_copy(deep=True)
        try:
            return ConsentDecisions.model_validate(decisions)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid decisions: {e}") from e

    def _check_references(self, decisions: ConsentDecisions, catalog: VendorCatalog) -> None:
        unknown_purposes = catalog.unknown_purposes(decisions.purpose_ids)
        unknown_vendors = catalog.unknown_vendors(decisions.vendor_ids)
        if unknown_purposes or unknown_vendors:
            self._logger.warning(
                "consent_invalid_reference",
                unknown_purposes=unknown_purposes,
                unknown_vendors=unknown_vendors,
            )
            raise InvalidReferenceError(unknown_purposes, unknown_vendors)

    @staticmethod
    def _with_catalog_names(decisions: ConsentDecisions, catalog: VendorCatalog) -> ConsentDecisions:
        for purpose in decisions.purposes:
            if purpose.name is None:
                purpose.name = catalog.purpose_name(purpose.id)
        for vendor in decisions.vendors:
            if vendor.name is None:
                vendor.name = catalog.vendor_name(vendor.id)
        return decisions

    async def _check_single_valid(
        self,
        domain_id: str,
        user_id: str,
        cause: Exception | None = None,
    ) -> None:
        """Raise ConsistencyError if the key holds more than one valid record."""
        count = await self._call(self._repository.count_active(domain_id, user_id))
        if count > 1:
            self._logger.critical(
                "consent_invariant_violated",
                domain_id=domain_id,
                user_id=user_id,
                valid_records=count,
            )
            raise ConsistencyError(
                f"Found {count} valid consent records for one key",
                domain_id=domain_id,
                user_id=user_id,
            ) from cause

    async def _invalidate(self, domain_id: str, user_id: str) -> None:
        if not await self._cache.invalidate(domain_id, user_id):
            # Stale snapshot expires with its TTL
            self._logger.warning("consent_cache_invalidate_failed", domain_id=domain_id)

    async def _after_failed_write(self, domain_id: str, user_id: str, error: StorageError) -> None:
        """A failed write may still have committed, so drop the snapshot and check the key."""
        await self._invalidate(domain_id, user_id)
        try:
            await self._check_single_valid(domain_id, user_id, cause=error)
        except StorageError as check_error:
            self._logger.error(
                "consent_consistency_check_unavailable",
                domain_id=domain_id,
                error=str(error),
                check_error=str(check_error),
            )

    async def _after_committed_write(
        self,
        domain_id: str,
        user_id: str,
        action: ConsentChangeAction,
        old_consent: ConsentRecord | None,
        new_consent: ConsentRecord | None,
        legal_proof: LegalProofInput | None = None,
    ) -> None:
        """
        Invalidate and audit a committed write, then check the key.

        The write stands whatever happens here. An unavailable recount is
        logged; only a key holding several valid records raises.
        """
        try:
            await self._invalidate(domain_id, user_id)
        finally:
            await self._audit.log_consent_change(
                domain_id, user_id, action, old_consent, new_consent, legal_proof=legal_proof
            )

        try:
            await self._check_single_valid(domain_id, user_id)
        except StorageError as e:
            self._logger.error(
                "consent_consistency_check_unavailable",
                domain_id=domain_id,
                consent_action=action.value,
                error=str(e),
            )

    async def _swap_once(
        self,
        domain_id: str,
        user_id: str,
        decisions: ConsentDecisions,
        metadata: dict[str, Any],
    ) -> tuple[ConsentRecord | None, ConsentRecord]:
        """One read-then-swap attempt. Raises StaleRecordError if another writer won."""
        previous = await self._call(self._repository.find_active(domain_id, user_id))
        now = self._clock()
        record = ConsentRecord(
            domain_id=domain_id,
            user_id=user_id,
            decisions=decisions,
            validity=ConsentValidity(start_time=now),
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        stored = await self._call(
            self._repository.supersede_and_insert(previous.id if previous else None, record, now)
        )
        return previous, stored

    async def _revoke_once(self, domain_id: str, user_id: str) -> ConsentRecord | None:
        current = await self._call(self._repository.find_active(domain_id, user_id))
        if current is None:
            return None
        return await self._call(
            self._repository.revoke_active(domain_id, user_id, current.id, self._clock())
        )

    # =========================================================================
    # Operations
    # =========================================================================

    async def create_or_update(
        self,
        domain_id: str,
        user_id: str,
        decisions: ConsentDecisions | dict[str, Any],
        metadata: dict[str, Any] | None = None,
        legal_proof: LegalProofInput | None = None,
    ) -> ConsentRecord:
        """
        Record a new consent decision for a key.

        Supersedes the current valid record (if any) and inserts the new one
        as a single atomic swap. Once the swap commits, the cached snapshot is
        invalidated and the change is audited before anything else can fail.

        Raises:
            ValidationError: Malformed key or decisions
            InvalidReferenceError: Unknown purpose or vendor ids; nothing written
            ConsistencyError: Conflicting writes did not settle, or the key
                holds more than one valid record
            StorageError: The swap failed or timed out; the cached snapshot
                has been invalidated in case it committed
        """
        self._require_key(domain_id, user_id)
        parsed = self._coerce_decisions(decisions)
        catalog = await self._catalog.get_catalog()
        self._check_references(parsed, catalog)
        parsed = self._with_catalog_names(parsed, catalog)

        with bound_context(domain_id=domain_id, consent_operation="create_or_update"):
            try:
                with log_duration(self._logger, "consent_write", domain_id=domain_id):
                    previous, stored = await self._retrying()(
                        self._swap_once, domain_id, user_id, parsed, metadata or {}
                    )
            except RetryError as e:
                self._logger.critical(
                    "consent_write_contention",
                    domain_id=domain_id,
                    attempts=self._max_attempts,
                )
                raise ConsistencyError(
                    f"Consent write did not settle after {self._max_attempts} attempts",
                    domain_id=domain_id,
                    user_id=user_id,
                ) from e
            except StorageError as e:
                await self._after_failed_write(domain_id, user_id, e)
                raise

            action = ConsentChangeAction.UPDATED if previous else ConsentChangeAction.CREATED
            await self._after_committed_write(
                domain_id, user_id, action, previous, stored, legal_proof=legal_proof
            )

            self._logger.info(
                "consent_recorded",
                domain_id=domain_id,
                consent_id=stored.id,
                superseded_id=previous.id if previous else None,
                purposes=len(stored.decisions.purposes),
                vendors=len(stored.decisions.vendors),
            )
            return stored

    async def revoke(self, domain_id: str, user_id: str) -> None:
        """
        Revoke the valid record for a key.

        No valid record is a no-op: nothing is written, invalidated or audited.
        """
        self._require_key(domain_id, user_id)

        with bound_context(domain_id=domain_id, consent_operation="revoke"):
            try:
                revoked = await self._retrying()(self._revoke_once, domain_id, user_id)
            except RetryError as e:
                raise ConsistencyError(
                    f"Consent revoke did not settle after {self._max_attempts} attempts",
                    domain_id=domain_id,
                    user_id=user_id,
                ) from e
            except StorageError as e:
                await self._after_failed_write(domain_id, user_id, e)
                raise

            if revoked is None:
                self._logger.debug("consent_revoke_noop", domain_id=domain_id)
                return

            await self._after_committed_write(
                domain_id, user_id, ConsentChangeAction.REVOKED, revoked, None
            )
            self._logger.info("consent_revoked", domain_id=domain_id, consent_id=revoked.id)

    async def history(
        self,
        domain_id: str,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ConsentRecord]:
        """
        All records for a key, oldest first.

        The list is a snapshot; later writes do not change it.
        """
        self._require_key(domain_id, user_id)
        if start is not None and end is not None and start > end:
            raise ValidationError("start must not be after end")
        return await self._call(self._repository.find_by_key(domain_id, user_id, start, end))

    async def get_current(self, domain_id: str, user_id: str) -> ConsentRecord | None:
        """The valid record for a key, read from the repository."""
        self._require_key(domain_id, user_id)
        return await self._call(self._repository.find_active(domain_id, user_id))
