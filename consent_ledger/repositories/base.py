"""
Base Repositories

Storage contracts for consent and audit records. Implementations live in
consent_repository.py and audit_repository.py (Neo4j and in-memory).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

import structlog

from consent_ledger.models.audit import (
    AuditPage,
    AuditQuery,
    AuditRecord,
    AuditStats,
    RiskAssessment,
)
from consent_ledger.models.consent import ConsentRecord


class ConsentRepository(ABC):
    """
    Durable store of consent records.

    Writes that change which record is valid for a key are compare-and-swap
    operations on the id of the currently valid record, applied atomically.
    """

    def __init__(self) -> None:
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def initialize(self) -> None:
        """Create constraints and indexes. No-op for stores without schema."""
        return None

    @abstractmethod
    async def find_active(self, domain_id: str, user_id: str) -> ConsentRecord | None:
        """
        Return the valid record for a key, or None.

        Raises:
            ConsistencyError: More than one valid record exists
            StorageError: The store failed
        """
        ...

    @abstractmethod
    async def supersede_and_insert(
        self,
        expected_active_id: str | None,
        record: ConsentRecord,
        now: datetime,
    ) -> ConsentRecord:
        """
        Atomically supersede the valid record and insert a new valid one.

        The valid record for record's key must have id expected_active_id
        (None meaning no valid record). It is marked superseded with
        end_time=now in the same transactional unit as the insert.

        Raises:
            StaleRecordError: The valid record is not expected_active_id
            StorageError: The store failed; nothing was applied
        """
        ...

    @abstractmethod
    async def revoke_active(
        self,
        domain_id: str,
        user_id: str,
        expected_active_id: str,
        now: datetime,
    ) -> ConsentRecord:
        """
        Mark the valid record revoked with end_time=now.

        Raises:
            StaleRecordError: The valid record is not expected_active_id
            StorageError: The store failed
        """
        ...

    @abstractmethod
    async def find_by_key(
        self,
        domain_id: str,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ConsentRecord]:
        """All records for a key ordered by created_at ascending, optionally bounded."""
        ...

    @abstractmethod
    async def count_active(self, domain_id: str, user_id: str) -> int:
        ...


class AuditRepository(ABC):
    """
    Append-only store of audit records.

    The only mutation after append is the one-time risk assessment write.
    """

    def __init__(self) -> None:
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def initialize(self) -> None:
        return None

    @abstractmethod
    async def append(self, record: AuditRecord) -> AuditRecord:
        ...

    @abstractmethod
    async def get(self, audit_id: str) -> AuditRecord:
        """
        Raises:
            NotFoundError: Unknown audit id
        """
        ...

    @abstractmethod
    async def set_risk_assessment(self, audit_id: str, assessment: RiskAssessment) -> AuditRecord:
        """
        Attach the derived risk assessment to a record.

        Raises:
            NotFoundError: Unknown audit id
            ValidationError: The record already carries an assessment
        """
        ...

    @abstractmethod
    async def find(self, query: AuditQuery, page: int = 1, limit: int = 20) -> AuditPage:
        """Matching records, newest first, paginated."""
        ...

    @abstractmethod
    async def stats(self, query: AuditQuery) -> AuditStats:
        """Counts by action, by resource type and per UTC day."""
        ...


def page_count(total: int, limit: int) -> int:
    return (total + limit - 1) // limit if limit > 0 else 0
