"""
Consent Repository

Neo4j-backed and in-memory stores for consent records.

Both enforce the single-valid-record invariant the same way: a write names
the record it expects to be valid, and the store compares and swaps under
a per-key lock (a ConsentSubject node in Neo4j, an asyncio.Lock in memory).
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections import defaultdict
from datetime import datetime
from typing import Any

from neo4j.exceptions import DriverError, Neo4jError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from consent_ledger.database.client import RETRYABLE_EXCEPTIONS, Neo4jClient
from consent_ledger.errors import ConsistencyError, StaleRecordError, StorageError
from consent_ledger.models.base import convert_neo4j_datetime
from consent_ledger.models.consent import (
    ConsentDecisions,
    ConsentRecord,
    ConsentStatus,
    ConsentValidity,
)
from consent_ledger.repositories.base import ConsentRepository

Key = tuple[str, str]


# =============================================================================
# In-Memory Store
# =============================================================================


class InMemoryConsentRepository(ConsentRepository):
    """
    Process-local consent store.

    Used when Neo4j is not configured, and in tests. Records handed out are
    copies; callers never hold references into the store.
    """

    def __init__(self) -> None:
        super().__init__()
        self._records: dict[str, ConsentRecord] = {}
        self._by_key: dict[Key, list[str]] = defaultdict(list)
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count(1)
        self._locks: dict[Key, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _valid_ids(self, key: Key) -> list[str]:
        return [
            record_id
            for record_id in self._by_key.get(key, [])
            if self._records[record_id].status == ConsentStatus.VALID
        ]

    def _current_valid_id(self, key: Key) -> str | None:
        valid = self._valid_ids(key)
        if len(valid) > 1:
            self.logger.critical("consent_multiple_valid", domain_id=key[0], user_id=key[1], count=len(valid))
            raise ConsistencyError(
                f"{len(valid)} valid consent records", domain_id=key[0], user_id=key[1]
            )
        return valid[0] if valid else None

    async def find_active(self, domain_id: str, user_id: str) -> ConsentRecord | None:
        record_id = self._current_valid_id((domain_id, user_id))
        if record_id is None:
            return None
        return self._records[record_id].model_copy(deep=True)

    async def supersede_and_insert(
        self,
        expected_active_id: str | None,
        record: ConsentRecord,
        now: datetime,
    ) -> ConsentRecord:
        key = (record.domain_id, record.user_id)
        async with self._locks[key]:
            actual = self._current_valid_id(key)
            if actual != expected_active_id:
                raise StaleRecordError(expected_active_id, actual)

            stored = record.model_copy(deep=True)
            # Both mutations run without yielding to the event loop
            if actual is not None:
                previous = self._records[actual]
                previous.status = ConsentStatus.SUPERSEDED
                previous.validity.end_time = now
                previous.updated_at = now
            self._records[stored.id] = stored
            self._by_key[key].append(stored.id)
            self._sequence[stored.id] = next(self._counter)

        return stored.model_copy(deep=True)

    async def revoke_active(
        self,
        domain_id: str,
        user_id: str,
        expected_active_id: str,
        now: datetime,
    ) -> ConsentRecord:
        key = (domain_id, user_id)
        async with self._locks[key]:
            actual = self._current_valid_id(key)
            if actual != expected_active_id:
                raise StaleRecordError(expected_active_id, actual)
            record = self._records[actual]
            record.status = ConsentStatus.REVOKED
            record.validity.end_time = now
            record.updated_at = now
            return record.model_copy(deep=True)

    async def find_by_key(
        self,
        domain_id: str,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ConsentRecord]:
        records = [self._records[record_id] for record_id in self._by_key.get((domain_id, user_id), [])]
        if start is not None:
            records = [r for r in records if r.created_at >= start]
        if end is not None:
            records = [r for r in records if r.created_at <= end]
        records.sort(key=lambda r: (r.created_at, self._sequence[r.id]))
        return [r.model_copy(deep=True) for r in records]

    async def count_active(self, domain_id: str, user_id: str) -> int:
        return len(self._valid_ids((domain_id, user_id)))


# =============================================================================
# Neo4j Store
# =============================================================================


class Neo4jConsentRepository(ConsentRepository):
    """
    Neo4j-backed consent store.

    Each write first MERGEs the key's ConsentSubject node and bumps its
    revision, which takes a write lock on that node for the rest of the
    transaction. The revision doubles as a per-key insertion sequence.
    """

    SCHEMA_QUERIES = [
        "CREATE CONSTRAINT consent_record_id IF NOT EXISTS "
        "FOR (c:ConsentRecord) REQUIRE c.id IS UNIQUE",
        "CREATE CONSTRAINT consent_subject_key IF NOT EXISTS "
        "FOR (s:ConsentSubject) REQUIRE (s.domain_id, s.user_id) IS UNIQUE",
        "CREATE INDEX consent_record_key IF NOT EXISTS "
        "FOR (c:ConsentRecord) ON (c.domain_id, c.user_id, c.status)",
    ]

    LOCK_SUBJECT_QUERY = """
    MERGE (s:ConsentSubject {domain_id: $domain_id, user_id: $user_id})
    SET s.revision = coalesce(s.revision, 0) + 1
    RETURN s.revision AS revision
    """

    VALID_IDS_QUERY = """
    MATCH (c:ConsentRecord {domain_id: $domain_id, user_id: $user_id, status: 'valid'})
    RETURN c.id AS id
    """

    def __init__(self, client: Neo4jClient):
        super().__init__()
        self.client = client

    async def initialize(self) -> None:
        try:
            for query in self.SCHEMA_QUERIES:
                await self.client.execute(query)
        except (Neo4jError, DriverError) as e:
            raise StorageError(f"Failed to create consent schema: {e}") from e
        self.logger.info("consent_schema_ready")

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_params(record: ConsentRecord) -> dict[str, Any]:
        return {
            "id": record.id,
            "domain_id": record.domain_id,
            "user_id": record.user_id,
            "status": ConsentStatus(record.status).value,
            "decisions": record.decisions.model_dump_json(),
            "metadata": json.dumps(record.metadata),
            "start_time": record.validity.start_time.isoformat(),
            "end_time": record.validity.end_time.isoformat() if record.validity.end_time else None,
            "created_at": record.created_at.isoformat(),
            "updated_at": record.updated_at.isoformat(),
        }

    @staticmethod
    def _to_record(node: Any) -> ConsentRecord:
        data = dict(node)
        decisions = data.get("decisions") or "{}"
        metadata = data.get("metadata") or "{}"
        return ConsentRecord(
            id=data["id"],
            domain_id=data["domain_id"],
            user_id=data["user_id"],
            status=data["status"],
            decisions=ConsentDecisions.model_validate_json(decisions),
            validity=ConsentValidity(
                start_time=convert_neo4j_datetime(data.get("start_time")),
                end_time=convert_neo4j_datetime(data.get("end_time")),
            ),
            metadata=json.loads(metadata),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )

    # -------------------------------------------------------------------------
    # Transaction helpers
    # -------------------------------------------------------------------------

    async def _valid_ids_in_tx(self, tx: Any, domain_id: str, user_id: str) -> list[str]:
        result = await tx.run(self.VALID_IDS_QUERY, domain_id=domain_id, user_id=user_id)
        return [row["id"] async for row in result]

    async def _lock_and_compare(
        self,
        tx: Any,
        domain_id: str,
        user_id: str,
        expected_active_id: str | None,
    ) -> int:
        result = await tx.run(self.LOCK_SUBJECT_QUERY, domain_id=domain_id, user_id=user_id)
        row = await result.single()
        revision = row["revision"]

        valid = await self._valid_ids_in_tx(tx, domain_id, user_id)
        if len(valid) > 1:
            self.logger.critical("consent_multiple_valid", domain_id=domain_id, user_id=user_id, count=len(valid))
            raise ConsistencyError(f"{len(valid)} valid consent records", domain_id=domain_id, user_id=user_id)
        actual = valid[0] if valid else None
        if actual != expected_active_id:
            raise StaleRecordError(expected_active_id, actual)
        return revision

    async def _run_retrying(self, operation: Any) -> Any:
        """Run a transactional operation, retrying transient driver errors."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(3),
                wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
                retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
                reraise=True,
            ):
                with attempt:
                    return await operation()
        except (Neo4jError, DriverError) as e:
            self.logger.error("consent_store_error", error=str(e))
            raise StorageError(str(e)) from e

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def find_active(self, domain_id: str, user_id: str) -> ConsentRecord | None:
        query = """
        MATCH (c:ConsentRecord {domain_id: $domain_id, user_id: $user_id, status: 'valid'})
        RETURN c
        """
        try:
            rows = await self.client.execute(query, {"domain_id": domain_id, "user_id": user_id})
        except (Neo4jError, DriverError) as e:
            self.logger.error("consent_find_active_error", domain_id=domain_id, error=str(e))
            raise StorageError(str(e)) from e

        if len(rows) > 1:
            self.logger.critical("consent_multiple_valid", domain_id=domain_id, user_id=user_id, count=len(rows))
            raise ConsistencyError(f"{len(rows)} valid consent records", domain_id=domain_id, user_id=user_id)
        return self._to_record(rows[0]["c"]) if rows else None

    async def supersede_and_insert(
        self,
        expected_active_id: str | None,
        record: ConsentRecord,
        now: datetime,
    ) -> ConsentRecord:
        supersede_query = """
        MATCH (c:ConsentRecord {id: $id, status: 'valid'})
        SET c.status = 'superseded',
            c.end_time = datetime($now),
            c.updated_at = datetime($now)
        """
        create_query = """
        CREATE (c:ConsentRecord {
            id: $id,
            domain_id: $domain_id,
            user_id: $user_id,
            status: $status,
            decisions: $decisions,
            metadata: $metadata,
            start_time: datetime($start_time),
            end_time: CASE WHEN $end_time IS NULL THEN null ELSE datetime($end_time) END,
            created_at: datetime($created_at),
            updated_at: datetime($updated_at),
            revision: $revision
        })
        RETURN c
        """

        async def _write() -> ConsentRecord:
            async with self.client.transaction() as tx:
                revision = await self._lock_and_compare(
                    tx, record.domain_id, record.user_id, expected_active_id
                )
                if expected_active_id is not None:
                    await tx.run(supersede_query, id=expected_active_id, now=now.isoformat())
                result = await tx.run(create_query, revision=revision, **self._to_params(record))
                row = await result.single()
                return self._to_record(row["c"])

        return await self._run_retrying(_write)

    async def revoke_active(
        self,
        domain_id: str,
        user_id: str,
        expected_active_id: str,
        now: datetime,
    ) -> ConsentRecord:
        revoke_query = """
        MATCH (c:ConsentRecord {id: $id, status: 'valid'})
        SET c.status = 'revoked',
            c.end_time = datetime($now),
            c.updated_at = datetime($now)
        RETURN c
        """

        async def _write() -> ConsentRecord:
            async with self.client.transaction() as tx:
                await self._lock_and_compare(tx, domain_id, user_id, expected_active_id)
                result = await tx.run(revoke_query, id=expected_active_id, now=now.isoformat())
                row = await result.single()
                return self._to_record(row["c"])

        return await self._run_retrying(_write)

    async def find_by_key(
        self,
        domain_id: str,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ConsentRecord]:
        query = """
        MATCH (c:ConsentRecord {domain_id: $domain_id, user_id: $user_id})
        WHERE ($start IS NULL OR c.created_at >= datetime($start))
          AND ($end IS NULL OR c.created_at <= datetime($end))
        RETURN c
        ORDER BY c.created_at ASC, c.revision ASC
        """
        params = {
            "domain_id": domain_id,
            "user_id": user_id,
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
        }
        try:
            rows = await self.client.execute(query, params)
        except (Neo4jError, DriverError) as e:
            self.logger.error("consent_history_error", domain_id=domain_id, error=str(e))
            raise StorageError(str(e)) from e
        return [self._to_record(row["c"]) for row in rows]

    async def count_active(self, domain_id: str, user_id: str) -> int:
        query = """
        MATCH (c:ConsentRecord {domain_id: $domain_id, user_id: $user_id, status: 'valid'})
        RETURN count(c) AS count
        """
        try:
            row = await self.client.execute_single(query, {"domain_id": domain_id, "user_id": user_id})
        except (Neo4jError, DriverError) as e:
            raise StorageError(str(e)) from e
        return int(row["count"]) if row else 0
