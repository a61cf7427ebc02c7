"""
Audit Repository

Append-only audit storage. Nested structures (metadata, legal proof,
security info, admin context, risk assessment) are stored as JSON strings
on the Neo4j node.
"""

from __future__ import annotations

import json
from collections import Counter
from typing import Any

from neo4j.exceptions import DriverError, Neo4jError

from consent_ledger.database.client import Neo4jClient
from consent_ledger.errors import DependencyUnavailable, NotFoundError, ValidationError
from consent_ledger.models.audit import (
    AuditPage,
    AuditQuery,
    AuditRecord,
    AuditStats,
    CountBucket,
    RiskAssessment,
)
from consent_ledger.repositories.base import AuditRepository, page_count

JSON_FIELDS = ("metadata", "context", "legal_proof", "security_info", "admin_context", "risk_assessment")


def _buckets(counter: Counter[str], by_key: bool = False) -> list[CountBucket]:
    if by_key:
        items = sorted(counter.items())
    else:
        items = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))
    return [CountBucket(key=key, count=count) for key, count in items]


class InMemoryAuditRepository(AuditRepository):
    """Process-local audit store."""

    def __init__(self) -> None:
        super().__init__()
        self._records: dict[str, AuditRecord] = {}

    async def append(self, record: AuditRecord) -> AuditRecord:
        if record.id in self._records:
            raise ValidationError(f"Audit record {record.id} already exists")
        self._records[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def get(self, audit_id: str) -> AuditRecord:
        record = self._records.get(audit_id)
        if record is None:
            raise NotFoundError(f"Audit record {audit_id} not found")
        return record.model_copy(deep=True)

    async def set_risk_assessment(self, audit_id: str, assessment: RiskAssessment) -> AuditRecord:
        record = self._records.get(audit_id)
        if record is None:
            raise NotFoundError(f"Audit record {audit_id} not found")
        if record.risk_assessment is not None:
            raise ValidationError(f"Audit record {audit_id} already has a risk assessment")
        record.risk_assessment = assessment.model_copy(deep=True)
        return record.model_copy(deep=True)

    def _matching(self, query: AuditQuery) -> list[AuditRecord]:
        return [r for r in self._records.values() if query.matches(r)]

    async def find(self, query: AuditQuery, page: int = 1, limit: int = 20) -> AuditPage:
        matching = sorted(self._matching(query), key=lambda r: r.timestamp, reverse=True)
        offset = (page - 1) * limit
        return AuditPage(
            items=[r.model_copy(deep=True) for r in matching[offset:offset + limit]],
            page=page,
            limit=limit,
            total=len(matching),
            pages=page_count(len(matching), limit),
        )

    async def stats(self, query: AuditQuery) -> AuditStats:
        matching = self._matching(query)
        return AuditStats(
            actions=_buckets(Counter(str(r.action) for r in matching)),
            resource_types=_buckets(Counter(r.resource_type for r in matching)),
            timeline=_buckets(Counter(r.timestamp.date().isoformat() for r in matching), by_key=True),
        )


class Neo4jAuditRepository(AuditRepository):
    """Neo4j-backed audit store."""

    SCHEMA_QUERIES = [
        "CREATE CONSTRAINT audit_record_id IF NOT EXISTS "
        "FOR (a:AuditRecord) REQUIRE a.id IS UNIQUE",
        "CREATE INDEX audit_record_client IF NOT EXISTS "
        "FOR (a:AuditRecord) ON (a.client_id, a.timestamp)",
    ]

    def __init__(self, client: Neo4jClient):
        super().__init__()
        self.client = client

    async def initialize(self) -> None:
        try:
            for query in self.SCHEMA_QUERIES:
                await self.client.execute(query)
        except (Neo4jError, DriverError) as e:
            raise DependencyUnavailable(f"Failed to create audit schema: {e}") from e
        self.logger.info("audit_schema_ready")

    @staticmethod
    def _to_params(record: AuditRecord) -> dict[str, Any]:
        data = record.model_dump(mode="json")
        params = {
            "id": data["id"],
            "client_id": data["client_id"],
            "user_id": data["user_id"],
            "action": data["action"],
            "resource_type": data["resource_type"],
            "resource_id": data["resource_id"],
            "timestamp": data["timestamp"],
        }
        for field in JSON_FIELDS:
            params[field] = json.dumps(data[field]) if data[field] is not None else None
        return params

    @staticmethod
    def _to_record(node: Any) -> AuditRecord:
        data = dict(node)
        for field in JSON_FIELDS:
            raw = data.get(field)
            data[field] = json.loads(raw) if raw else None
        data["metadata"] = data["metadata"] or {}
        data["context"] = data["context"] or {}
        return AuditRecord.model_validate(data)

    @staticmethod
    def _where(query: AuditQuery) -> tuple[str, dict[str, Any]]:
        clauses = []
        params: dict[str, Any] = {}
        if query.client_id is not None:
            clauses.append("a.client_id = $client_id")
            params["client_id"] = query.client_id
        if query.action is not None:
            clauses.append("a.action = $action")
            params["action"] = str(query.action)
        if query.resource_type is not None:
            clauses.append("a.resource_type = $resource_type")
            params["resource_type"] = query.resource_type
        if query.user_id is not None:
            clauses.append("a.user_id = $user_id")
            params["user_id"] = query.user_id
        if query.start is not None:
            clauses.append("a.timestamp >= datetime($start)")
            params["start"] = query.start.isoformat()
        if query.end is not None:
            clauses.append("a.timestamp <= datetime($end)")
            params["end"] = query.end.isoformat()
        return ("WHERE " + " AND ".join(clauses)) if clauses else "", params

    async def _execute(self, query: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            return await self.client.execute(query, params)
        except (Neo4jError, DriverError) as e:
            self.logger.error("audit_store_error", error=str(e))
            raise DependencyUnavailable(str(e)) from e

    async def append(self, record: AuditRecord) -> AuditRecord:
        query = """
        CREATE (a:AuditRecord {
            id: $id,
            client_id: $client_id,
            user_id: $user_id,
            action: $action,
            resource_type: $resource_type,
            resource_id: $resource_id,
            timestamp: datetime($timestamp),
            metadata: $metadata,
            context: $context,
            legal_proof: $legal_proof,
            security_info: $security_info,
            admin_context: $admin_context,
            risk_assessment: $risk_assessment
        })
        RETURN a
        """
        rows = await self._execute(query, self._to_params(record))
        return self._to_record(rows[0]["a"])

    async def get(self, audit_id: str) -> AuditRecord:
        rows = await self._execute("MATCH (a:AuditRecord {id: $id}) RETURN a", {"id": audit_id})
        if not rows:
            raise NotFoundError(f"Audit record {audit_id} not found")
        return self._to_record(rows[0]["a"])

    async def set_risk_assessment(self, audit_id: str, assessment: RiskAssessment) -> AuditRecord:
        query = """
        MATCH (a:AuditRecord {id: $id})
        WHERE a.risk_assessment IS NULL
        SET a.risk_assessment = $risk_assessment
        RETURN a
        """
        rows = await self._execute(
            query, {"id": audit_id, "risk_assessment": assessment.model_dump_json()}
        )
        if rows:
            return self._to_record(rows[0]["a"])
        # Distinguish a missing record from one already assessed
        await self.get(audit_id)
        raise ValidationError(f"Audit record {audit_id} already has a risk assessment")

    async def find(self, query: AuditQuery, page: int = 1, limit: int = 20) -> AuditPage:
        where, params = self._where(query)
        count_rows = await self._execute(
            f"MATCH (a:AuditRecord) {where} RETURN count(a) AS total", params
        )
        total = int(count_rows[0]["total"]) if count_rows else 0
        rows = await self._execute(
            f"MATCH (a:AuditRecord) {where} RETURN a ORDER BY a.timestamp DESC SKIP $skip LIMIT $limit",
            {**params, "skip": (page - 1) * limit, "limit": limit},
        )
        return AuditPage(
            items=[self._to_record(row["a"]) for row in rows],
            page=page,
            limit=limit,
            total=total,
            pages=page_count(total, limit),
        )

    async def stats(self, query: AuditQuery) -> AuditStats:
        where, params = self._where(query)
        actions = await self._execute(
            f"MATCH (a:AuditRecord) {where} RETURN a.action AS key, count(a) AS count", params
        )
        resource_types = await self._execute(
            f"MATCH (a:AuditRecord) {where} RETURN a.resource_type AS key, count(a) AS count", params
        )
        timeline = await self._execute(
            f"MATCH (a:AuditRecord) {where} "
            "RETURN toString(date(a.timestamp)) AS key, count(a) AS count",
            params,
        )
        return AuditStats(
            actions=_buckets(Counter({r["key"]: int(r["count"]) for r in actions})),
            resource_types=_buckets(Counter({r["key"]: int(r["count"]) for r in resource_types})),
            timeline=_buckets(Counter({r["key"]: int(r["count"]) for r in timeline}), by_key=True),
        )
