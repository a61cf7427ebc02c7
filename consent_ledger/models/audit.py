"""
Audit Models

Append-only audit records with legal proof, security info, admin context
and the derived compliance risk assessment.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field, field_validator

from consent_ledger.models.base import (
    LedgerModel,
    convert_neo4j_datetime,
    generate_id,
    utc_now,
)


class AuditAction(str, Enum):
    """Actions an audit record can describe."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    GENERATE = "generate"
    CONSENT = "consent"
    VIEW = "view"


class ConsentChangeAction(str, Enum):
    """Kind of consent change carried in audit metadata."""

    CREATED = "created"
    UPDATED = "updated"
    REVOKED = "revoked"


class IssueSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# ═══════════════════════════════════════════════════════════════
# LEGAL PROOF
# ═══════════════════════════════════════════════════════════════


class ProofTimestamp(LedgerModel):
    iso: str
    unix: int
    precision: str = "millisecond"

    @classmethod
    def at(cls, moment: datetime) -> ProofTimestamp:
        return cls(iso=moment.isoformat(), unix=int(moment.timestamp()))


class LegalProofInput(LedgerModel):
    """What was shown to the user when the decision was taken."""

    consent_version: str | None = None
    consent_text: str | None = None
    displayed_texts: dict[str, Any] = Field(default_factory=dict)


class LegalProof(LegalProofInput):
    verification_hash: str
    timestamp: ProofTimestamp


class SecurityInfo(LedgerModel):
    # Keyed HMAC, not an asymmetric signature
    digital_signature: str
    access_log: list[dict[str, Any]] = Field(default_factory=list)
    modification_history: list[dict[str, Any]] = Field(default_factory=list)


class AdminContext(LedgerModel):
    change_reason: str | None = None
    regulatory_reference: str | None = None
    approval_chain: list[Any] | None = None


# ═══════════════════════════════════════════════════════════════
# RISK ASSESSMENT
# ═══════════════════════════════════════════════════════════════


class AutomaticCheck(LedgerModel):
    check_name: str
    passed: bool
    details: str


class FlaggedIssue(LedgerModel):
    issue_type: str
    severity: IssueSeverity = Field(default=IssueSeverity.WARNING, validate_default=True)
    description: str
    regulation_reference: str


class RiskAssessment(LedgerModel):
    compliance_score: float = Field(ge=0, le=100)
    flagged_issues: list[FlaggedIssue] = Field(default_factory=list)
    automatic_checks: list[AutomaticCheck] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
# AUDIT ENTRIES AND RECORDS
# ═══════════════════════════════════════════════════════════════


class AuditEntry(LedgerModel):
    """Input for an audit write, validated by the ledger."""

    client_id: str | None = None
    user_id: str | None = None
    action: str
    resource_type: str
    resource_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    legal_proof: LegalProofInput | None = None
    admin_context: AdminContext | None = None

    @field_validator("action", mode="before")
    @classmethod
    def enum_to_value(cls, v: Any) -> Any:
        return v.value if isinstance(v, Enum) else v


class AuditRecord(LedgerModel):
    """A persisted audit record. Only risk_assessment is written after creation."""

    id: str = Field(default_factory=generate_id)
    client_id: str = Field(min_length=1)
    user_id: str | None = None
    action: AuditAction
    resource_type: str
    resource_id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    legal_proof: LegalProof | None = None
    security_info: SecurityInfo | None = None
    admin_context: AdminContext | None = None
    risk_assessment: RiskAssessment | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def convert_datetime(cls, v: Any) -> datetime:
        return convert_neo4j_datetime(v) or utc_now()


class ConsentChange(LedgerModel):
    """One purpose or vendor whose allowed flag flipped."""

    id: int
    name: str
    from_: bool = Field(alias="from")
    to: bool


class ConsentDiff(LedgerModel):
    purposes: list[ConsentChange] = Field(default_factory=list)
    vendors: list[ConsentChange] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.purposes and not self.vendors


# ═══════════════════════════════════════════════════════════════
# QUERIES
# ═══════════════════════════════════════════════════════════════


class AuditQuery(LedgerModel):
    client_id: str | None = None
    action: AuditAction | None = None
    resource_type: str | None = None
    user_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None

    def matches(self, record: AuditRecord) -> bool:
        if self.client_id is not None and record.client_id != self.client_id:
            return False
        if self.action is not None and record.action != self.action:
            return False
        if self.resource_type is not None and record.resource_type != self.resource_type:
            return False
        if self.user_id is not None and record.user_id != self.user_id:
            return False
        if self.start is not None and record.timestamp < self.start:
            return False
        if self.end is not None and record.timestamp > self.end:
            return False
        return True


class AuditPage(LedgerModel):
    items: list[AuditRecord] = Field(default_factory=list)
    page: int
    limit: int
    total: int
    pages: int


class CountBucket(LedgerModel):
    key: str
    count: int


class AuditStats(LedgerModel):
    actions: list[CountBucket] = Field(default_factory=list)
    resource_types: list[CountBucket] = Field(default_factory=list)
    timeline: list[CountBucket] = Field(default_factory=list)
