"""
Consent Models

Consent records, decisions, cache snapshots and verification results.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field, field_validator, model_validator

from consent_ledger.models.base import (
    LedgerModel,
    TimestampMixin,
    convert_neo4j_datetime,
    generate_id,
    utc_now,
)


class ConsentStatus(str, Enum):
    """Lifecycle states of a consent record."""

    VALID = "valid"            # The single active record for its key
    SUPERSEDED = "superseded"  # Replaced by a newer decision
    REVOKED = "revoked"        # Withdrawn, no replacement


class LegalBasis(str, Enum):
    """Legal basis a purpose is processed under."""

    CONSENT = "consent"
    LEGITIMATE_INTEREST = "legitimate_interest"
    LEGAL_OBLIGATION = "legal_obligation"


# ═══════════════════════════════════════════════════════════════
# DECISIONS
# ═══════════════════════════════════════════════════════════════


class PurposeDecision(LedgerModel):
    """A user's decision for one processing purpose."""

    id: int = Field(ge=1)
    name: str | None = None
    allowed: bool
    legal_basis: LegalBasis = Field(default=LegalBasis.CONSENT, validate_default=True)


class VendorDecision(LedgerModel):
    """A user's decision for one vendor."""

    id: int = Field(ge=1)
    name: str | None = None
    allowed: bool


class ConsentDecisions(LedgerModel):
    """Purpose and vendor decisions. Ids are unique within each list."""

    purposes: list[PurposeDecision] = Field(default_factory=list)
    vendors: list[VendorDecision] = Field(default_factory=list)

    @field_validator("purposes", "vendors")
    @classmethod
    def unique_ids(cls, v: list[Any]) -> list[Any]:
        seen: set[int] = set()
        for decision in v:
            if decision.id in seen:
                raise ValueError(f"Duplicate decision id {decision.id}")
            seen.add(decision.id)
        return v

    @property
    def purpose_ids(self) -> set[int]:
        return {p.id for p in self.purposes}

    @property
    def vendor_ids(self) -> set[int]:
        return {v.id for v in self.vendors}

    def purpose_map(self) -> dict[int, bool]:
        return {p.id: p.allowed for p in self.purposes}

    def vendor_map(self) -> dict[int, bool]:
        return {v.id: v.allowed for v in self.vendors}


class ConsentValidity(LedgerModel):
    """Validity window of a consent record."""

    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def convert_datetime(cls, v: Any) -> datetime | None:
        return convert_neo4j_datetime(v)

    def contains(self, at: datetime) -> bool:
        return self.start_time <= at and (self.end_time is None or self.end_time > at)


# ═══════════════════════════════════════════════════════════════
# RECORDS
# ═══════════════════════════════════════════════════════════════


class ConsentRecord(LedgerModel, TimestampMixin):
    """
    One consent decision for a (domain_id, user_id) key.

    At most one record per key has status VALID at any instant.
    """

    id: str = Field(default_factory=generate_id)
    domain_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    status: ConsentStatus = Field(default=ConsentStatus.VALID, validate_default=True)
    decisions: ConsentDecisions = Field(default_factory=ConsentDecisions)
    validity: ConsentValidity = Field(default_factory=ConsentValidity)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def is_active(self, now: datetime | None = None) -> bool:
        """Valid status and inside the validity window."""
        return self.status == ConsentStatus.VALID and self.validity.contains(now or utc_now())


class ConsentSnapshot(LedgerModel):
    """
    Cached view of the active record for a key.

    A snapshot with record_id None records that no active consent existed
    when it was taken.
    """

    record_id: str | None = None
    purposes: dict[int, bool] = Field(default_factory=dict)
    vendors: dict[int, bool] = Field(default_factory=dict)
    start_time: datetime | None = None
    end_time: datetime | None = None
    taken_at: datetime = Field(default_factory=utc_now)

    @field_validator("start_time", "end_time", "taken_at", mode="before")
    @classmethod
    def convert_datetime(cls, v: Any) -> datetime | None:
        return convert_neo4j_datetime(v)

    @classmethod
    def from_record(cls, record: ConsentRecord | None) -> ConsentSnapshot:
        if record is None:
            return cls()
        return cls(
            record_id=record.id,
            purposes=record.decisions.purpose_map(),
            vendors=record.decisions.vendor_map(),
            start_time=record.validity.start_time,
            end_time=record.validity.end_time,
        )

    @property
    def has_record(self) -> bool:
        return self.record_id is not None

    def is_active(self, now: datetime | None = None) -> bool:
        if self.record_id is None or self.start_time is None:
            return False
        now = now or utc_now()
        return self.start_time <= now and (self.end_time is None or self.end_time > now)


# ═══════════════════════════════════════════════════════════════
# VERIFICATION
# ═══════════════════════════════════════════════════════════════


class VerificationDetails(LedgerModel):
    purposes: dict[int, bool] = Field(default_factory=dict)
    vendors: dict[int, bool] = Field(default_factory=dict)


class VerificationResult(LedgerModel):
    """Answer to a verification query."""

    has_consent: bool
    details: VerificationDetails = Field(default_factory=VerificationDetails)
    reason: str | None = None
    record_id: str | None = None
    from_cache: bool = False

    @model_validator(mode="after")
    def consistent_answer(self) -> VerificationResult:
        # has_consent can never be True while a requested id is denied
        if self.has_consent and not all(
            [*self.details.purposes.values(), *self.details.vendors.values()]
        ):
            raise ValueError("has_consent cannot be True when a requested id is not allowed")
        return self
