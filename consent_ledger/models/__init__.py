"""
Consent Ledger Models

Pydantic models for consent records, audit records and their derived views.
"""

from consent_ledger.models.audit import (
    AdminContext,
    AuditAction,
    AuditEntry,
    AuditPage,
    AuditQuery,
    AuditRecord,
    AuditStats,
    AutomaticCheck,
    ConsentChange,
    ConsentChangeAction,
    ConsentDiff,
    CountBucket,
    FlaggedIssue,
    IssueSeverity,
    LegalProof,
    LegalProofInput,
    ProofTimestamp,
    RiskAssessment,
    SecurityInfo,
)
from consent_ledger.models.base import LedgerModel, TimestampMixin, generate_id, utc_now
from consent_ledger.models.consent import (
    ConsentDecisions,
    ConsentRecord,
    ConsentSnapshot,
    ConsentStatus,
    ConsentValidity,
    LegalBasis,
    PurposeDecision,
    VendorDecision,
    VerificationDetails,
    VerificationResult,
)

__all__ = [
    # Base
    "LedgerModel",
    "TimestampMixin",
    "generate_id",
    "utc_now",
    # Consent
    "ConsentDecisions",
    "ConsentRecord",
    "ConsentSnapshot",
    "ConsentStatus",
    "ConsentValidity",
    "LegalBasis",
    "PurposeDecision",
    "VendorDecision",
    "VerificationDetails",
    "VerificationResult",
    # Audit
    "AdminContext",
    "AuditAction",
    "AuditEntry",
    "AuditPage",
    "AuditQuery",
    "AuditRecord",
    "AuditStats",
    "AutomaticCheck",
    "ConsentChange",
    "ConsentChangeAction",
    "ConsentDiff",
    "CountBucket",
    "FlaggedIssue",
    "IssueSeverity",
    "LegalProof",
    "LegalProofInput",
    "ProofTimestamp",
    "RiskAssessment",
    "SecurityInfo",
]
