"""
Audit Record Integrity

Content hashing and keyed signatures for legal-proof audit records.

The "digital signature" is an HMAC-SHA512 over the record content keyed by
AUDIT_SIGNING_KEY. It detects tampering by anyone without the key; it is not
an asymmetric signature and gives no non-repudiation.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from consent_ledger.models.audit import AuditRecord, LegalProofInput

# Fields excluded from the signed content: the signature itself and the
# risk assessment, which is written after the record is created
UNSIGNED_FIELDS = {"security_info", "risk_assessment"}


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat(timespec="microseconds")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def canonical_json(data: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators, UTC ISO datetimes."""
    return json.dumps(_normalize(data), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def proof_content(
    client_id: str,
    user_id: str | None,
    action: str,
    resource_type: str,
    resource_id: str | None,
    metadata: dict[str, Any],
    context: dict[str, Any],
    legal_proof: LegalProofInput | None,
) -> dict[str, Any]:
    """The content a verification hash commits to."""
    proof = legal_proof or LegalProofInput()
    return {
        "client_id": client_id,
        "user_id": user_id,
        "action": action,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "metadata": metadata,
        "context": context,
        "consent_version": proof.consent_version,
        "consent_text": proof.consent_text,
        "displayed_texts": proof.displayed_texts,
    }


def compute_verification_hash(content: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(content).encode("utf-8")).hexdigest()


def signed_content(record: AuditRecord) -> dict[str, Any]:
    return record.model_dump(exclude=UNSIGNED_FIELDS)


def create_digital_signature(record: AuditRecord, signing_key: str) -> str:
    payload = canonical_json(signed_content(record)).encode("utf-8")
    return hmac.new(signing_key.encode("utf-8"), payload, hashlib.sha512).hexdigest()


def record_proof_content(record: AuditRecord) -> dict[str, Any]:
    return proof_content(
        client_id=record.client_id,
        user_id=record.user_id,
        action=str(record.action),
        resource_type=record.resource_type,
        resource_id=record.resource_id,
        metadata=record.metadata,
        context=record.context,
        legal_proof=record.legal_proof,
    )


def verify_audit_record(record: AuditRecord, signing_key: str) -> bool:
    """
    Recompute the verification hash and signature of a legal-proof record.

    Returns False for records without legal proof or security info.
    """
    if record.legal_proof is None or record.security_info is None:
        return False

    expected_hash = compute_verification_hash(record_proof_content(record))
    if not hmac.compare_digest(expected_hash, record.legal_proof.verification_hash):
        return False

    expected_signature = create_digital_signature(record, signing_key)
    return hmac.compare_digest(expected_signature, record.security_info.digital_signature)
