"""
Audit Ledger Service

Records every consent change and administrative action as an append-only
audit record. Consent-change logging never raises: a failed audit write is
logged and reported as None so the consent write path is unaffected.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

import structlog

from consent_ledger.errors import ValidationError
from consent_ledger.models.audit import (
    AdminContext,
    AuditAction,
    AuditEntry,
    AuditPage,
    AuditQuery,
    AuditRecord,
    AuditStats,
    ConsentChange,
    ConsentChangeAction,
    ConsentDiff,
    LegalProof,
    LegalProofInput,
    ProofTimestamp,
    SecurityInfo,
)
from consent_ledger.models.consent import ConsentDecisions, ConsentRecord
from consent_ledger.repositories.base import AuditRepository
from consent_ledger.services.catalog import CatalogProvider, DomainResolver, VendorCatalog
from consent_ledger.services.compliance import ComplianceEvaluator
from consent_ledger.services.integrity import (
    compute_verification_hash,
    create_digital_signature,
    proof_content,
    verify_audit_record,
)

logger = structlog.get_logger(__name__)

ANONYMOUS_USER_IDS = {"", "anonymous"}
MAX_PAGE_SIZE = 100


def diff_decisions(
    old: ConsentDecisions | None,
    new: ConsentDecisions | None,
    catalog: VendorCatalog | None = None,
) -> ConsentDiff:
    """
    Purposes and vendors whose allowed flag flipped.

    Only ids present on both sides are compared; additions and removals are
    not reported.
    """
    if old is None or new is None:
        return ConsentDiff()

    def _changes(before: list[Any], after: list[Any], label: str, lookup: Any) -> list[ConsentChange]:
        previous = {d.id: d for d in before}
        changes = []
        for decision in sorted(after, key=lambda d: d.id):
            prior = previous.get(decision.id)
            if prior is None or prior.allowed == decision.allowed:
                continue
            name = decision.name or prior.name or (lookup(decision.id) if catalog else None)
            changes.append(
                ConsentChange(
                    id=decision.id,
                    name=name or f"{label} {decision.id}",
                    from_=prior.allowed,
                    to=decision.allowed,
                )
            )
        return changes

    return ConsentDiff(
        purposes=_changes(
            old.purposes, new.purposes, "Purpose", catalog.purpose_name if catalog else None
        ),
        vendors=_changes(
            old.vendors, new.vendors, "Vendor", catalog.vendor_name if catalog else None
        ),
    )


class AuditLedger:
    """Append-only audit trail with legal proof and compliance scoring."""

    def __init__(
        self,
        repository: AuditRepository,
        domain_resolver: DomainResolver,
        compliance: ComplianceEvaluator,
        signing_key: str,
        subject_id_pattern: str,
        catalog: CatalogProvider | None = None,
    ):
        self._repository = repository
        self._domains = domain_resolver
        self._compliance = compliance
        self._signing_key = signing_key
        self._subject_pattern = re.compile(subject_id_pattern)
        self._catalog = catalog
        self._logger = logger.bind(service="audit_ledger")

    # =========================================================================
    # Record construction
    # =========================================================================

    def _clean_user_id(self, user_id: str | None) -> str | None:
        if user_id is None or user_id.strip() in ANONYMOUS_USER_IDS:
            return None
        if not self._subject_pattern.match(user_id):
            self._logger.warning("audit_user_id_dropped", reason="invalid_format")
            return None
        return user_id

    def _build_record(self, entry: AuditEntry) -> AuditRecord:
        if not entry.client_id:
            raise ValidationError("client_id is required for audit logging")
        valid_actions = [a.value for a in AuditAction]
        if entry.action not in valid_actions:
            raise ValidationError(
                f"Invalid action: {entry.action}. Valid actions are: {', '.join(valid_actions)}"
            )

        return AuditRecord(
            client_id=entry.client_id,
            user_id=self._clean_user_id(entry.user_id),
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            metadata=entry.metadata,
            context=entry.context,
        )

    # =========================================================================
    # Core Audit Operations
    # =========================================================================

    async def log_action(self, entry: AuditEntry) -> AuditRecord:
        """
        Append an audit record.

        Raises:
            ValidationError: Missing client_id or unknown action
            DependencyUnavailable: The audit store failed
        """
        record = self._build_record(entry)
        stored = await self._repository.append(record)
        self._logger.debug("audit_logged", audit_id=stored.id, action=stored.action)
        return stored

    async def log_action_with_legal_proof(self, entry: AuditEntry) -> AuditRecord:
        """
        Append an audit record carrying legal proof of what the user saw.

        The verification hash commits to the entry content; the signature
        covers the whole record including the proof.
        """
        record = self._build_record(entry)
        proof_input = entry.legal_proof or LegalProofInput()

        verification_hash = compute_verification_hash(
            proof_content(
                client_id=record.client_id,
                user_id=record.user_id,
                action=str(record.action),
                resource_type=record.resource_type,
                resource_id=record.resource_id,
                metadata=record.metadata,
                context=record.context,
                legal_proof=proof_input,
            )
        )
        record.legal_proof = LegalProof(
            consent_version=proof_input.consent_version,
            consent_text=proof_input.consent_text,
            displayed_texts=proof_input.displayed_texts,
            verification_hash=verification_hash,
            timestamp=ProofTimestamp.at(record.timestamp),
        )
        record.security_info = SecurityInfo(
            digital_signature=create_digital_signature(record, self._signing_key),
        )

        stored = await self._repository.append(record)
        self._logger.info("audit_logged_with_legal_proof", audit_id=stored.id, action=stored.action)
        return stored

    async def log_consent_change(
        self,
        domain_id: str,
        user_id: str,
        action: ConsentChangeAction | str,
        old_consent: ConsentRecord | None,
        new_consent: ConsentRecord | None,
        legal_proof: LegalProofInput | None = None,
    ) -> AuditRecord | None:
        """
        Audit a consent change. Never raises.

        Returns:
            The audit record, or None if the domain is unknown or the
            write failed
        """
        try:
            client_id = await self._domains.resolve_client_id(domain_id)
            if not client_id:
                self._logger.warning("audit_domain_unresolved", domain_id=domain_id)
                return None

            metadata: dict[str, Any] = {
                "consent_action": ConsentChangeAction(action).value,
                "user_id": user_id,
            }
            if old_consent is not None and new_consent is not None:
                catalog = await self._catalog.get_catalog() if self._catalog else None
                diff = diff_decisions(old_consent.decisions, new_consent.decisions, catalog)
                metadata["changes"] = diff.model_dump(by_alias=True)

            if new_consent is not None:
                resource_id = new_consent.id
            elif old_consent is not None:
                resource_id = old_consent.id
            else:
                resource_id = domain_id

            entry = AuditEntry(
                client_id=client_id,
                user_id=user_id,
                action=AuditAction.CONSENT.value,
                resource_type="consent",
                resource_id=resource_id,
                metadata=metadata,
                context={"domain_id": domain_id, "user_id": user_id},
                legal_proof=legal_proof,
            )
            if legal_proof is not None:
                return await self.log_action_with_legal_proof(entry)
            return await self.log_action(entry)

        except Exception as e:
            self._logger.error(
                "audit_consent_change_failed",
                domain_id=domain_id,
                error=str(e),
            )
            return None

    async def log_admin_change(self, entry: AuditEntry) -> AuditRecord:
        """
        Append an administrative change and score it for compliance.

        The returned record carries the risk assessment when scoring
        succeeded; a scoring failure leaves the audit record as written.
        """
        record = self._build_record(entry)
        record.admin_context = entry.admin_context or AdminContext()
        stored = await self._repository.append(record)

        if await self._compliance.evaluate_compliance(stored):
            return await self._repository.get(stored.id)
        return stored

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, audit_id: str) -> AuditRecord:
        return await self._repository.get(audit_id)

    async def find(
        self,
        client_id: str | None = None,
        action: AuditAction | str | None = None,
        resource_type: str | None = None,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> AuditPage:
        """Matching audit records, newest first."""
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
        query = AuditQuery(
            client_id=client_id,
            action=action,
            resource_type=resource_type,
            user_id=user_id,
            start=start,
            end=end,
        )
        return await self._repository.find(query, page=page, limit=limit)

    async def get_stats(
        self,
        client_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> AuditStats:
        return await self._repository.stats(AuditQuery(client_id=client_id, start=start, end=end))

    async def verify_integrity(self, audit_id: str) -> bool:
        """
        Recompute hash and signature of a stored legal-proof record.

        Raises:
            NotFoundError: Unknown audit id
        """
        record = await self._repository.get(audit_id)
        valid = verify_audit_record(record, self._signing_key)
        if not valid:
            self._logger.warning("audit_integrity_mismatch", audit_id=audit_id)
        return valid
