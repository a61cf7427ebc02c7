"""
Compliance Evaluator

Scores administrative changes against fixed accountability rules and writes
the resulting risk assessment back onto the audit record.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import structlog

from consent_ledger.models.audit import (
    AdminContext,
    AuditRecord,
    AutomaticCheck,
    FlaggedIssue,
    IssueSeverity,
    RiskAssessment,
)
from consent_ledger.repositories.base import AuditRepository

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ComplianceRule:
    name: str
    description: str
    check: Callable[[AdminContext], bool]


COMPLIANCE_RULES: tuple[ComplianceRule, ...] = (
    ComplianceRule(
        name="hasRegulationReference",
        description="Change must cite a regulatory reference",
        check=lambda ctx: bool(ctx.regulatory_reference),
    ),
    ComplianceRule(
        name="hasApprovalChain",
        description="Change must carry an approval chain",
        check=lambda ctx: isinstance(ctx.approval_chain, list) and len(ctx.approval_chain) > 0,
    ),
    ComplianceRule(
        name="hasChangeReason",
        description="Change must state a reason",
        check=lambda ctx: bool(ctx.change_reason),
    ),
)


def assess(
    admin_context: AdminContext | None,
    regulation_reference: str,
    rules: tuple[ComplianceRule, ...] = COMPLIANCE_RULES,
) -> RiskAssessment:
    """Run every rule; score is the share of passed rules, 0-100."""
    context = admin_context or AdminContext()
    checks = [
        AutomaticCheck(check_name=rule.name, passed=rule.check(context), details=rule.description)
        for rule in rules
    ]
    passed = sum(1 for c in checks if c.passed)
    flagged = [
        FlaggedIssue(
            issue_type=c.check_name,
            severity=IssueSeverity.WARNING,
            description=c.details,
            regulation_reference=regulation_reference,
        )
        for c in checks
        if not c.passed
    ]
    return RiskAssessment(
        compliance_score=passed / len(checks) * 100 if checks else 100.0,
        flagged_issues=flagged,
        automatic_checks=checks,
    )


class ComplianceEvaluator:
    """Evaluates persisted admin-change audit records."""

    def __init__(
        self,
        audit_repository: AuditRepository,
        regulation_reference: str = "GDPR Art. 5 - Accountability",
    ):
        self._repository = audit_repository
        self._regulation_reference = regulation_reference
        self._logger = logger.bind(service="compliance_evaluator")

    async def evaluate_compliance(self, audit_record: AuditRecord) -> bool:
        """
        Score a record and write the assessment onto it.

        Returns:
            True if the assessment was stored. Failures are logged and
            reported as False; the audit record itself is left as written.
        """
        try:
            assessment = assess(audit_record.admin_context, self._regulation_reference)
            await self._repository.set_risk_assessment(audit_record.id, assessment)
        except Exception as e:
            self._logger.error(
                "compliance_evaluation_failed",
                audit_id=audit_record.id,
                error=str(e),
            )
            return False

        self._logger.info(
            "compliance_evaluated",
            audit_id=audit_record.id,
            compliance_score=assessment.compliance_score,
            flagged=len(assessment.flagged_issues),
        )
        return True
