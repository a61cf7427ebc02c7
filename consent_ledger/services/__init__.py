"""
Consent Ledger Services

Lifecycle, verification, caching, audit and compliance services.
"""

from consent_ledger.services.audit_ledger import AuditLedger, diff_decisions
from consent_ledger.services.catalog import (
    CatalogProvider,
    DomainResolver,
    StaticCatalogProvider,
    StaticDomainResolver,
    VendorCatalog,
)
from consent_ledger.services.compliance import ComplianceEvaluator
from consent_ledger.services.consent_cache import (
    ConsentCache,
    InMemoryConsentCache,
    create_consent_cache,
)
from consent_ledger.services.lifecycle import ConsentLifecycleManager
from consent_ledger.services.verification import VerificationEngine

__all__ = [
    "AuditLedger",
    "diff_decisions",
    "CatalogProvider",
    "DomainResolver",
    "StaticCatalogProvider",
    "StaticDomainResolver",
    "VendorCatalog",
    "ComplianceEvaluator",
    "ConsentCache",
    "InMemoryConsentCache",
    "create_consent_cache",
    "ConsentLifecycleManager",
    "VerificationEngine",
]
