"""
Consent Ledger Repositories

Data access layer for consent and audit records, with Neo4j and
in-memory implementations of each store.
"""

from consent_ledger.repositories.audit_repository import (
    InMemoryAuditRepository,
    Neo4jAuditRepository,
)
from consent_ledger.repositories.base import AuditRepository, ConsentRepository
from consent_ledger.repositories.consent_repository import (
    InMemoryConsentRepository,
    Neo4jConsentRepository,
)

__all__ = [
    "ConsentRepository",
    "AuditRepository",
    "InMemoryConsentRepository",
    "Neo4jConsentRepository",
    "InMemoryAuditRepository",
    "Neo4jAuditRepository",
]
