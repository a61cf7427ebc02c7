"""
Consent Ledger Database Layer

Neo4j integration for consent and audit storage.
"""

from consent_ledger.database.client import RETRYABLE_EXCEPTIONS, Neo4jClient

__all__ = [
    "Neo4jClient",
    "RETRYABLE_EXCEPTIONS",
]
