"""
Consent Ledger - Consent Verification Engine

Records, supersedes, revokes, caches and verifies end-user consent
decisions per (domain, user), with an append-only audit trail carrying
legal proof and compliance scoring.
"""

__version__ = "1.0.0"

from consent_ledger.bootstrap import ConsentLedger, build_consent_ledger
from consent_ledger.config import Settings, get_settings

__all__ = ["ConsentLedger", "build_consent_ledger", "Settings", "get_settings", "__version__"]
