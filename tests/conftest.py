"""
Consent Ledger - Test Fixtures

Shared pytest fixtures for all test modules.
"""

from __future__ import annotations

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

# =============================================================================
# TEST ENVIRONMENT SETUP
# =============================================================================
# TEST-ONLY values. Stores default to in-memory; no Neo4j or Redis is needed.

_current_env = os.environ.get("APP_ENV", "")
if _current_env == "production":
    raise RuntimeError(
        "Test fixtures cannot be loaded in production environment. "
        "Do not import conftest.py in production code."
    )

os.environ["APP_ENV"] = "testing"
os.environ.setdefault(
    "AUDIT_SIGNING_KEY", "test-audit-signing-key-at-least-32-characters"
)  # TEST ONLY

from consent_ledger.bootstrap import ConsentLedger, wire_components  # noqa: E402
from consent_ledger.config import Settings  # noqa: E402
from consent_ledger.repositories.audit_repository import InMemoryAuditRepository  # noqa: E402
from consent_ledger.repositories.consent_repository import InMemoryConsentRepository  # noqa: E402
from consent_ledger.services.catalog import (  # noqa: E402
    StaticCatalogProvider,
    StaticDomainResolver,
    VendorCatalog,
)
from consent_ledger.services.consent_cache import InMemoryConsentCache  # noqa: E402

DOMAIN_ID = "domain-example-com"
USER_ID = "visitor-7f3a"
CLIENT_ID = "65a1f0c2e4b0a1b2c3d4e5f6"
ADMIN_USER_ID = "65a1f0c2e4b0a1b2c3d4e5aa"

TEST_VENDORS = {
    1: "Exponential Interactive",
    2: "Captify Technologies",
    755: "Google Advertising Products",
}


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any .env file, with instant write retries."""
    return Settings(
        _env_file=None,
        app_env="testing",
        audit_signing_key="test-audit-signing-key-at-least-32-characters",
        write_max_attempts=5,
        write_retry_backoff_seconds=0,
        repository_timeout_seconds=2.0,
    )


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def catalog() -> StaticCatalogProvider:
    return StaticCatalogProvider(VendorCatalog(vendors=dict(TEST_VENDORS)))


@pytest.fixture
def domain_resolver() -> StaticDomainResolver:
    return StaticDomainResolver({DOMAIN_ID: CLIENT_ID})


# =============================================================================
# Stores
# =============================================================================


@pytest.fixture
def consent_repository() -> InMemoryConsentRepository:
    return InMemoryConsentRepository()


@pytest.fixture
def audit_repository() -> InMemoryAuditRepository:
    return InMemoryAuditRepository()


@pytest.fixture
def cache() -> InMemoryConsentCache:
    return InMemoryConsentCache(max_size=100, ttl_seconds=300)


@pytest.fixture
def ledger(
    settings,
    consent_repository,
    audit_repository,
    cache,
    catalog,
    domain_resolver,
) -> ConsentLedger:
    """Fully wired in-memory component graph."""
    return wire_components(
        settings,
        consent_repository,
        audit_repository,
        cache,
        catalog,
        domain_resolver,
    )


# =============================================================================
# Mock Clients
# =============================================================================


@pytest.fixture
def mock_db_client():
    """Create a mock Neo4j client."""
    client = AsyncMock()
    client.execute = AsyncMock(return_value=[])
    client.execute_single = AsyncMock(return_value=None)
    client.connect = AsyncMock()
    client.close = AsyncMock()
    client._driver = MagicMock()
    return client


@pytest.fixture
def mock_redis():
    """Create a mock async Redis client."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.eval = AsyncMock(return_value=1)
    redis.scan = AsyncMock(return_value=(0, []))
    redis.aclose = AsyncMock()
    return redis


# =============================================================================
# Decision payloads
# =============================================================================


def decisions(purposes: dict[int, bool] | None = None, vendors: dict[int, bool] | None = None) -> dict:
    """Build a decisions payload from {id: allowed} maps."""
    return {
        "purposes": [{"id": pid, "allowed": allowed} for pid, allowed in (purposes or {}).items()],
        "vendors": [{"id": vid, "allowed": allowed} for vid, allowed in (vendors or {}).items()],
    }
