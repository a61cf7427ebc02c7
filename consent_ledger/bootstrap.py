"""
Consent Ledger - Component Initialization

Builds every component once from settings and wires them together.
Nothing here is global: callers hold the returned ConsentLedger and
close it on shutdown.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from consent_ledger.config import Settings, get_settings
from consent_ledger.database.client import Neo4jClient
from consent_ledger.errors import StorageError
from consent_ledger.monitoring.logging import configure_logging
from consent_ledger.repositories.audit_repository import (
    InMemoryAuditRepository,
    Neo4jAuditRepository,
)
from consent_ledger.repositories.base import AuditRepository, ConsentRepository
from consent_ledger.repositories.consent_repository import (
    InMemoryConsentRepository,
    Neo4jConsentRepository,
)
from consent_ledger.services.audit_ledger import AuditLedger
from consent_ledger.services.catalog import (
    CatalogProvider,
    DomainResolver,
    StaticCatalogProvider,
    StaticDomainResolver,
)
from consent_ledger.services.compliance import ComplianceEvaluator
from consent_ledger.services.consent_cache import SnapshotCache, create_consent_cache
from consent_ledger.services.lifecycle import ConsentLifecycleManager
from consent_ledger.services.verification import VerificationEngine

logger = structlog.get_logger(__name__)


@dataclass
class ConsentLedger:
    """The wired component graph."""

    settings: Settings
    consent_repository: ConsentRepository
    audit_repository: AuditRepository
    cache: SnapshotCache
    audit_ledger: AuditLedger
    compliance: ComplianceEvaluator
    verification: VerificationEngine
    lifecycle: ConsentLifecycleManager
    db_client: Neo4jClient | None = None

    async def close(self) -> None:
        await self.cache.close()
        if self.db_client is not None:
            await self.db_client.close()
        logger.info("consent_ledger_closed")


def wire_components(
    settings: Settings,
    consent_repository: ConsentRepository,
    audit_repository: AuditRepository,
    cache: SnapshotCache,
    catalog: CatalogProvider,
    domain_resolver: DomainResolver,
    db_client: Neo4jClient | None = None,
) -> ConsentLedger:
    """Assemble services around already-built stores."""
    compliance = ComplianceEvaluator(
        audit_repository,
        regulation_reference=settings.compliance_regulation_reference,
    )
    audit_ledger = AuditLedger(
        audit_repository,
        domain_resolver,
        compliance,
        signing_key=settings.audit_signing_key,
        subject_id_pattern=settings.audit_subject_id_pattern,
        catalog=catalog,
    )
    verification = VerificationEngine(
        consent_repository,
        cache,
        cache_ttl_seconds=settings.consent_cache_ttl_seconds,
        repository_timeout_seconds=settings.repository_timeout_seconds,
    )
    lifecycle = ConsentLifecycleManager(
        consent_repository,
        cache,
        audit_ledger,
        catalog,
        max_attempts=settings.write_max_attempts,
        retry_backoff_seconds=settings.write_retry_backoff_seconds,
        repository_timeout_seconds=settings.repository_timeout_seconds,
    )
    return ConsentLedger(
        settings=settings,
        consent_repository=consent_repository,
        audit_repository=audit_repository,
        cache=cache,
        audit_ledger=audit_ledger,
        compliance=compliance,
        verification=verification,
        lifecycle=lifecycle,
        db_client=db_client,
    )


async def build_consent_ledger(
    settings: Settings | None = None,
    catalog: CatalogProvider | None = None,
    domain_resolver: DomainResolver | None = None,
    configure_logs: bool = True,
) -> ConsentLedger:
    """
    Build the consent ledger from configuration.

    Neo4j stores are used when NEO4J_URI is set, otherwise in-memory stores.
    The cache uses Redis when REDIS_URL is set and reachable, otherwise memory.
    """
    settings = settings or get_settings()
    if configure_logs:
        configure_logging(level=settings.log_level, json_output=settings.log_json)

    logger.info("initializing_consent_ledger", app_env=settings.app_env)

    db_client: Neo4jClient | None = None
    consent_repository: ConsentRepository
    audit_repository: AuditRepository
    if settings.use_neo4j:
        db_client = Neo4jClient(settings)
        await db_client.connect()
        consent_repository = Neo4jConsentRepository(db_client)
        audit_repository = Neo4jAuditRepository(db_client)
    else:
        logger.warning("neo4j_not_configured_using_memory")
        consent_repository = InMemoryConsentRepository()
        audit_repository = InMemoryAuditRepository()

    try:
        if db_client is not None:
            health = await db_client.health_check()
            if health["status"] != "healthy":
                raise StorageError(f"Neo4j health check failed: {health.get('error')}")
            logger.info("neo4j_health_check_passed", database=health["database"])
        await consent_repository.initialize()
        await audit_repository.initialize()
        cache = await create_consent_cache(settings)
    except Exception:
        if db_client is not None:
            await db_client.close()
        raise

    ledger = wire_components(
        settings,
        consent_repository,
        audit_repository,
        cache,
        catalog or StaticCatalogProvider(),
        domain_resolver or StaticDomainResolver(),
        db_client=db_client,
    )
    logger.info(
        "consent_ledger_initialized",
        store="neo4j" if db_client else "memory",
        cache=type(cache).__name__,
    )
    return ledger
