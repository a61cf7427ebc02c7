"""
Consent Ledger Configuration Management

Centralized configuration using Pydantic Settings for type-safe environment
variable loading with validation.

SECURITY NOTE: The audit signing key and store credentials should be loaded
from a secure secrets manager in production. The development default for
AUDIT_SIGNING_KEY is accepted but logged as insecure outside development.
"""

import logging
import warnings
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEV_AUDIT_SIGNING_KEY = "dev-only-audit-signing-key-change-me-0123456789"

# 24-hex object id or canonical UUID
DEFAULT_SUBJECT_ID_PATTERN = (
    r"^(?:[0-9a-fA-F]{24}"
    r"|[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})$"
)


class SecurityWarning(UserWarning):
    """Warning for security-related issues (insecure configurations, etc.)."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ═══════════════════════════════════════════════════════════════
    # APPLICATION
    # ═══════════════════════════════════════════════════════════════
    app_name: str = Field(default="consent-ledger", description="Application name")
    app_env: Literal["development", "staging", "production", "testing"] = Field(
        default="development", description="Environment"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_json: bool = Field(default=False, description="Render logs as JSON")

    # ═══════════════════════════════════════════════════════════════
    # NEO4J DATABASE (Optional - in-memory stores when unset)
    # ═══════════════════════════════════════════════════════════════
    neo4j_uri: str | None = Field(default=None, description="Neo4j connection URI")
    neo4j_user: str = Field(default="neo4j", description="Neo4j username")
    neo4j_password: str | None = Field(default=None, description="Neo4j password")
    neo4j_database: str = Field(default="neo4j", description="Neo4j database name")

    # Connection Pool
    neo4j_max_connection_lifetime: int = Field(
        default=3600, description="Max connection lifetime in seconds"
    )
    neo4j_max_connection_pool_size: int = Field(
        default=50, ge=1, description="Max connection pool size"
    )
    neo4j_connection_timeout: int = Field(
        default=30, ge=1, description="Connection timeout in seconds"
    )

    # ═══════════════════════════════════════════════════════════════
    # REDIS CACHE (Optional)
    # ═══════════════════════════════════════════════════════════════
    redis_url: str | None = Field(default=None, description="Redis URL")
    redis_password: str | None = Field(default=None, description="Redis password")
    consent_cache_prefix: str = Field(
        default="consent_ledger:consent:", description="Redis key prefix for consent snapshots"
    )
    consent_cache_ttl_seconds: int = Field(
        default=300, ge=1, le=3600, description="Consent snapshot TTL (bounds staleness)"
    )
    consent_cache_max_size: int = Field(
        default=10000, ge=1, description="Max entries in the in-memory cache"
    )
    cache_timeout_seconds: float = Field(
        default=0.5, gt=0, le=10, description="Per-call cache timeout; a timeout is a miss"
    )

    # ═══════════════════════════════════════════════════════════════
    # CONSENT REPOSITORY
    # ═══════════════════════════════════════════════════════════════
    repository_timeout_seconds: float = Field(
        default=5.0, gt=0, le=60, description="Per-call repository timeout"
    )
    write_max_attempts: int = Field(
        default=5, ge=1, le=20, description="Attempts for a conflicting supersede+insert"
    )
    write_retry_backoff_seconds: float = Field(
        default=0.05, ge=0, le=5, description="Base backoff between write attempts"
    )

    # ═══════════════════════════════════════════════════════════════
    # AUDIT & COMPLIANCE
    # ═══════════════════════════════════════════════════════════════
    audit_signing_key: str = Field(
        default=DEV_AUDIT_SIGNING_KEY,
        description="Key for the audit record HMAC signature",
    )
    audit_subject_id_pattern: str = Field(
        default=DEFAULT_SUBJECT_ID_PATTERN,
        description="Regex a user id must match to be kept on an audit record",
    )
    compliance_regulation_reference: str = Field(
        default="GDPR Art. 5 - Accountability",
        description="Citation attached to flagged compliance issues",
    )

    @field_validator("audit_signing_key")
    @classmethod
    def validate_audit_signing_key(cls, v: str) -> str:
        if len(v) < 32:
            raise ValueError("Audit signing key must be at least 32 characters")
        if len(set(v)) < 10:
            raise ValueError("Audit signing key must have at least 10 unique characters")
        return v

    @model_validator(mode="after")
    def warn_on_insecure_defaults(self) -> "Settings":
        if self.app_env not in ("development", "testing") and self.audit_signing_key == DEV_AUDIT_SIGNING_KEY:
            logger.critical(
                "SECURITY CRITICAL: development audit signing key in use outside development. "
                "Set AUDIT_SIGNING_KEY from a secrets manager."
            )
            warnings.warn(
                "Development audit signing key used outside development.",
                SecurityWarning,
                stacklevel=2,
            )
        if self.neo4j_uri and not self.neo4j_password:
            raise ValueError("NEO4J_PASSWORD is required when NEO4J_URI is set")
        return self

    @property
    def use_neo4j(self) -> bool:
        return bool(self.neo4j_uri)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
