"""
Base Models and Common Types

Foundation classes for all consent ledger models.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


def generate_id() -> str:
    return str(uuid4())


def convert_neo4j_datetime(value: Any) -> datetime | None:
    """
    Convert Neo4j DateTime (or ISO string) to a timezone-aware datetime.

    None passes through so nullable timestamps stay null.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value
    # Neo4j DateTime object
    if hasattr(value, "to_native"):
        return convert_neo4j_datetime(value.to_native())
    if isinstance(value, str):
        return convert_neo4j_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")))
    return value


class LedgerModel(BaseModel):
    """Base model for all consent ledger entities with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        validate_assignment=True,
        use_enum_values=True,
    )


class TimestampMixin(BaseModel):
    """Mixin providing created_at and updated_at fields."""

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def convert_datetime(cls, v: Any) -> datetime:
        """Convert Neo4j DateTime to Python datetime."""
        return convert_neo4j_datetime(v) or utc_now()
