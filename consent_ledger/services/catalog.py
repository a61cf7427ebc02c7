"""
Catalog and Domain Collaborators

Interfaces to the services that own the vendor list and the domain registry,
plus static implementations for single-process deployments and tests.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Protocol, runtime_checkable

from pydantic import Field

from consent_ledger.models.base import LedgerModel

# Purposes offered when no vendor list has been published
DEFAULT_PURPOSES: dict[int, str] = {
    1: "Storage and access",
    2: "Personalization",
    3: "Ad selection",
    4: "Content selection",
    5: "Measurement",
}


class VendorCatalog(LedgerModel):
    """Published purposes and vendors with display names."""

    version: int = 1
    purposes: dict[int, str] = Field(default_factory=lambda: dict(DEFAULT_PURPOSES))
    vendors: dict[int, str] = Field(default_factory=dict)

    def unknown_purposes(self, ids: Iterable[int]) -> list[int]:
        return sorted(i for i in set(ids) if i not in self.purposes)

    def unknown_vendors(self, ids: Iterable[int]) -> list[int]:
        return sorted(i for i in set(ids) if i not in self.vendors)

    def purpose_name(self, purpose_id: int) -> str | None:
        return self.purposes.get(purpose_id)

    def vendor_name(self, vendor_id: int) -> str | None:
        return self.vendors.get(vendor_id)


@runtime_checkable
class CatalogProvider(Protocol):
    async def get_catalog(self) -> VendorCatalog:
        ...


@runtime_checkable
class DomainResolver(Protocol):
    async def resolve_client_id(self, domain_id: str) -> str | None:
        """Owning client of a domain, or None if the domain is unknown."""
        ...


class StaticCatalogProvider:
    """Serves a fixed catalog; publish() swaps it atomically."""

    def __init__(self, catalog: VendorCatalog | None = None):
        self._catalog = catalog or VendorCatalog()

    async def get_catalog(self) -> VendorCatalog:
        return self._catalog

    def publish(self, catalog: VendorCatalog) -> None:
        self._catalog = catalog


class StaticDomainResolver:
    def __init__(self, domains: Mapping[str, str] | None = None):
        self._domains = dict(domains or {})

    async def resolve_client_id(self, domain_id: str) -> str | None:
        return self._domains.get(domain_id)

    def register(self, domain_id: str, client_id: str) -> None:
        self._domains[domain_id] = client_id
