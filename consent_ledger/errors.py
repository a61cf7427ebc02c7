"""
Consent Ledger Exceptions

Error taxonomy shared by the repositories and services.
"""

from __future__ import annotations

from collections.abc import Iterable


class LedgerError(Exception):
    """Base exception for consent ledger errors."""
    pass


class ValidationError(LedgerError):
    """Malformed input, rejected before any write."""
    pass


class InvalidReferenceError(ValidationError):
    """Decisions reference purpose or vendor ids outside the active catalog."""

    def __init__(
        self,
        unknown_purposes: Iterable[int] = (),
        unknown_vendors: Iterable[int] = (),
    ):
        self.unknown_purposes = sorted(set(unknown_purposes))
        self.unknown_vendors = sorted(set(unknown_vendors))
        parts = []
        if self.unknown_purposes:
            parts.append(f"unknown purposes {self.unknown_purposes}")
        if self.unknown_vendors:
            parts.append(f"unknown vendors {self.unknown_vendors}")
        super().__init__("Invalid catalog reference: " + ", ".join(parts))


class NotFoundError(LedgerError):
    """Requested record does not exist."""
    pass


class ConsistencyError(LedgerError):
    """The single-active-record invariant does not hold for a key."""

    def __init__(self, message: str, domain_id: str | None = None, user_id: str | None = None):
        super().__init__(message)
        self.domain_id = domain_id
        self.user_id = user_id


class StaleRecordError(LedgerError):
    """The active record changed between read and compare-and-swap."""

    def __init__(self, expected_id: str | None, actual_id: str | None):
        super().__init__(
            f"Active consent changed concurrently (expected {expected_id}, found {actual_id})"
        )
        self.expected_id = expected_id
        self.actual_id = actual_id


class StorageError(LedgerError):
    """The backing store failed or timed out."""
    pass


class DependencyUnavailable(LedgerError):
    """A non-authoritative dependency (cache, audit store) is unreachable."""
    pass
