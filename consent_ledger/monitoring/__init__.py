"""
Consent Ledger - Monitoring Module

Structured logging configuration and helpers.
"""

from .logging import (
    bound_context,
    configure_logging,
    log_duration,
)

__all__ = [
    "configure_logging",
    "bound_context",
    "log_duration",
]
