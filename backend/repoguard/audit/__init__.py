"""Job ledger module for tracking ingestion and delta-sync runs."""

from .schemas import JobAuditEntry
from .service import JobAuditService

__all__ = [
    "JobAuditEntry",
    "JobAuditService",
]
