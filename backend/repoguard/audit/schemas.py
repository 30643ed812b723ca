"""Pydantic schemas for the job ledger."""
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class JobAuditEntry(BaseModel):
    """One recorded state transition of an ingestion or delta-sync job.

    Attributes:
        job_id:         Job identifier.
        repository_url: Repository the job works on.
        kind:           ``full`` or ``delta``.
        state:          State entered (see ``JobState``).
        detail:         Error text for ``failed``, entry count for ``done``.
        timestamp:      When the transition happened (UTC).
    """
    job_id: str
    repository_url: str
    kind: str
    state: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
