"""Index writers and the readiness gate.

Full ingestion and delta sync run as background jobs sharing one
``JobRunner`` (worker pool, per-repository locks, job registry).
"""
from .delta import DeltaSyncEngine, should_sync_merge
from .jobs import JobRunner
from .locks import RepositoryLocks
from .orchestrator import IngestionOrchestrator
from .readiness import ReadinessGate
from .schemas import ChangeSet, DeltaSyncRequest, IngestionJob, JobKind, JobState

__all__ = [
    "ChangeSet",
    "DeltaSyncEngine",
    "DeltaSyncRequest",
    "IngestionJob",
    "IngestionOrchestrator",
    "JobKind",
    "JobRunner",
    "JobState",
    "ReadinessGate",
    "RepositoryLocks",
    "should_sync_merge",
]
