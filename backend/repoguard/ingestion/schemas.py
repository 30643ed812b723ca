from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional, Set, Union

from pydantic import BaseModel, Field

from repoguard.git_workspace.schemas import FileDiff, RepositoryRef


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class JobKind(str, Enum):
    FULL  = "full"
    DELTA = "delta"


class JobState(str, Enum):
    """Lifecycle state of an ingestion / delta-sync job."""

    PENDING    = "pending"     # accepted, waiting for a worker slot or the repo lock
    VALIDATING = "validating"
    FETCHING   = "fetching"
    CHUNKING   = "chunking"    # walking the working copy, filtering and splitting
    EMBEDDING  = "embedding"
    REPLACING  = "replacing"   # writing to the index store
    DONE       = "done"
    FAILED     = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED)


# ---------------------------------------------------------------------------
# Change sets
# ---------------------------------------------------------------------------


class ChangeSet(BaseModel):
    """Paths touched by one repository event.

    A rename is one delete (old path) plus one update (new path).
    """

    updated: Set[str] = Field(default_factory=set)
    deleted: Set[str] = Field(default_factory=set)

    @classmethod
    def from_diffs(cls, diffs: Iterable[FileDiff]) -> "ChangeSet":
        change_set = cls()
        for diff in diffs:
            if diff.deleted_file:
                change_set.deleted.add(diff.old_path)
            elif diff.renamed_file:
                change_set.deleted.add(diff.old_path)
                change_set.updated.add(diff.new_path)
            else:
                change_set.updated.add(diff.new_path)
        return change_set

    @property
    def is_empty(self) -> bool:
        return not self.updated and not self.deleted


class DeltaSyncRequest(BaseModel):
    """Incremental update of one repository's index."""

    repository: RepositoryRef
    change_set: ChangeSet
    ref: Optional[str] = Field(
        default=None,
        description="Branch the change landed on; defaults to repository.ref, then the default branch.",
    )
    project_id: Optional[Union[int, str]] = Field(
        default=None,
        description="Hosting-API project id; defaults to repository.project_id.",
    )


class JobInfo(BaseModel):
    """Read-only snapshot of an ``IngestionJob``."""

    job_id:          str
    repository_url:  str
    kind:            JobKind
    state:           JobState
    entries_written: int
    error_detail:    Optional[str] = None
    created_at:      datetime
    finished_at:     Optional[datetime] = None


# ---------------------------------------------------------------------------
# Job record
# ---------------------------------------------------------------------------


class IngestionJob:
    """In-process record for one background job.

    ``done`` is set exactly once, when the job reaches a terminal state, so
    waiters can block on it instead of polling.
    """

    __slots__ = (
        "job_id", "repository_url", "kind", "state", "entries_written",
        "error_detail", "created_at", "finished_at", "done",
    )

    def __init__(self, job_id: str, repository_url: str, kind: JobKind) -> None:
        self.job_id          = job_id
        self.repository_url  = repository_url
        self.kind            = kind
        self.state           = JobState.PENDING
        self.entries_written = 0
        self.error_detail:  Optional[str]      = None
        self.created_at      = datetime.now(timezone.utc)
        self.finished_at:   Optional[datetime] = None
        self.done            = asyncio.Event()

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.DONE

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until the job finishes; return False if *timeout* elapsed first."""
        if timeout is None:
            await self.done.wait()
            return True
        try:
            await asyncio.wait_for(self.done.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def to_info(self) -> JobInfo:
        return JobInfo(
            job_id          = self.job_id,
            repository_url  = self.repository_url,
            kind            = self.kind,
            state           = self.state,
            entries_written = self.entries_written,
            error_detail    = self.error_detail,
            created_at      = self.created_at,
            finished_at     = self.finished_at,
        )
