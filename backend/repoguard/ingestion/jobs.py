"""Background job bookkeeping shared by full ingestion and delta sync.

``JobRunner`` owns the job registry, the worker-pool semaphore, the
per-repository locks and the references to running tasks.  It records
every state transition in the log and (when configured) the DuckDB job
ledger.  Ledger writes run in order on a single worker thread so a slow
disk never stalls the event loop.  Only the most recent finished jobs are
kept in memory; older ones remain in the ledger.  Job bodies raise on
failure; the runner turns that into a ``failed`` job and never lets it
escape a background task.
"""
import asyncio
import logging
import uuid
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Set

from repoguard.audit.schemas import JobAuditEntry
from repoguard.audit.service import JobAuditService

from .locks import RepositoryLocks
from .schemas import IngestionJob, JobKind, JobState

logger = logging.getLogger(__name__)

JobBody = Callable[[IngestionJob], Awaitable[int]]


def new_job_id() -> str:
    return uuid.uuid4().hex


class JobRunner:
    """Runs job bodies under a repository lock and a bounded worker pool.

    Args:
        max_concurrent_jobs: Worker-pool size across all repositories.
        locks:               Shared per-repository locks.
        ledger:              Optional DuckDB job ledger.
        max_finished_jobs:   Finished jobs kept for lookup; the oldest are
                             evicted first.
    """

    def __init__(
        self,
        max_concurrent_jobs: int = 4,
        locks: Optional[RepositoryLocks] = None,
        ledger: Optional[JobAuditService] = None,
        max_finished_jobs: int = 100,
    ) -> None:
        self._semaphore    = asyncio.Semaphore(max_concurrent_jobs)
        self._locks        = locks or RepositoryLocks()
        self._ledger       = ledger
        self._max_finished = max_finished_jobs
        self._jobs: "OrderedDict[str, IngestionJob]" = OrderedDict()
        self._writer: Optional[ThreadPoolExecutor] = None
        self._last_write: Optional[Future] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def locks(self) -> RepositoryLocks:
        return self._locks

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def create_job(self, repository_url: str, kind: JobKind, job_id: Optional[str] = None) -> IngestionJob:
        job_id = job_id or new_job_id()
        if job_id in self._jobs:
            raise ValueError(f"Job {job_id!r} already exists")
        job = IngestionJob(job_id, repository_url, kind)
        self._jobs[job_id] = job
        self._record(job)
        return job

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        return self._jobs.get(job_id)

    def active_job(self, repository_url: str, kind: Optional[JobKind] = None) -> Optional[IngestionJob]:
        """Most recent unfinished job for *repository_url*."""
        for job in reversed(list(self._jobs.values())):
            if job.repository_url != repository_url or job.state.terminal:
                continue
            if kind is None or job.kind is kind:
                return job
        return None

    def list_jobs(self) -> List[IngestionJob]:
        return list(self._jobs.values())

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def transition(self, job: IngestionJob, state: JobState, detail: Optional[str] = None) -> None:
        logger.info(
            "[JobRunner] job=%s repo=%s kind=%s %s → %s",
            job.job_id, job.repository_url, job.kind.value, job.state.value, state.value,
        )
        job.state = state
        self._record(job, detail)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self, job: IngestionJob, body: JobBody) -> IngestionJob:
        """Run *body* for *job* to a terminal state and return the job."""
        try:
            async with self._locks.hold(job.repository_url):
                async with self._semaphore:
                    written = await body(job)
            job.entries_written = written
            self._finish(job, JobState.DONE, f"{written} entries written")
        except asyncio.CancelledError:
            self._finish(job, JobState.FAILED, "cancelled")
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception(
                "[JobRunner] job=%s repo=%s failed in state %s: %s",
                job.job_id, job.repository_url, job.state.value, exc,
            )
            self._finish(job, JobState.FAILED, f"{type(exc).__name__}: {exc}")
        await self.flush_ledger()
        return job

    def spawn(self, job: IngestionJob, body: JobBody) -> IngestionJob:
        """Schedule ``run(job, body)`` as a background task and return immediately."""
        task = asyncio.create_task(self.run(job, body), name=f"repoguard-{job.kind.value}-{job.job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def shutdown(self) -> None:
        """Cancel running jobs and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._writer is not None:
            writer, self._writer = self._writer, None
            await asyncio.get_running_loop().run_in_executor(None, writer.shutdown)

    async def flush_ledger(self) -> None:
        """Wait until every ledger write queued so far has been attempted."""
        if self._last_write is not None:
            await asyncio.wrap_future(self._last_write)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _finish(self, job: IngestionJob, state: JobState, detail: str) -> None:
        if state is JobState.FAILED:
            job.error_detail = detail
        job.finished_at = datetime.now(timezone.utc)
        self.transition(job, state, detail)
        job.done.set()
        if job.job_id in self._jobs:
            self._jobs.move_to_end(job.job_id)
        self._prune()

    def _prune(self) -> None:
        finished = [job_id for job_id, job in self._jobs.items() if job.state.terminal]
        for job_id in finished[: max(0, len(finished) - self._max_finished)]:
            del self._jobs[job_id]

    def _record(self, job: IngestionJob, detail: Optional[str] = None) -> None:
        if self._ledger is None:
            return
        entry = JobAuditEntry(
            job_id=job.job_id,
            repository_url=job.repository_url,
            kind=job.kind.value,
            state=job.state.value,
            detail=detail,
        )
        if self._writer is None:
            self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="repoguard-ledger")
        self._last_write = self._writer.submit(self._write, entry)

    def _write(self, entry: JobAuditEntry) -> None:
        try:
            self._ledger.record(entry)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("[JobRunner] failed to record job %s in ledger: %s", entry.job_id, exc)
