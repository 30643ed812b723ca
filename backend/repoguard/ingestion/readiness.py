"""Readiness gate for synchronous callers.

``ensure_ready`` makes sure a repository has at least one index entry
before a reviewer queries it.  If the index is empty it starts (or joins)
a full ingestion and waits on the job's completion signal in
``poll_interval_seconds`` slices, re-checking the store after each slice.
It gives up quietly after ``max_attempts`` slices: the caller proceeds
with whatever context exists.  Cancelling the caller stops the wait but
not the ingestion job.
"""
import asyncio
import logging
from typing import Optional

from pydantic import ValidationError

from repoguard.config import DEFAULT_GIT_USERNAME, ReadinessSettings
from repoguard.git_workspace.schemas import RepositoryRef
from repoguard.rag.vector_store import IndexStore

from .orchestrator import IngestionOrchestrator

logger = logging.getLogger(__name__)


class ReadinessGate:
    """Blocks until a repository's index is non-empty, or a ceiling is hit.

    Args:
        store:         Index store queried for entries.
        orchestrator:  Used to start ingestion when the index is empty.
        settings:      Poll interval, attempt ceiling and progress-log cadence.
        access_token:  Credential used for ingestions this gate starts.
        username:      Git username paired with ``access_token``.
    """

    def __init__(
        self,
        store: IndexStore,
        orchestrator: IngestionOrchestrator,
        settings: Optional[ReadinessSettings] = None,
        access_token: Optional[str] = None,
        username: str = DEFAULT_GIT_USERNAME,
    ) -> None:
        self._store        = store
        self._orchestrator = orchestrator
        self._settings     = settings or ReadinessSettings()
        self._access_token = access_token
        self._username     = username

    async def ensure_ready(self, repository_url: str, repo: Optional[RepositoryRef] = None) -> bool:
        """Return True once *repository_url* has entries, False if the wait gave up.

        Args:
            repository_url: Repository to check.
            repo:           Optional explicit reference (credential, branch)
                            for the ingestion this call may start.
        """
        if await self._has_entries(repository_url):
            return True

        job = self._orchestrator.active_job(repository_url)
        if job is None:
            if repo is None:
                try:
                    repo = RepositoryRef(
                        url=repository_url, username=self._username, access_token=self._access_token,
                    )
                except ValidationError as exc:
                    logger.warning(
                        "[ReadinessGate] cannot ingest %r: %s", repository_url, exc.errors()[0]["msg"],
                    )
                    return False
            job = self._orchestrator.submit(repo)
            logger.info(
                "[ReadinessGate] %s has no index entries; started ingestion job=%s",
                repository_url, job.job_id,
            )
        else:
            logger.info("[ReadinessGate] %s: joining in-flight ingestion job=%s", repository_url, job.job_id)

        interval = self._settings.poll_interval_seconds
        for attempt in range(1, self._settings.max_attempts + 1):
            finished = await job.wait(timeout=interval)
            if await self._has_entries(repository_url):
                logger.info("[ReadinessGate] %s ready after %d attempt(s)", repository_url, attempt)
                return True
            if finished:
                logger.warning(
                    "[ReadinessGate] ingestion job=%s for %s ended %s with no entries (%s)",
                    job.job_id, repository_url, job.state.value, job.error_detail or "empty repository",
                )
                return False
            if attempt % self._settings.progress_log_every == 0:
                logger.info(
                    "[ReadinessGate] Still waiting for %s... (%d seconds elapsed)",
                    repository_url, int(attempt * interval),
                )

        logger.warning(
            "[ReadinessGate] gave up waiting for %s after %d attempts; continuing without context",
            repository_url, self._settings.max_attempts,
        )
        return False

    async def _has_entries(self, repository_url: str) -> bool:
        return await asyncio.to_thread(self._store.count, repository_url) > 0
