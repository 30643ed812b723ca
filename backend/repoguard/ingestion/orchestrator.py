"""Full-repository ingestion.

Runs validate → fetch → chunk & filter → embed → replace for one
repository, as a background job.  The working copy lives only for the
duration of the fetch/chunk step and is removed on every exit path; the
index is only touched by the final ``replace_all``, so a failed job leaves
the previous index contents in place.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from repoguard.config import ChunkingSettings, IngestionSettings
from repoguard.embeddings.service import EmbeddingService
from repoguard.exceptions import EmbeddingError, RepositoryInaccessibleError
from repoguard.git_workspace.schemas import RepositoryRef
from repoguard.git_workspace.service import GitWorkspaceService
from repoguard.rag.chunker import label_parts, split_text
from repoguard.rag.vector_store import IndexEntry, IndexStore

from .jobs import JobRunner
from .schemas import IngestionJob, JobKind, JobState

logger = logging.getLogger(__name__)


@dataclass
class PendingChunk:
    """A labelled chunk waiting for its embedding."""

    file_path: str
    content: str


class IngestionOrchestrator:
    """Indexes whole repositories and atomically replaces their index contents.

    Args:
        workspace: Validator and working-copy fetcher.
        embedder:  Resilient embedding service.
        store:     Index store written by ``replace_all``.
        runner:    Job registry / worker pool shared with delta sync.
        settings:  File filters and the embedding failure policy.
        chunking:  Splitter parameters for source files.
        warm_up:   Send a warm-up embed before the first chunk.
    """

    def __init__(
        self,
        workspace: GitWorkspaceService,
        embedder: EmbeddingService,
        store: IndexStore,
        runner: JobRunner,
        settings: Optional[IngestionSettings] = None,
        chunking: Optional[ChunkingSettings] = None,
        warm_up: bool = True,
    ) -> None:
        self._workspace = workspace
        self._embedder  = embedder
        self._store     = store
        self._runner    = runner
        self._settings  = settings or IngestionSettings()
        self._chunking  = chunking or ChunkingSettings()
        self._warm_up   = warm_up
        self._extensions = {ext.lower() for ext in self._settings.include_extensions}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, repo: RepositoryRef, job_id: Optional[str] = None) -> IngestionJob:
        """Start ingesting *repo* in the background and return its job record."""
        job = self._runner.create_job(repo.url, JobKind.FULL, job_id)
        logger.info("[IngestionOrchestrator] submitted job=%s repo=%s", job.job_id, repo.url)
        return self._runner.spawn(job, lambda j: self._ingest(repo, j))

    async def ingest(self, repo: RepositoryRef, job_id: Optional[str] = None) -> IngestionJob:
        """Ingest *repo* in the current task; returns the finished job (``done`` or ``failed``)."""
        job = self._runner.create_job(repo.url, JobKind.FULL, job_id)
        return await self._runner.run(job, lambda j: self._ingest(repo, j))

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        return self._runner.get_job(job_id)

    def active_job(self, repository_url: str) -> Optional[IngestionJob]:
        """The unfinished full-ingestion job for *repository_url*, if any."""
        return self._runner.active_job(repository_url, JobKind.FULL)

    async def wipe(self, repository_url: str) -> int:
        """Remove every index entry of *repository_url* (waits for in-flight jobs)."""
        async with self._runner.locks.hold(repository_url):
            return await asyncio.to_thread(self._store.delete_repository, repository_url)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _ingest(self, repo: RepositoryRef, job: IngestionJob) -> int:
        self._runner.transition(job, JobState.VALIDATING)
        if not await self._workspace.is_accessible(repo):
            raise RepositoryInaccessibleError(repo.url)

        self._runner.transition(job, JobState.FETCHING)
        async with self._workspace.full_clone(repo, job.job_id) as root:
            self._runner.transition(job, JobState.CHUNKING)
            chunks = await asyncio.to_thread(self.collect_chunks, root)

        logger.info(
            "[IngestionOrchestrator] job=%s repo=%s: %d chunk(s) to embed",
            job.job_id, repo.url, len(chunks),
        )

        self._runner.transition(job, JobState.EMBEDDING)
        entries = await self._embed_chunks(repo.url, chunks, job)

        self._runner.transition(job, JobState.REPLACING)
        await asyncio.to_thread(self._store.replace_all, repo.url, entries)
        return len(entries)

    def collect_chunks(self, root: Path) -> List[PendingChunk]:
        """Walk the working copy at *root* and chunk every eligible file."""
        chunks: List[PendingChunk] = []
        excluded = set(self._settings.exclude_dirs)
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in excluded)
            for name in sorted(filenames):
                path = Path(dirpath) / name
                if path.suffix.lower() not in self._extensions:
                    continue
                rel_path = path.relative_to(root).as_posix()
                text = self._read_file(path, rel_path)
                if text is None:
                    continue
                segments = split_text(text, self._chunking)
                for label, segment in zip(label_parts(rel_path, len(segments)), segments):
                    chunks.append(PendingChunk(file_path=label, content=segment))
        return chunks

    async def _embed_chunks(
        self,
        repository_url: str,
        chunks: List[PendingChunk],
        job: IngestionJob,
    ) -> List[IndexEntry]:
        if chunks and self._warm_up:
            await self._embedder.warm_up()

        skip = self._settings.embedding_failure_policy == "skip"
        entries: List[IndexEntry] = []
        failed = 0
        for chunk in chunks:
            result = await self._embedder.embed(chunk.content)
            if result.ok:
                entries.append(
                    IndexEntry(
                        repository_url=repository_url,
                        file_path=chunk.file_path,
                        content=chunk.content,
                        embedding=result.vector,
                    )
                )
                continue
            if not skip:
                logger.error(
                    "[IngestionOrchestrator] job=%s aborting on %s: %s",
                    job.job_id, chunk.file_path, result.failure.error,
                )
                result.unwrap()
            failed += 1
            logger.warning(
                "[IngestionOrchestrator] job=%s skipping chunk %s: %s",
                job.job_id, chunk.file_path, result.failure.error,
            )

        if failed:
            logger.warning(
                "[IngestionOrchestrator] job=%s skipped %d/%d chunk(s)",
                job.job_id, failed, len(chunks),
            )
            if not entries:
                raise EmbeddingError(f"All {failed} chunk(s) failed to embed", attempts=0)
        return entries

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read_file(self, path: Path, rel_path: str) -> Optional[str]:
        try:
            if path.stat().st_size > self._settings.max_file_bytes:
                logger.debug("[IngestionOrchestrator] skipping large file %s", rel_path)
                return None
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("[IngestionOrchestrator] skipping unreadable file %s: %s", rel_path, exc)
            return None
        if not text.strip():
            return None
        return text
