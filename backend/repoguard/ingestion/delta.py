"""Incremental (delta) index synchronisation.

For one change-set the engine:

  1. deletes, by path prefix, every updated and deleted path (this also
     removes ``(Part k/n)`` variants of split files);
  2. stops if nothing was updated;
  3. pins the branch to a commit id, falling back to the branch name;
  4. fetches, chunks and embeds each updated, non-binary file;
  5. bulk-inserts the new entries.

File content comes either from the hosting API (``api`` mode) or from a
shallow single-branch clone (``clone`` mode).
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional, Union

from repoguard.config import ChunkingSettings, DeltaSettings
from repoguard.context.diffs import is_binary_path
from repoguard.embeddings.service import EmbeddingService
from repoguard.git_workspace.gitlab import GitLabClient
from repoguard.git_workspace.schemas import RepositoryRef
from repoguard.git_workspace.service import GitWorkspaceService
from repoguard.rag.chunker import label_parts, split_text
from repoguard.rag.vector_store import IndexEntry, IndexStore

from .jobs import JobRunner
from .schemas import DeltaSyncRequest, IngestionJob, JobKind, JobState

logger = logging.getLogger(__name__)

GitLabFactory = Callable[[RepositoryRef], GitLabClient]


def should_sync_merge(target_branch: str, default_branch: str) -> bool:
    """Only merges into the default branch change what the index describes."""
    return bool(target_branch) and target_branch == default_branch


# ---------------------------------------------------------------------------
# Content sources
# ---------------------------------------------------------------------------

class ContentSource(ABC):
    """Where updated file content is read from during one sync."""

    @abstractmethod
    async def resolve_ref(self, ref: str) -> str:
        """Return an immutable commit id for *ref*."""

    @abstractmethod
    async def read(self, path: str, ref: str) -> Optional[str]:
        """Return the text of *path* at *ref*, or None if it is absent."""


class ApiContentSource(ContentSource):
    def __init__(self, client: GitLabClient, project_id: Union[int, str]) -> None:
        self._client = client
        self._project_id = project_id

    async def resolve_ref(self, ref: str) -> str:
        return await self._client.resolve_commit(self._project_id, ref)

    async def read(self, path: str, ref: str) -> Optional[str]:
        return await self._client.get_raw_file(self._project_id, path, ref)


class CloneContentSource(ContentSource):
    """Reads from a shallow working copy already checked out at the branch head."""

    def __init__(self, workspace: GitWorkspaceService, root: Path) -> None:
        self._workspace = workspace
        self._root = root

    async def resolve_ref(self, ref: str) -> str:
        sha = await self._workspace.head_commit(self._root)
        if not sha:
            raise RuntimeError(f"could not read HEAD of shallow clone for {ref}")
        return sha

    async def read(self, path: str, ref: str) -> Optional[str]:
        target = (self._root / path).resolve()
        if self._root.resolve() not in target.parents:
            raise ValueError(f"path escapes working copy: {path}")
        if not target.is_file():
            return None
        return await asyncio.to_thread(target.read_text, encoding="utf-8")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DeltaSyncEngine:
    """Applies change-sets to the index store.

    Args:
        store:          Index store.
        embedder:       Resilient embedding service.
        runner:         Job registry / worker pool shared with full ingestion.
        workspace:      Fetcher used in ``clone`` mode.
        gitlab_factory: Builds an API client for a repository (``api`` mode).
        settings:       Fetch mode and binary-extension skip-list.
        chunking:       Splitter parameters for source files.
        default_branch: Branch used when neither the request nor the
                        repository names one.
        failure_policy: ``abort`` fails the sync on the first exhausted
                        chunk; ``skip`` drops that chunk and carries on.
    """

    def __init__(
        self,
        store: IndexStore,
        embedder: EmbeddingService,
        runner: JobRunner,
        workspace: Optional[GitWorkspaceService] = None,
        gitlab_factory: Optional[GitLabFactory] = None,
        settings: Optional[DeltaSettings] = None,
        chunking: Optional[ChunkingSettings] = None,
        default_branch: str = "main",
        failure_policy: str = "abort",
    ) -> None:
        self._store          = store
        self._embedder       = embedder
        self._runner         = runner
        self._workspace      = workspace or GitWorkspaceService()
        self._gitlab_factory = gitlab_factory
        self._settings       = settings or DeltaSettings()
        self._chunking       = chunking or ChunkingSettings()
        self._default_branch = default_branch
        self._failure_policy = failure_policy

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, request: DeltaSyncRequest, job_id: Optional[str] = None) -> IngestionJob:
        """Apply *request* in the background and return its job record."""
        job = self._runner.create_job(request.repository.url, JobKind.DELTA, job_id)
        logger.info(
            "[DeltaSyncEngine] submitted job=%s repo=%s updated=%d deleted=%d",
            job.job_id, request.repository.url,
            len(request.change_set.updated), len(request.change_set.deleted),
        )
        return self._runner.spawn(job, lambda j: self._sync(request, j))

    async def sync(self, request: DeltaSyncRequest, job_id: Optional[str] = None) -> IngestionJob:
        """Apply *request* in the current task; returns the finished job."""
        job = self._runner.create_job(request.repository.url, JobKind.DELTA, job_id)
        return await self._runner.run(job, lambda j: self._sync(request, j))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _sync(self, request: DeltaSyncRequest, job: IngestionJob) -> int:
        url = request.repository.url
        change_set = request.change_set

        self._runner.transition(job, JobState.REPLACING)
        removed = 0
        for path in sorted(change_set.deleted | change_set.updated):
            removed += await asyncio.to_thread(self._store.delete_by_path_prefix, url, path)
        logger.info("[DeltaSyncEngine] job=%s removed %d stale entries from %s", job.job_id, removed, url)

        if not change_set.updated:
            return 0

        ref = request.ref or request.repository.ref or self._default_branch
        self._runner.transition(job, JobState.FETCHING)
        async with self._open_source(request, ref, job) as source:
            resolved = await self._resolve(source, ref, job)
            entries = await self._collect_entries(url, sorted(change_set.updated), source, resolved, job)

        self._runner.transition(job, JobState.REPLACING)
        await asyncio.to_thread(self._store.insert, url, entries)
        logger.info(
            "[DeltaSyncEngine] job=%s inserted %d entries for %d updated file(s) at %s",
            job.job_id, len(entries), len(change_set.updated), resolved,
        )
        return len(entries)

    async def _resolve(self, source: ContentSource, ref: str, job: IngestionJob) -> str:
        try:
            return await source.resolve_ref(ref)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning(
                "[DeltaSyncEngine] job=%s could not resolve %s to a commit, using the ref as-is: %s",
                job.job_id, ref, exc,
            )
            return ref

    async def _collect_entries(
        self,
        url: str,
        paths: List[str],
        source: ContentSource,
        ref: str,
        job: IngestionJob,
    ) -> List[IndexEntry]:
        entries: List[IndexEntry] = []
        embedding_started = False
        for path in paths:
            if is_binary_path(path, self._settings.binary_extensions):
                logger.debug("[DeltaSyncEngine] skipping binary file %s", path)
                continue
            try:
                content = await source.read(path, ref)
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("[DeltaSyncEngine] job=%s failed to fetch %s@%s: %s", job.job_id, path, ref, exc)
                continue
            if not content or not content.strip():
                continue

            if not embedding_started:
                self._runner.transition(job, JobState.EMBEDDING)
                embedding_started = True
            segments = split_text(content, self._chunking)
            for label, segment in zip(label_parts(path, len(segments)), segments):
                result = await self._embedder.embed(segment)
                if not result.ok:
                    if self._failure_policy != "skip":
                        result.unwrap()
                    logger.warning(
                        "[DeltaSyncEngine] job=%s skipping chunk %s: %s",
                        job.job_id, label, result.failure.error,
                    )
                    continue
                entries.append(
                    IndexEntry(repository_url=url, file_path=label, content=segment, embedding=result.vector)
                )
        return entries

    @asynccontextmanager
    async def _open_source(
        self,
        request: DeltaSyncRequest,
        ref: str,
        job: IngestionJob,
    ) -> AsyncIterator[ContentSource]:
        project_id = request.project_id if request.project_id is not None else request.repository.project_id
        use_api = (
            self._settings.fetch_mode == "api"
            and self._gitlab_factory is not None
            and project_id is not None
        )
        if self._settings.fetch_mode == "api" and not use_api:
            logger.info(
                "[DeltaSyncEngine] job=%s no API client or project id, falling back to a shallow clone",
                job.job_id,
            )

        if use_api:
            async with self._gitlab_factory(request.repository) as client:
                yield ApiContentSource(client, project_id)
        else:
            async with self._workspace.shallow_clone(request.repository, ref, job.job_id) as root:
                yield CloneContentSource(self._workspace, root)
