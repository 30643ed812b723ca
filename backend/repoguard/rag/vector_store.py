"""FAISS-based index store for repository chunk embeddings.

Uses ``IndexFlatIP`` on L2-normalised vectors to compute cosine similarity;
results are reported as cosine *distance* (``1 - similarity``) so that
smaller is closer.  Every repository gets its own flat index, persisted
under ``data_dir/<sha256(url)[:12]>/`` as an ``index-<token>.faiss`` file plus
a JSON metadata sidecar that names it.  Replacing the sidecar is the
commit point, so a failed or interrupted save leaves the previous pair
intact on disk.

Consistency: mutations never edit a live index.  Each write builds a new
``_RepositoryIndex`` and swaps it in under ``_lock``; readers take a
reference to the current snapshot and search it without the lock, so a
reader sees either the old or the new contents of a repository, never a
half-written or empty one.
"""
import hashlib
import json
import logging
import os
import shutil
import threading
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import numpy as np

from repoguard.exceptions import IndexStoreError

logger = logging.getLogger(__name__)

INDEX_FILE    = "index.faiss"    # name used when the sidecar names no file
METADATA_FILE = "metadata.json"


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

@dataclass
class IndexEntry:
    """One stored chunk.

    Entries returned by ``find_by_repository`` carry their L2-normalised
    vector; entries inside search results carry an empty ``embedding``.
    """

    repository_url: str
    file_path: str
    content: str
    embedding: List[float] = field(default_factory=list, repr=False)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("embedding")
        return d

    @classmethod
    def from_dict(cls, d: dict, embedding: Optional[List[float]] = None) -> "IndexEntry":
        fields = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        fields["embedding"] = embedding or []
        return cls(**fields)


@dataclass
class ScoredEntry:
    entry: IndexEntry
    distance: float


def repository_key(repository_url: str) -> str:
    """Directory name used to persist *repository_url*."""
    return hashlib.sha256(repository_url.encode()).hexdigest()[:12]


# ---------------------------------------------------------------------------
# Per-repository FAISS index (immutable once published)
# ---------------------------------------------------------------------------

class _RepositoryIndex:
    """A flat inner-product index plus the entries aligned to its rows."""

    __slots__ = ("repository_url", "dim", "index", "entries")

    def __init__(self, repository_url: str, dim: int) -> None:
        import faiss

        self.repository_url = repository_url
        self.dim = dim
        self.index = faiss.IndexFlatIP(dim)
        self.entries: List[IndexEntry] = []  # position → entry

    @property
    def size(self) -> int:
        return self.index.ntotal

    @classmethod
    def build(cls, repository_url: str, dim: int, entries: List[IndexEntry]) -> "_RepositoryIndex":
        """Build a fresh index holding *entries* (vectors normalised on the way in)."""
        repo = cls(repository_url, dim)
        if entries:
            vecs = _normalise(np.array([e.embedding for e in entries], dtype=np.float32))
            repo.index.add(vecs)
            repo.entries = [
                IndexEntry(
                    repository_url=repository_url,
                    file_path=e.file_path,
                    content=e.content,
                    id=e.id,
                )
                for e in entries
            ]
        return repo

    def vector(self, position: int) -> List[float]:
        return self.index.reconstruct(position).tolist()

    def with_added(self, entries: List[IndexEntry]) -> "_RepositoryIndex":
        return _RepositoryIndex.build(self.repository_url, self.dim, self.snapshot() + entries)

    def without(self, predicate: Callable[[IndexEntry], bool]) -> "tuple[_RepositoryIndex, int]":
        """Return a rebuilt index without entries matching *predicate*, and the removed count."""
        kept = [e for e in self.snapshot() if not predicate(e)]
        removed = self.size - len(kept)
        if removed == 0:
            return self, 0
        return _RepositoryIndex.build(self.repository_url, self.dim, kept), removed

    def snapshot(self) -> List[IndexEntry]:
        """Copies of every entry with its stored vector."""
        return [
            IndexEntry(
                repository_url=e.repository_url,
                file_path=e.file_path,
                content=e.content,
                embedding=self.vector(i),
                id=e.id,
            )
            for i, e in enumerate(self.entries)
        ]

    def search(self, query: np.ndarray, top_k: int) -> List[ScoredEntry]:
        if self.size == 0 or top_k <= 0:
            return []
        scores, indices = self.index.search(query, min(top_k, self.size))
        results: List[ScoredEntry] = []
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0:
                continue
            results.append(ScoredEntry(entry=self.entries[idx], distance=1.0 - float(score)))
        return results

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, directory: Path) -> None:
        """Write vectors and metadata so that *directory* always holds a matching pair.

        Vectors go to a fresh ``index-<token>.faiss``; the sidecar naming it
        is staged and then moved over ``metadata.json`` with ``os.replace``.
        On failure the staged files are removed and the old pair is untouched.
        """
        import faiss

        directory.mkdir(parents=True, exist_ok=True)
        index_name = f"index-{uuid.uuid4().hex[:12]}.faiss"
        index_path = directory / index_name
        staged     = directory / f"{METADATA_FILE}.tmp"
        payload = {
            "repository_url": self.repository_url,
            "index_file": index_name,
            "entries": [e.to_dict() for e in self.entries],
        }
        try:
            faiss.write_index(self.index, str(index_path))
            staged.write_text(json.dumps(payload))
            os.replace(staged, directory / METADATA_FILE)
        except BaseException:
            index_path.unlink(missing_ok=True)
            staged.unlink(missing_ok=True)
            raise

        for stale in directory.glob("*.faiss"):
            if stale.name == index_name:
                continue
            try:
                stale.unlink()
            except OSError as exc:
                logger.warning("[IndexStore] Could not remove stale %s: %s", stale, exc)

    @classmethod
    def load(cls, directory: Path, dim: int) -> "_RepositoryIndex":
        import faiss

        payload = json.loads((directory / METADATA_FILE).read_text())
        index_file = payload.get("index_file", INDEX_FILE)
        index = faiss.read_index(str(directory / index_file))
        if index.d != dim:
            raise ValueError(f"persisted index has dim={index.d}, expected {dim}")
        if index.ntotal != len(payload["entries"]):
            raise ValueError(
                f"persisted index has {index.ntotal} vectors but {len(payload['entries'])} entries"
            )
        repo = cls(payload["repository_url"], dim)
        repo.index = index
        repo.entries = [IndexEntry.from_dict(d) for d in payload["entries"]]
        return repo


def _normalise(vecs: np.ndarray) -> np.ndarray:
    """L2-normalise each row in-place and return the array."""
    import faiss

    faiss.normalize_L2(vecs)
    return vecs


# ---------------------------------------------------------------------------
# Store facade
# ---------------------------------------------------------------------------

class IndexStore:
    """Repository-partitioned vector index.

    All methods are synchronous and may block on FAISS work or disk I/O;
    async callers run them through ``asyncio.to_thread``.

    Args:
        dim:      Vector dimensionality (must match the embedding model).
        data_dir: Optional root directory for persistence.  When set, every
                  mutation is written through and existing indices are
                  loaded on construction.
    """

    def __init__(self, dim: int, data_dir: Optional[Path] = None) -> None:
        self._dim = dim
        self._data_dir = Path(data_dir) if data_dir else None
        self._repos: Dict[str, _RepositoryIndex] = {}
        self._lock = threading.Lock()
        if self._data_dir is not None:
            self._load_all()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def dim(self) -> int:
        return self._dim

    def repositories(self) -> List[str]:
        with self._lock:
            return sorted(url for url, repo in self._repos.items() if repo.size > 0)

    def count(self, repository_url: Optional[str] = None) -> int:
        with self._lock:
            if repository_url is not None:
                repo = self._repos.get(repository_url)
                return repo.size if repo else 0
            return sum(repo.size for repo in self._repos.values())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_repository(self, repository_url: str) -> List[IndexEntry]:
        """Return every entry of *repository_url* (empty list if none)."""
        repo = self._current(repository_url)
        return repo.snapshot() if repo else []

    def find_similar(
        self,
        vector: List[float],
        top_k: int,
        repository_url: Optional[str] = None,
    ) -> List[ScoredEntry]:
        """Return up to *top_k* entries ordered by ascending cosine distance.

        Args:
            vector:         Query embedding (normalised here).
            top_k:          Maximum results.
            repository_url: Restrict the search to one repository; ``None``
                            searches every repository.
        """
        if len(vector) != self._dim:
            raise ValueError(f"query vector has dim={len(vector)}, expected {self._dim}")
        query = _normalise(np.array([vector], dtype=np.float32))

        if repository_url is not None:
            repo = self._current(repository_url)
            targets = [repo] if repo else []
        else:
            with self._lock:
                targets = list(self._repos.values())

        results: List[ScoredEntry] = []
        for repo in targets:
            results.extend(repo.search(query, top_k))
        results.sort(key=lambda r: r.distance)
        return results[:top_k]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def replace_all(self, repository_url: str, entries: List[IndexEntry]) -> None:
        """Atomically replace every entry of *repository_url* with *entries*."""
        self._validate(repository_url, entries)
        fresh = _RepositoryIndex.build(repository_url, self._dim, entries)
        with self._lock:
            previous = self._repos.get(repository_url)
            self._repos[repository_url] = fresh
            try:
                self._persist(fresh)
            except IndexStoreError:
                if previous is None:
                    self._repos.pop(repository_url, None)
                else:
                    self._repos[repository_url] = previous
                raise
        logger.info(
            "[IndexStore] Replaced %s: %d entries (was %d)",
            repository_url, fresh.size, previous.size if previous else 0,
        )

    def insert(self, repository_url: str, entries: List[IndexEntry]) -> None:
        """Append *entries* to *repository_url*."""
        if not entries:
            return
        self._validate(repository_url, entries)
        with self._lock:
            current = self._repos.get(repository_url) or _RepositoryIndex(repository_url, self._dim)
            updated = current.with_added(entries)
            self._persist(updated)
            self._repos[repository_url] = updated
        logger.info("[IndexStore] Inserted %d entries into %s", len(entries), repository_url)

    def delete_by_path_prefix(self, repository_url: str, path_prefix: str) -> int:
        """Remove every entry whose path starts with *path_prefix*; return the count."""
        with self._lock:
            current = self._repos.get(repository_url)
            if current is None:
                return 0
            updated, removed = current.without(lambda e: e.file_path.startswith(path_prefix))
            if removed:
                self._persist(updated)
                self._repos[repository_url] = updated
        if removed:
            logger.info(
                "[IndexStore] Deleted %d entries with prefix %r from %s",
                removed, path_prefix, repository_url,
            )
        return removed

    def delete_repository(self, repository_url: str) -> int:
        """Drop every entry of *repository_url*; return the count."""
        with self._lock:
            current = self._repos.pop(repository_url, None)
            if self._data_dir is not None:
                directory = self._data_dir / repository_key(repository_url)
                try:
                    if directory.exists():
                        shutil.rmtree(directory)
                except OSError as exc:
                    if current is not None:
                        self._repos[repository_url] = current
                    raise IndexStoreError(
                        f"Failed to delete persisted index at {directory}: {exc}", repository_url
                    ) from exc
        removed = current.size if current else 0
        logger.info("[IndexStore] Wiped %s (%d entries)", repository_url, removed)
        return removed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _current(self, repository_url: str) -> Optional[_RepositoryIndex]:
        with self._lock:
            return self._repos.get(repository_url)

    def _validate(self, repository_url: str, entries: List[IndexEntry]) -> None:
        for e in entries:
            if e.repository_url != repository_url:
                raise ValueError(
                    f"entry {e.id} belongs to {e.repository_url!r}, not {repository_url!r}"
                )
            if not e.content or not e.content.strip():
                raise ValueError(f"entry {e.id} ({e.file_path}) has blank content")
            if len(e.embedding) != self._dim:
                raise ValueError(
                    f"entry {e.id} ({e.file_path}) has dim={len(e.embedding)}, expected {self._dim}"
                )

    def _persist(self, repo: _RepositoryIndex) -> None:
        if self._data_dir is None:
            return
        directory = self._data_dir / repository_key(repo.repository_url)
        try:
            repo.save(directory)
        except Exception as exc:
            raise IndexStoreError(
                f"Failed to persist index to {directory}: {exc}", repo.repository_url
            ) from exc

    def _load_all(self) -> None:
        if not self._data_dir.is_dir():
            return
        for directory in sorted(p for p in self._data_dir.iterdir() if p.is_dir()):
            if not (directory / METADATA_FILE).exists():
                continue
            try:
                repo = _RepositoryIndex.load(directory, self._dim)
            except Exception as exc:
                logger.warning("[IndexStore] Failed to load index from %s: %s", directory, exc)
                continue
            self._repos[repo.repository_url] = repo
            logger.info(
                "[IndexStore] Loaded %s: %d entries from %s",
                repo.repository_url, repo.size, directory,
            )
