"""Shared test fixtures and fakes for backend tests.

Nothing here talks to a network, a git remote or an embedding model: the
fakes below stand in for the provider and the working-copy fetcher.
"""
import asyncio
import hashlib
import re
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from unittest.mock import AsyncMock

import pytest

from repoguard.embeddings.provider import EmbeddingProvider
from repoguard.embeddings.service import EmbeddingService
from repoguard.rag.vector_store import IndexEntry, IndexStore

DIM = 8
REPO_URL = "https://gitlab.example.com/team/service.git"


# ---------------------------------------------------------------------------
# Embedding fakes
# ---------------------------------------------------------------------------

def bag_of_words_vector(text: str, dim: int = DIM) -> List[float]:
    """Deterministic embedding: word counts hashed into *dim* buckets."""
    vec = [0.001] * dim
    for word in re.findall(r"\w+", text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dim
        vec[bucket] += 1.0
    return vec


class FakeProvider(EmbeddingProvider):
    """Records every text; raises for texts containing any ``fail_on`` marker."""

    def __init__(self, dim: int = DIM, fail_on: Iterable[str] = (), error: Optional[Exception] = None) -> None:
        self._dim = dim
        self.fail_on = list(fail_on)
        self.error = error
        self.calls: List[str] = []

    @property
    def model_id(self) -> str:
        return "fake-embed"

    @property
    def dim(self) -> int:
        return self._dim

    def embed(self, texts: list[str], input_type: str = "search_document") -> list[list[float]]:
        self.calls.extend(texts)
        for text in texts:
            if self.error is not None:
                raise self.error
            if any(marker in text for marker in self.fail_on):
                raise RuntimeError("provider unavailable")
        return [bag_of_words_vector(t, self._dim) for t in texts]


def make_embedder(provider: Optional[EmbeddingProvider] = None) -> EmbeddingService:
    """EmbeddingService with instant back-off."""
    return EmbeddingService(provider or FakeProvider(), max_attempts=3, backoff_base=5.0, sleep=AsyncMock())


def entry(file_path: str, content: str, repository_url: str = REPO_URL) -> IndexEntry:
    return IndexEntry(
        repository_url=repository_url,
        file_path=file_path,
        content=content,
        embedding=bag_of_words_vector(content),
    )


# ---------------------------------------------------------------------------
# Working-copy fake
# ---------------------------------------------------------------------------

class FakeWorkspace:
    """Materialises an in-memory file tree as a "clone" under *base*."""

    def __init__(self, base: Path, files: Dict[str, str], accessible: bool = True) -> None:
        self.base = base
        self.files = files
        self.accessible = accessible
        self.clone_dirs: List[Path] = []
        self.clone_calls = 0
        self.active = 0
        self.max_active = 0
        self.clone_delay = 0.0

    async def is_accessible(self, repo) -> bool:
        return self.accessible

    @asynccontextmanager
    async def full_clone(self, repo, job_id: str):
        self.clone_calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        root = self.base / job_id
        self.clone_dirs.append(root)
        try:
            for rel, text in self.files.items():
                path = root / rel
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(text, encoding="utf-8")
            if self.clone_delay:
                await asyncio.sleep(self.clone_delay)
            yield root
        finally:
            self.active -= 1
            shutil.rmtree(root, ignore_errors=True)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> IndexStore:
    return IndexStore(dim=DIM)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def embedder(provider) -> EmbeddingService:
    return make_embedder(provider)
