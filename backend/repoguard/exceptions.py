"""Error taxonomy shared by the indexing and retrieval pipeline."""
from typing import Optional


class RepoGuardError(Exception):
    """Base class for all pipeline errors."""


class RepositoryInaccessibleError(RepoGuardError):
    """The repository URL/credential pair failed validation."""

    def __init__(self, repository_url: str) -> None:
        super().__init__(f"Repository is not accessible: {repository_url}")
        self.repository_url = repository_url


class FetchError(RepoGuardError):
    """Cloning or fetching repository content failed."""


class EmbeddingError(RepoGuardError):
    """Embedding a text failed after every allowed attempt."""

    def __init__(self, message: str, attempts: int = 0, retryable: bool = True) -> None:
        super().__init__(message)
        self.attempts  = attempts
        self.retryable = retryable


class IndexStoreError(RepoGuardError):
    """Reading or persisting the index failed."""

    def __init__(self, message: str, repository_url: Optional[str] = None) -> None:
        super().__init__(message)
        self.repository_url = repository_url
