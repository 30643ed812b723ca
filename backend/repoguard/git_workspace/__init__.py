"""Repository access: validation, working-copy fetches and the GitLab API."""
from .gitlab import GitLabClient
from .schemas import FileDiff, RepositoryRef
from .service import GitWorkspaceService

__all__ = [
    "FileDiff",
    "GitLabClient",
    "GitWorkspaceService",
    "RepositoryRef",
]
