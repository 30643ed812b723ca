from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from repoguard.config import DEFAULT_GIT_USERNAME


# ---------------------------------------------------------------------------
# Repository references
# ---------------------------------------------------------------------------


class RepositoryRef(BaseModel):
    """A remote repository plus the credential used to reach it."""

    url: str = Field(..., description="Canonical remote URL; also the index partition key.")
    username: Optional[str] = Field(
        default=None,
        description="Git username.  Token-only hosts ignore it, so it defaults to ‘oauth2’.",
    )
    access_token: Optional[str] = Field(
        default=None,
        description="Personal/project access token.  Held in memory only.",
        repr=False,
    )
    ref: Optional[str] = Field(default=None, description="Branch to fetch; default branch when omitted.")
    project_id: Optional[Union[int, str]] = Field(
        default=None,
        description="Hosting-API project id or ‘group/name’ path (needed for API fetches).",
    )

    @field_validator("url")
    @classmethod
    def _url_not_option(cls, v: str) -> str:
        v = v.strip()
        if not v or v.startswith("-"):
            raise ValueError(f"invalid repository url: {v!r}")
        return v

    @property
    def git_username(self) -> str:
        return self.username or DEFAULT_GIT_USERNAME


# ---------------------------------------------------------------------------
# Hosting-API diff payloads
# ---------------------------------------------------------------------------


class FileDiff(BaseModel):
    """One changed file as returned by the GitLab changes/diff endpoints."""

    old_path:     str  = ""
    new_path:     str  = ""
    diff:         str  = ""
    new_file:     bool = False
    renamed_file: bool = False
    deleted_file: bool = False

    @property
    def path(self) -> str:
        """The path that identifies the file after the change."""
        return self.old_path if self.deleted_file else (self.new_path or self.old_path)
