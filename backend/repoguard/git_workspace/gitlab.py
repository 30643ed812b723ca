"""Minimal async GitLab REST (v4) client.

Covers the handful of endpoints the pipeline needs: raw file content at a
ref, branch → commit resolution, and the file diffs of a merge request or
a single commit.  Transport failures surface as ``FetchError``.
"""
import logging
from typing import List, Optional, Union
from urllib.parse import quote

import httpx

from repoguard.exceptions import FetchError

from .schemas import FileDiff

logger = logging.getLogger(__name__)

ProjectId = Union[int, str]


def _encode(value: Union[int, str]) -> str:
    return quote(str(value), safe="")


class GitLabClient:
    """Thin ``httpx.AsyncClient`` wrapper authenticated with a private token.

    Args:
        base_url:  GitLab root, e.g. ``https://gitlab.example.com``.
        token:     Private/project access token (sent as ``PRIVATE-TOKEN``).
        timeout:   Per-request timeout in seconds.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"PRIVATE-TOKEN": token} if token else {}
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/api/v4",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "GitLabClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Repository content
    # ------------------------------------------------------------------

    async def get_raw_file(self, project_id: ProjectId, path: str, ref: str) -> Optional[str]:
        """Return the text of *path* at *ref*, or None if it does not exist there."""
        url = f"/projects/{_encode(project_id)}/repository/files/{_encode(path)}/raw"
        response = await self._get(url, params={"ref": ref}, allow_404=True)
        if response is None:
            return None
        return response.text

    async def resolve_commit(self, project_id: ProjectId, branch: str) -> str:
        """Return the commit id currently at the head of *branch*."""
        url = f"/projects/{_encode(project_id)}/repository/branches/{_encode(branch)}"
        response = await self._get(url)
        try:
            return response.json()["commit"]["id"]
        except (KeyError, TypeError, ValueError) as exc:
            raise FetchError(f"Unexpected branch payload for {branch!r}: {exc}") from exc

    # ------------------------------------------------------------------
    # Diffs
    # ------------------------------------------------------------------

    async def list_changes(self, project_id: ProjectId, mr_iid: int) -> List[FileDiff]:
        """File diffs of merge request *mr_iid*."""
        url = f"/projects/{_encode(project_id)}/merge_requests/{mr_iid}/changes"
        payload = (await self._get(url)).json()
        return [FileDiff(**change) for change in payload.get("changes", [])]

    async def list_commit_diff(self, project_id: ProjectId, sha: str) -> List[FileDiff]:
        """File diffs introduced by commit *sha*."""
        url = f"/projects/{_encode(project_id)}/repository/commits/{_encode(sha)}/diff"
        payload = (await self._get(url)).json()
        return [FileDiff(**change) for change in payload]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _get(
        self,
        url: str,
        params: Optional[dict] = None,
        allow_404: bool = False,
    ) -> Optional[httpx.Response]:
        try:
            response = await self._client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise FetchError(f"GitLab request {url} failed: {exc}") from exc
        if allow_404 and response.status_code == 404:
            logger.debug("[GitLabClient] 404 for %s", url)
            return None
        if response.is_error:
            raise FetchError(
                f"GitLab request {url} failed ({response.status_code}): {response.text[:200]}"
            )
        return response
