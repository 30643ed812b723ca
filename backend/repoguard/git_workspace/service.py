"""Git Workspace Service — repository validation and working-copy fetches.

Every fetch lands in a job-scoped temporary directory that is removed when
the caller's ``async with`` block exits, whatever the outcome.  Credentials
reach git through a short-lived GIT_ASKPASS helper reading environment
variables, so tokens never appear on a command line or in a remote URL.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Tuple

from repoguard.exceptions import FetchError

from .schemas import RepositoryRef

logger = logging.getLogger(__name__)

TEMP_DIR_NAME = "repoguard"


# ---------------------------------------------------------------------------
# Helper – GIT_ASKPASS script
# ---------------------------------------------------------------------------

_ASKPASS_SCRIPT = """\
#!/bin/sh
# Minimal GIT_ASKPASS helper.  Reads credentials from env vars set by the
# parent process before spawning git.
case "$1" in
  *Username*) echo "${GIT_CREDENTIAL_USERNAME}" ;;
  *Password*) echo "${GIT_CREDENTIAL_TOKEN}"    ;;
esac
"""


def _make_askpass_script() -> str:
    """Write the GIT_ASKPASS helper to a temp file and return its path."""
    fd, path = tempfile.mkstemp(prefix="repoguard_askpass_", suffix=".sh")
    try:
        os.write(fd, _ASKPASS_SCRIPT.encode())
    finally:
        os.close(fd)
    os.chmod(path, 0o700)
    return path


def _remove_quietly(path: Optional[str]) -> None:
    if path:
        try:
            os.remove(path)
        except OSError:
            logger.debug("Askpass helper already gone: %s", path)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class GitWorkspaceService:
    """
    Validates repository access and materialises working copies:

      * ``is_accessible`` : ``git ls-remote`` check, never raises
      * ``full_clone``    : whole default (or requested) ref, for ingestion
      * ``shallow_clone`` : depth-1 single-branch clone, for delta sync

    Args:
        temp_root: Parent for job-scoped directories.  Defaults to the
                   system temp dir.
    """

    def __init__(self, temp_root: Optional[Path] = None) -> None:
        self._temp_root = Path(temp_root) if temp_root else Path(tempfile.gettempdir())

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def is_accessible(self, repo: RepositoryRef) -> bool:
        """Return True when *repo* can be listed with its credential."""
        env, askpass = self._build_git_env(repo)
        try:
            await self._run_git(["ls-remote", "--heads", repo.url], env=env)
            return True
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Repository %s is not accessible: %s", repo.url, exc)
            return False
        finally:
            _remove_quietly(askpass)

    # ------------------------------------------------------------------
    # Working copies
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def full_clone(self, repo: RepositoryRef, job_id: str) -> AsyncIterator[Path]:
        """Clone *repo* into ``<temp_root>/repoguard/<job_id>`` and yield the path."""
        args = ["clone", "--quiet"]
        if repo.ref:
            args += ["--branch", repo.ref]
        async with self._working_copy(repo, job_id, args) as path:
            yield path

    @asynccontextmanager
    async def shallow_clone(
        self,
        repo: RepositoryRef,
        branch: str,
        job_id: Optional[str] = None,
    ) -> AsyncIterator[Path]:
        """Depth-1 clone of *branch* only; yields the working-copy path."""
        args = ["clone", "--quiet", "--depth", "1", "--single-branch", "--branch", branch]
        async with self._working_copy(repo, job_id or uuid.uuid4().hex, args) as path:
            yield path

    async def head_commit(self, path: Path) -> Optional[str]:
        """SHA of HEAD in the working copy at *path*, or None."""
        try:
            return await self._run_git(["rev-parse", "HEAD"], cwd=path)
        except Exception:  # pylint: disable=broad-except
            return None

    def job_dir(self, job_id: str) -> Path:
        return self._temp_root / TEMP_DIR_NAME / job_id

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _working_copy(
        self,
        repo: RepositoryRef,
        job_id: str,
        clone_args: List[str],
    ) -> AsyncIterator[Path]:
        target = self.job_dir(job_id)
        env, askpass = self._build_git_env(repo)
        try:
            if target.exists():
                shutil.rmtree(target)
            target.parent.mkdir(parents=True, exist_ok=True)
            logger.info("Cloning %s → %s", repo.url, target)
            try:
                await self._run_git(clone_args + ["--", repo.url, str(target)], env=env)
            except RuntimeError as exc:
                raise FetchError(f"Clone of {repo.url} failed: {exc}") from exc
            yield target
        finally:
            _remove_quietly(askpass)
            shutil.rmtree(target, ignore_errors=True)
            logger.debug("Removed working copy %s", target)

    @staticmethod
    def _build_git_env(repo: RepositoryRef) -> Tuple[Dict[str, str], Optional[str]]:
        """Build an env-var dict for git that injects credentials if available."""
        base_env = os.environ.copy()
        base_env["GIT_TERMINAL_PROMPT"] = "0"
        if not repo.access_token:
            return base_env, None

        askpass_path = _make_askpass_script()
        base_env.update(
            {
                "GIT_ASKPASS":             askpass_path,
                "GIT_CREDENTIAL_USERNAME": repo.git_username,
                "GIT_CREDENTIAL_TOKEN":    repo.access_token,
            }
        )
        return base_env, askpass_path

    @staticmethod
    async def _run_git(
        args: List[str],
        cwd:  Optional[Path] = None,
        env:  Optional[Dict[str, str]] = None,
    ) -> str:
        """Run a git sub-command asynchronously; return stdout."""
        cmd = ["git"] + args
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
        try:
            stdout_b, stderr_b = await proc.communicate()
        except BaseException:
            # Cancelled or interrupted: git must not outlive the job directory.
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            logger.warning("git %s interrupted; killed pid %s", args[0], proc.pid)
            raise
        stdout = stdout_b.decode(errors="replace").strip()
        stderr = stderr_b.decode(errors="replace").strip()
        if proc.returncode != 0:
            raise RuntimeError(
                f"git {args[0]} failed (exit {proc.returncode}): {stderr or stdout}"
            )
        return stdout
