"""Per-repository mutual exclusion for index writers.

Full ingestion and delta sync both delete-then-insert; two jobs for the
same repository interleaving those steps could leave the index empty or
duplicated.  Writers therefore hold the repository's lock for their whole
run.  Readers never take it.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


class RepositoryLocks:
    """A lazily-created ``asyncio.Lock`` per repository URL.

    Locks are dropped again once nobody holds or waits on them, so the map
    does not grow with every repository ever seen.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, repository_url: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(repository_url, asyncio.Lock())
        self._users[repository_url] = self._users.get(repository_url, 0) + 1
        try:
            if lock.locked():
                logger.info("[RepositoryLocks] waiting for in-flight job on %s", repository_url)
            async with lock:
                yield
        finally:
            self._users[repository_url] -= 1
            if self._users[repository_url] == 0:
                del self._users[repository_url]
                del self._locks[repository_url]

    def is_locked(self, repository_url: str) -> bool:
        lock = self._locks.get(repository_url)
        return bool(lock and lock.locked())
