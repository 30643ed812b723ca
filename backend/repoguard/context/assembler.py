"""Review-context assembly.

Turns a change-set's diffs into a deduplicated bundle of indexed code that
is semantically close to the change:

  * deleted files, blank diffs and binary-looking files are skipped;
  * each remaining diff is cleaned of diff markup and chunked;
  * every chunk is embedded as ``"File: <path>\\n<chunk>"`` and used to pull
    the ``top_k`` nearest entries of the same repository;
  * hits are deduplicated on ``(file_path, content)`` in first-seen order.

The result is always a non-empty string: either the formatted entries or
one of the sentinel messages below.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from repoguard.config import ContextSettings, DeltaSettings
from repoguard.embeddings.service import EmbeddingService
from repoguard.git_workspace.schemas import FileDiff
from repoguard.rag.chunker import split_text
from repoguard.rag.vector_store import IndexEntry, IndexStore

from .diffs import clean_diff, is_binary_path

logger = logging.getLogger(__name__)

NO_CONTEXT_MESSAGE       = "No existing contextual files found in the database."
RETRIEVAL_FAILED_MESSAGE = "Context retrieval failed."


def format_entries(entries: List[IndexEntry]) -> str:
    return "\n\n".join(f"File: {e.file_path}\nCode:\n{e.content}" for e in entries)


class ContextAssembler:
    """Builds the retrieval bundle for a reviewer.

    Args:
        store:             Index store to query.
        embedder:          Resilient embedding service.
        settings:          Chunking parameters for diffs and ``top_k``.
        binary_extensions: Extensions never embedded as queries.
    """

    def __init__(
        self,
        store: IndexStore,
        embedder: EmbeddingService,
        settings: Optional[ContextSettings] = None,
        binary_extensions: Optional[Iterable[str]] = None,
    ) -> None:
        self._store    = store
        self._embedder = embedder
        self._settings = settings or ContextSettings()
        self._binary_extensions = list(
            binary_extensions if binary_extensions is not None else DeltaSettings().binary_extensions
        )

    async def assemble(self, diffs: List[FileDiff], repository_url: str) -> str:
        """Return formatted context for *diffs*, or a sentinel message."""
        try:
            entries = await self.retrieve(diffs, repository_url)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("[ContextAssembler] retrieval for %s failed: %s", repository_url, exc)
            return RETRIEVAL_FAILED_MESSAGE

        if not entries:
            logger.info("[ContextAssembler] no context found for %s", repository_url)
            return NO_CONTEXT_MESSAGE
        logger.info(
            "[ContextAssembler] %d unique context entries for %d diff(s) in %s",
            len(entries), len(diffs), repository_url,
        )
        return format_entries(entries)

    async def retrieve(self, diffs: List[FileDiff], repository_url: str) -> List[IndexEntry]:
        """Unique entries nearest to the diffs, in first-retrieved order.  Raises on failure."""
        found: Dict[Tuple[str, str], IndexEntry] = {}
        for diff in diffs:
            if diff.deleted_file or not diff.diff or not diff.diff.strip():
                continue
            path = diff.path
            if is_binary_path(path, self._binary_extensions):
                continue

            for segment in split_text(clean_diff(diff.diff), self._settings.chunking):
                vector = await self._embedder.embed_or_raise(
                    f"File: {path}\n{segment}", input_type="search_query",
                )
                hits = await asyncio.to_thread(
                    self._store.find_similar, vector, self._settings.top_k, repository_url,
                )
                for hit in hits:
                    found.setdefault((hit.entry.file_path, hit.entry.content), hit.entry)
        return list(found.values())
