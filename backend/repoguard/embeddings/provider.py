"""Embedding back-end contract.

``EmbeddingService`` owns retries, backoff and dimension checks; a provider
only turns text into vectors.  The service hands over one chunk (or one
review query) per call, from a worker thread, and treats any exception
except ``FatalEmbeddingError`` as transient.
"""
from abc import ABC, abstractmethod


class EmbeddingProvider(ABC):
    """A blocking text-to-vector back-end (Ollama, Bedrock).

    Calls arrive through ``asyncio.to_thread``, so several jobs may be
    inside ``embed()`` at once and implementations must not share
    unguarded per-call state.
    """

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Model name as it appears in retry and failure log lines."""

    @property
    @abstractmethod
    def dim(self) -> int:
        """Vector length; must equal the index store's dimension."""

    @abstractmethod
    def embed(self, texts: list[str], input_type: str = "search_document") -> list[list[float]]:
        """Return one vector per entry of *texts*, in order.

        The pipeline always passes a single-element list: one index chunk
        with ``input_type="search_document"`` during ingestion and delta
        sync, or one diff query with ``"search_query"`` during context
        assembly.  Back-ends without asymmetric embeddings ignore
        *input_type*.

        Raises:
            FatalEmbeddingError: Credentials rejected or model missing.
                The service gives up on the text at once.
            Exception: Anything else (timeouts, throttling, 5xx) is
                retried with linear backoff.
        """


class FatalEmbeddingError(Exception):
    """Raised by a provider when another attempt cannot succeed."""
