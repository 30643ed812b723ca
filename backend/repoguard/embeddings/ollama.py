"""Ollama embedding provider.

Calls a local (or LAN) Ollama server's ``POST /api/embeddings`` endpoint,
one prompt per request::

    request:  { "model": "nomic-embed-text", "prompt": "..." }
    response: { "embedding": [0.1, ...] }
"""
import logging
from typing import Optional

import httpx

from .provider import EmbeddingProvider, FatalEmbeddingError

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "nomic-embed-text"
DEFAULT_DIM      = 768
DEFAULT_BASE_URL = "http://localhost:11434"


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by an Ollama server.

    Args:
        model_id: Ollama model name.
        dim:      Expected vector dimensionality.
        base_url: Server root URL.
        timeout:  Per-request timeout in seconds.
        client:   Optional pre-built ``httpx.Client`` (tests inject a mock
                  transport here).
    """

    def __init__(
        self,
        model_id: str = DEFAULT_MODEL_ID,
        dim: int = DEFAULT_DIM,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._model_id = model_id
        self._dim      = dim
        self._client   = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def dim(self) -> int:
        return self._dim

    def embed(self, texts: list[str], input_type: str = "search_document") -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            response = self._client.post(
                "/api/embeddings",
                json={"model": self._model_id, "prompt": text},
            )
            if response.status_code == 404:
                # Ollama answers 404 when the model has not been pulled.
                raise FatalEmbeddingError(
                    f"Ollama model {self._model_id!r} not found: {response.text}"
                )
            response.raise_for_status()
            vector = response.json().get("embedding")
            if not vector:
                raise ValueError(f"Ollama returned no embedding for model {self._model_id!r}")
            vectors.append(vector)

        logger.debug(
            "[embeddings/ollama] model=%s texts=%d dim=%d",
            self._model_id, len(texts), len(vectors[0]) if vectors else 0,
        )
        return vectors

    def close(self) -> None:
        self._client.close()
