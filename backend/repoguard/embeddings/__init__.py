"""RepoGuard embedding pipeline.

Provides vector embeddings for code chunks through a provider abstraction
(Ollama by default, AWS Bedrock optional) wrapped in a retrying service.
"""
from .provider import EmbeddingProvider, FatalEmbeddingError
from .bedrock import BedrockEmbeddingProvider
from .ollama import OllamaEmbeddingProvider
from .service import EmbeddingFailure, EmbeddingResult, EmbeddingService

__all__ = [
    "EmbeddingProvider",
    "FatalEmbeddingError",
    "BedrockEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "EmbeddingFailure",
    "EmbeddingResult",
    "EmbeddingService",
]
