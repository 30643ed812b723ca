"""AWS Bedrock embedding provider.

Calls ``bedrock-runtime:invoke_model``.  Two request schemas are supported,
picked from the model id:

Amazon Titan Embed (``amazon.titan-embed-*``), one text per call
-----------------------------------------------------------------
::

    request:  { "inputText": "...", "dimensions": 1024, "normalize": true }
    response: { "embedding": [...], "inputTextTokenCount": 12 }

Cohere Embed (``cohere.embed-*``), batched
-------------------------------------------
::

    request:  { "texts": [...], "input_type": "search_document", "truncate": "END" }
    response: { "embeddings": [[...], ...] }  or  { "embeddings": { "float": [[...]] } }

Credential failures are raised as ``FatalEmbeddingError`` so the service
layer does not burn its retry budget on them.
"""
import json
import logging
from typing import Optional

from botocore.exceptions import ClientError

from .provider import EmbeddingProvider, FatalEmbeddingError

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "amazon.titan-embed-text-v2:0"
DEFAULT_DIM      = 1024
DEFAULT_REGION   = "us-east-1"

# Bedrock rejects Cohere texts above this length before the model sees them.
_COHERE_BEDROCK_MAX_CHARS = 2048

_NON_RECOVERABLE = (
    "ExpiredTokenException",
    "InvalidClientTokenId",
    "UnrecognizedClientException",
    "InvalidIdentityToken",
    "TokenRefreshRequired",
    "AccessDeniedException",
    "ResourceNotFoundException",
)


class BedrockEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by AWS Bedrock (Titan or Cohere Embed).

    Args:
        model_id:              Bedrock model ID for the embedding model.
        dim:                   Expected vector dimensionality.
        aws_access_key_id:     AWS access key.  ``None`` → default credential chain.
        aws_secret_access_key: AWS secret access key.
        aws_session_token:     Optional temporary-credential session token.
        region_name:           AWS region.  Defaults to ``us-east-1``.
    """

    def __init__(
        self,
        model_id: str = DEFAULT_MODEL_ID,
        dim: int = DEFAULT_DIM,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        aws_session_token: Optional[str] = None,
        region_name: Optional[str] = None,
    ) -> None:
        self._model_id      = model_id
        self._dim           = dim
        self._access_key    = aws_access_key_id
        self._secret_key    = aws_secret_access_key
        self._session_token = aws_session_token
        self._region        = region_name or DEFAULT_REGION
        self._client: Optional[object] = None

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def dim(self) -> int:
        return self._dim

    @property
    def is_cohere(self) -> bool:
        return self._model_id.startswith("cohere.")

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _get_client(self) -> object:
        """Return a cached boto3 bedrock-runtime client."""
        if self._client is None:
            import boto3

            kwargs: dict = {"region_name": self._region}
            if self._access_key and self._secret_key:
                kwargs["aws_access_key_id"]     = self._access_key
                kwargs["aws_secret_access_key"] = self._secret_key
            if self._session_token:
                kwargs["aws_session_token"] = self._session_token

            self._client = boto3.client("bedrock-runtime", **kwargs)

        return self._client

    def _invoke(self, body: dict) -> dict:
        try:
            response = self._get_client().invoke_model(
                modelId=self._model_id,
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _NON_RECOVERABLE:
                raise FatalEmbeddingError(f"Bedrock rejected credentials or model ({code}): {exc}") from exc
            raise
        return json.loads(response["body"].read())

    def _embed_titan(self, text: str) -> list[float]:
        data = self._invoke({"inputText": text, "dimensions": self._dim, "normalize": True})
        vector = data.get("embedding")
        if vector is None:
            raise ValueError(
                f"Unexpected Bedrock response, 'embedding' key missing: {list(data.keys())}"
            )
        return vector

    def _embed_cohere(self, texts: list[str], input_type: str) -> list[list[float]]:
        truncated: list[str] = []
        for text in texts:
            if len(text) > _COHERE_BEDROCK_MAX_CHARS:
                logger.warning(
                    "[embeddings/bedrock] Truncating text from %d to %d chars",
                    len(text), _COHERE_BEDROCK_MAX_CHARS,
                )
                text = text[:_COHERE_BEDROCK_MAX_CHARS]
            truncated.append(text)

        data = self._invoke({"texts": truncated, "input_type": input_type, "truncate": "END"})
        raw = data.get("embeddings")
        if raw is None:
            raise ValueError(
                f"Unexpected Bedrock response, 'embeddings' key missing: {list(data.keys())}"
            )
        if isinstance(raw, dict):
            if "float" not in raw:
                raise ValueError(f"Unexpected nested embeddings format, keys: {list(raw.keys())}")
            raw = raw["float"]
        return raw

    # -----------------------------------------------------------------------
    # EmbeddingProvider implementation
    # -----------------------------------------------------------------------

    def embed(self, texts: list[str], input_type: str = "search_document") -> list[list[float]]:
        logger.debug(
            "[embeddings/bedrock] invoking model=%s texts=%d", self._model_id, len(texts),
        )
        if self.is_cohere:
            vectors = self._embed_cohere(texts, input_type)
        else:
            vectors = [self._embed_titan(text) for text in texts]

        if len(vectors) != len(texts):
            raise ValueError(f"Provider returned {len(vectors)} vectors for {len(texts)} texts")
        return vectors
