"""EmbeddingService — resilient orchestration layer over EmbeddingProvider.

Every call is retried up to ``max_attempts`` times with a linear back-off
(``backoff_base * attempt``: 5s then 10s by default) using tenacity.
Outcomes come back as an ``EmbeddingResult`` so callers decide whether a
failed chunk aborts their batch or is skipped; ``embed_or_raise`` is the
convenience wrapper for callers that just want the vector.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from repoguard.exceptions import EmbeddingError

from .provider import EmbeddingProvider, FatalEmbeddingError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 5.0
WARMUP_TEXT          = "model warmup test"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EmbeddingFailure:
    """Why an embedding could not be produced."""

    error: str
    retryable: bool
    attempts: int
    exception: Optional[BaseException] = None


@dataclass(frozen=True)
class EmbeddingResult:
    """Either a vector or an ``EmbeddingFailure``, never both."""

    vector: Optional[list[float]] = None
    failure: Optional[EmbeddingFailure] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.failure is None

    def unwrap(self) -> list[float]:
        """Return the vector or raise ``EmbeddingError`` chained to the last cause."""
        if self.failure is None:
            return self.vector
        raise EmbeddingError(
            f"Embedding failed after {self.failure.attempts} attempt(s): {self.failure.error}",
            attempts=self.failure.attempts,
            retryable=self.failure.retryable,
        ) from self.failure.exception


def _is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, FatalEmbeddingError)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class EmbeddingService:
    """Retries, validates and delegates to an EmbeddingProvider.

    Args:
        provider:     Concrete embedding provider to use.
        max_attempts: Total attempts per text (first try included).
        backoff_base: Seconds to wait before attempt 2; attempt ``n + 1``
                      waits ``backoff_base * n``.
        warmup_text:  Throwaway text sent by ``warm_up``.
        sleep:        Async sleep used between attempts (tests pass a mock).
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        warmup_text: str = WARMUP_TEXT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._provider     = provider
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._warmup_text  = warmup_text
        self._sleep        = sleep

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    @property
    def model_id(self) -> str:
        return self._provider.model_id

    @property
    def dim(self) -> int:
        return self._provider.dim

    async def embed(self, text: str, input_type: str = "search_document") -> EmbeddingResult:
        """Embed *text*, retrying transient failures.  Never raises for provider errors."""
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_incrementing(start=self._backoff_base, increment=self._backoff_base),
                retry=retry_if_exception(_is_retryable),
                sleep=self._sleep,
                before_sleep=self._log_retry,
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    vector = await asyncio.to_thread(self._embed_one, text, input_type)
        except Exception as exc:
            retryable = _is_retryable(exc)
            logger.error(
                "[EmbeddingService] giving up after %d attempt(s) (retryable=%s): %s",
                attempts, retryable, exc,
            )
            return EmbeddingResult(
                failure=EmbeddingFailure(
                    error=str(exc), retryable=retryable, attempts=attempts, exception=exc,
                ),
                attempts=attempts,
            )
        return EmbeddingResult(vector=vector, attempts=attempts)

    async def embed_or_raise(self, text: str, input_type: str = "search_document") -> list[float]:
        """Embed *text* or raise ``EmbeddingError`` once retries are exhausted."""
        result = await self.embed(text, input_type=input_type)
        return result.unwrap()

    async def warm_up(self) -> bool:
        """Send one throwaway embed so a cold model loads; failures are only logged."""
        try:
            await asyncio.to_thread(self._embed_one, self._warmup_text, "search_document")
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("[EmbeddingService] warm-up failed (continuing): %s", exc)
            return False
        logger.info("[EmbeddingService] model %s warmed up", self._provider.model_id)
        return True

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _embed_one(self, text: str, input_type: str) -> list[float]:
        if not text:
            raise FatalEmbeddingError("cannot embed empty text")
        vectors = self._provider.embed([text], input_type=input_type)
        if len(vectors) != 1:
            raise ValueError(f"Provider returned {len(vectors)} vectors for 1 text")
        vector = vectors[0]
        if len(vector) != self._provider.dim:
            raise FatalEmbeddingError(
                f"Provider returned dim={len(vector)}, expected {self._provider.dim}"
            )
        return vector

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "[EmbeddingService] attempt %d/%d failed, retrying in %.1fs: %s",
            retry_state.attempt_number,
            self._max_attempts,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
            exc,
        )
