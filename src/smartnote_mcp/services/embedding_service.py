"""Embedding service: the single path from text to vector.

Wraps an EmbeddingProvider with lazy loading, a per-call timeout (counted
from when the provider call starts, not from when it was queued),
retry with exponential backoff for transient failures and validation of
the returned vectors. Every failure surfaces as ProviderUnavailableError
so callers have exactly one error type to degrade on.

Usage:
    service = EmbeddingService(embedder=OpenAIEmbeddingProvider(...))
    vector = service.embed("some text")
    service.shutdown()  # Clean up on server exit
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import CancelledError, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

import numpy as np

from smartnote_mcp.config import SmartNoteConfig, config as default_config
from smartnote_mcp.exceptions import (
    ErrorCode,
    InvalidInputError,
    ProviderUnavailableError,
)
from smartnote_mcp.observability import timed_operation

if TYPE_CHECKING:
    from smartnote_mcp.services.embedding_types import EmbeddingProvider

logger = logging.getLogger(__name__)

# Error message fragments that indicate a transient failure
RETRYABLE_PATTERNS = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "connection",
    "rate limit",
    "too many requests",
    "503",
    "429",
)


def is_retryable_error(error: Exception) -> bool:
    """Decide whether another attempt may succeed."""
    if isinstance(error, ProviderUnavailableError) and error.retryable:
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


class EmbeddingService:
    """Thread-safe embedding front end with timeout and retry.

    Args:
        embedder: An EmbeddingProvider implementation.
        settings: Configuration; defaults to the global config.
        sleep: Backoff sleep function (injectable for tests).
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        settings: Optional[SmartNoteConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = settings or default_config
        self._embedder = embedder
        self._timeout = settings.embedding_timeout
        self._max_retries = settings.embedding_max_retries
        self._retry_delay = settings.embedding_retry_delay
        self._sleep = sleep

        self._embedder_lock = threading.Lock()
        # Provider calls run here so they can be bounded by a timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max(2, settings.embedding_concurrency),
            thread_name_prefix="smartnote-embed",
        )
        self._shutdown = False

    @property
    def model_id(self) -> str:
        return self._embedder.model_id

    @property
    def dimension(self) -> int:
        """Embedding dimensionality (delegates to provider)."""
        return self._embedder.dimension

    @property
    def embedder_loaded(self) -> bool:
        return self._embedder.is_loaded

    def _ensure_embedder(self) -> None:
        """Load the embedder if not already loaded. Thread-safe."""
        if self._embedder.is_loaded:
            return
        with self._embedder_lock:
            if self._embedder.is_loaded:
                return  # Double-check after acquiring lock
            try:
                self._embedder.load()
                logger.info(f"Embedding provider loaded (model={self.model_id})")
            except Exception as e:
                raise ProviderUnavailableError(
                    f"Failed to load embedding provider: {e}",
                    code=ErrorCode.EMBEDDING_CLIENT_LOAD_FAILED,
                    operation="embedder_load",
                    original_error=e,
                ) from e

    def _validate_vector(self, vector) -> np.ndarray:
        try:
            array = np.asarray(vector, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise ProviderUnavailableError(
                "Embedding provider returned a non-numeric vector",
                code=ErrorCode.EMBEDDING_MALFORMED,
                operation="embed",
                original_error=e,
            ) from e
        if array.ndim != 1 or array.shape[0] != self.dimension:
            raise ProviderUnavailableError(
                f"Embedding provider returned shape {array.shape}, "
                f"expected ({self.dimension},)",
                code=ErrorCode.EMBEDDING_MALFORMED,
                operation="embed",
            )
        if not np.all(np.isfinite(array)):
            raise ProviderUnavailableError(
                "Embedding provider returned non-finite values",
                code=ErrorCode.EMBEDDING_MALFORMED,
                operation="embed",
            )
        return array

    def _call_with_timeout(self, func, *args):
        if self._shutdown:
            raise ProviderUnavailableError(
                "Embedding service is shut down", operation="embed"
            )
        started = threading.Event()

        def run():
            started.set()
            return func(*args)

        future = self._executor.submit(run)
        # Time spent queued behind other calls does not count
        while not started.wait(0.05):
            if future.done():
                break
        try:
            return future.result(timeout=self._timeout)
        except CancelledError as e:
            raise ProviderUnavailableError(
                "Embedding call was cancelled by shutdown",
                operation="embed",
                original_error=e,
            ) from e
        except FutureTimeoutError as e:
            # The worker stays busy until the provider's own client timeout fires
            raise ProviderUnavailableError(
                f"Embedding provider did not answer within {self._timeout}s",
                code=ErrorCode.EMBEDDING_TIMEOUT,
                operation="embed",
                retryable=True,
                original_error=e,
            ) from e

    def _with_retry(self, operation: str, func, *args):
        """Run a provider call, retrying transient failures with backoff."""
        last_error: Optional[ProviderUnavailableError] = None
        for attempt in range(self._max_retries):
            try:
                return self._call_with_timeout(func, *args)
            except Exception as e:
                if isinstance(e, ProviderUnavailableError):
                    error = e
                else:
                    error = ProviderUnavailableError(
                        f"Embedding {operation} failed: {e}",
                        operation=operation,
                        retryable=is_retryable_error(e),
                        original_error=e,
                    )
                last_error = error
                if not is_retryable_error(error) or attempt == self._max_retries - 1:
                    break
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(
                    f"Embedding {operation} attempt {attempt + 1}/{self._max_retries} "
                    f"failed ({error.message}); retrying in {delay:.1f}s"
                )
                self._sleep(delay)

        assert last_error is not None
        raise last_error

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text into a dense vector.

        Raises:
            InvalidInputError: If text is not a non-blank string.
            ProviderUnavailableError: If the provider fails after retries,
                times out, or returns a malformed vector.
        """
        if not isinstance(text, str) or not text.strip():
            raise InvalidInputError("Cannot embed empty text", field="text")
        with timed_operation("embed", chars=len(text)):
            self._ensure_embedder()
            vector = self._with_retry("embed", self._embedder.embed, text)
            return self._validate_vector(vector)

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> List[np.ndarray]:
        """Embed multiple texts; all-or-nothing."""
        texts = list(texts)
        if not texts:
            return []
        for text in texts:
            if not isinstance(text, str) or not text.strip():
                raise InvalidInputError("Cannot embed empty text", field="texts")
        with timed_operation("embed_batch", count=len(texts)):
            self._ensure_embedder()
            vectors = self._with_retry(
                "embed_batch", self._embedder.embed_batch, texts, batch_size
            )
            if len(vectors) != len(texts):
                raise ProviderUnavailableError(
                    f"Embedding provider returned {len(vectors)} vectors "
                    f"for {len(texts)} texts",
                    code=ErrorCode.EMBEDDING_MALFORMED,
                    operation="embed_batch",
                )
            return [self._validate_vector(v) for v in vectors]

    def shutdown(self) -> None:
        """Stop the worker pool and release the provider."""
        self._shutdown = True
        self._executor.shutdown(wait=False, cancel_futures=True)
        with self._embedder_lock:
            if self._embedder.is_loaded:
                self._embedder.unload()
        logger.info("EmbeddingService shut down")
