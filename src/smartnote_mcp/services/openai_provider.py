"""OpenAI embedding provider.

Implements the EmbeddingProvider protocol on top of the OpenAI embeddings
API (``text-embedding-3-small`` by default, 1536 dimensions).
"""

import logging
import threading
from typing import List, Optional, Sequence

import numpy as np
import openai
from openai import OpenAI

from smartnote_mcp.exceptions import ErrorCode, ProviderUnavailableError

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider:
    """Embeds text through the OpenAI embeddings endpoint.

    The client is created lazily by ``load()``; retries are handled by
    EmbeddingService, so the client's own retry loop is disabled.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        timeout: float = 30.0,
        base_url: Optional[str] = None,
    ) -> None:
        if not api_key:
            raise ValueError("An OpenAI API key is required")
        self._api_key = api_key
        self._model = model
        self._dimension = dimension
        self._timeout = timeout
        self._base_url = base_url
        self._client: Optional[OpenAI] = None
        self._lock = threading.Lock()

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def is_loaded(self) -> bool:
        return self._client is not None

    def load(self) -> None:
        with self._lock:
            if self._client is None:
                self._client = OpenAI(
                    api_key=self._api_key,
                    base_url=self._base_url,
                    timeout=self._timeout,
                    max_retries=0,
                )

    def unload(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def _request(self, texts: List[str]) -> List[np.ndarray]:
        if self._client is None:
            self.load()
        # OpenAI recommends single-line input
        inputs = [t.replace("\n", " ") for t in texts]
        kwargs = {"input": inputs, "model": self._model}
        # Only the v3 models accept a requested output size
        if self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimension
        try:
            response = self._client.embeddings.create(**kwargs)
        except (openai.APITimeoutError, openai.APIConnectionError) as e:
            raise ProviderUnavailableError(
                f"OpenAI embeddings unreachable: {e}",
                code=ErrorCode.EMBEDDING_TIMEOUT
                if isinstance(e, openai.APITimeoutError)
                else ErrorCode.EMBEDDING_UNAVAILABLE,
                operation="openai_embed",
                retryable=True,
                original_error=e,
            ) from e
        except openai.RateLimitError as e:
            raise ProviderUnavailableError(
                f"OpenAI rate limit or quota exceeded: {e}",
                operation="openai_embed",
                retryable=True,
                original_error=e,
            ) from e
        except openai.APIStatusError as e:
            raise ProviderUnavailableError(
                f"OpenAI embeddings request failed with status {e.status_code}",
                operation="openai_embed",
                retryable=e.status_code >= 500,
                original_error=e,
            ) from e

        data = sorted(response.data, key=lambda item: item.index)
        return [np.asarray(item.embedding, dtype=np.float32) for item in data]

    def embed(self, text: str) -> np.ndarray:
        return self._request([text])[0]

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> List[np.ndarray]:
        texts = list(texts)
        vectors: List[np.ndarray] = []
        for start in range(0, len(texts), batch_size):
            vectors.extend(self._request(texts[start:start + batch_size]))
        logger.debug(f"Embedded {len(texts)} texts with {self._model}")
        return vectors
