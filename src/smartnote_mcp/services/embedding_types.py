"""Type protocol for embedding providers.

Defines the structural contract that both the production OpenAI provider
and test fakes must satisfy. Uses Protocol (PEP 544) for structural
subtyping: implementations don't need to inherit from it.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    import numpy as np


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Contract for embedding text into dense vectors."""

    @property
    def model_id(self) -> str:
        """Identifier of the model; cached vectors are tagged with it."""
        ...

    @property
    def dimension(self) -> int:
        """Dimensionality of produced vectors."""
        ...

    def load(self) -> None:
        """Prepare the client/model. May be called multiple times (idempotent)."""
        ...

    def unload(self) -> None:
        """Release resources. May be called multiple times (idempotent)."""
        ...

    @property
    def is_loaded(self) -> bool:
        """Whether the provider is ready to embed."""
        ...

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text into a dense vector.

        Args:
            text: Input text to embed.

        Returns:
            1-D numpy array of shape (dimension,).

        Raises:
            ProviderUnavailableError: On transient or permanent failure.
        """
        ...

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> List[np.ndarray]:
        """Embed multiple texts in batches."""
        ...
