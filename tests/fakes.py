"""Fake embedding providers for testing.

These produce deterministic, controlled outputs without network access.
FakeEmbeddingProvider derives 8-dimensional vectors from text hashing, so
identical inputs always produce identical vectors. KeywordEmbeddingProvider
embeds text as a bag of words over a fixed vocabulary, so test code can
reason about which notes are similar.

Design principles:
- Never mock SQLite; always use a real database file in tmp_path
- Fake providers produce real numpy arrays of controlled dimensionality
- Deterministic: same input -> same output, always
- Inspectable: every provider counts its calls
"""
import hashlib
import re
import threading
import time
from typing import List, Optional, Sequence

import numpy as np


class FakeEmbeddingProvider:
    """Deterministic hash-based embedding provider.

    Produces L2-normalized vectors derived from a hash of the input text.
    """

    def __init__(self, dim: int = 8, model_id: str = "fake-hash") -> None:
        self._dim = dim
        self._model_id = model_id
        self._loaded = False
        self._lock = threading.Lock()
        self.load_count = 0
        self.unload_count = 0
        self.embed_count = 0
        self.texts: List[str] = []

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def dimension(self) -> int:
        return self._dim

    def load(self) -> None:
        self._loaded = True
        self.load_count += 1

    def unload(self) -> None:
        self._loaded = False
        self.unload_count += 1

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def _vector(self, text: str) -> np.ndarray:
        chunks: list[bytes] = []
        needed = self._dim
        seed = text.encode("utf-8")
        while needed > 0:
            seed = hashlib.sha256(seed).digest()
            chunks.append(seed)
            needed -= len(seed)
        all_bytes = b"".join(chunks)[: self._dim]

        raw = np.frombuffer(all_bytes, dtype=np.uint8).astype(np.float64)
        raw = (raw / 127.5) - 1.0
        norm = np.linalg.norm(raw)
        if norm > 0:
            raw = raw / norm
        return raw.astype(np.float32)

    def embed(self, text: str) -> np.ndarray:
        with self._lock:
            self.embed_count += 1
            self.texts.append(text)
        return self._vector(text)

    def embed_batch(
        self, texts: Sequence[str], batch_size: int = 32
    ) -> List[np.ndarray]:
        return [self.embed(text) for text in texts]


class KeywordEmbeddingProvider(FakeEmbeddingProvider):
    """Bag-of-words provider over a fixed vocabulary.

    Dimension i counts occurrences of ``vocabulary[i]`` (case-insensitive,
    whole words). Text without vocabulary words embeds to the zero vector,
    which has similarity 0 with everything.
    """

    def __init__(self, vocabulary: Sequence[str], model_id: str = "fake-keywords") -> None:
        super().__init__(dim=len(vocabulary), model_id=model_id)
        self.vocabulary = [w.lower() for w in vocabulary]

    def _vector(self, text: str) -> np.ndarray:
        words = re.findall(r"\w+", text.lower())
        vector = np.array(
            [words.count(term) for term in self.vocabulary], dtype=np.float64
        )
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.astype(np.float32)


class FailingEmbeddingProvider(FakeEmbeddingProvider):
    """Provider whose every embed call raises ``error``."""

    def __init__(self, error: Optional[Exception] = None, dim: int = 8, model_id: str = "fake-hash") -> None:
        super().__init__(dim=dim, model_id=model_id)
        self.error = error or RuntimeError("quota exhausted")

    def embed(self, text: str) -> np.ndarray:
        with self._lock:
            self.embed_count += 1
        raise self.error


class FlakyEmbeddingProvider(FakeEmbeddingProvider):
    """Fails the first ``failures`` calls with a transient error, then works."""

    def __init__(self, failures: int, dim: int = 8) -> None:
        super().__init__(dim=dim)
        self.failures = failures

    def embed(self, text: str) -> np.ndarray:
        with self._lock:
            self.embed_count += 1
            attempt = self.embed_count
        if attempt <= self.failures:
            raise ConnectionError("connection reset by peer")
        return self._vector(text)


class WrongDimensionProvider(FakeEmbeddingProvider):
    """Claims ``dim`` dimensions but returns vectors of ``actual_dim``."""

    def __init__(self, dim: int = 8, actual_dim: int = 4) -> None:
        super().__init__(dim=dim)
        self.actual_dim = actual_dim

    def embed(self, text: str) -> np.ndarray:
        with self._lock:
            self.embed_count += 1
        return np.ones(self.actual_dim, dtype=np.float32)


class GatedEmbeddingProvider(FakeEmbeddingProvider):
    """Blocks every embed call until ``gate`` is set.

    ``entered`` is set as soon as the first call is waiting, so tests can
    line up concurrent callers deterministically.
    """

    def __init__(self, dim: int = 8, model_id: str = "fake-hash") -> None:
        super().__init__(dim=dim, model_id=model_id)
        self.gate = threading.Event()
        self.entered = threading.Event()

    def embed(self, text: str) -> np.ndarray:
        with self._lock:
            self.embed_count += 1
            self.texts.append(text)
        self.entered.set()
        self.gate.wait(timeout=10)
        return self._vector(text)


class HookedEmbeddingProvider(FakeEmbeddingProvider):
    """Runs ``on_embed`` once, on the next embed call, before embedding.

    Lets tests change the database while an operation is waiting on the
    provider.
    """

    def __init__(self, dim: int = 8, model_id: str = "fake-hash") -> None:
        super().__init__(dim=dim, model_id=model_id)
        self.on_embed = None

    def embed(self, text: str) -> np.ndarray:
        with self._lock:
            hook, self.on_embed = self.on_embed, None
        if hook is not None:
            hook()
        return super().embed(text)


class SlowEmbeddingProvider(FakeEmbeddingProvider):
    """Takes ``delay`` seconds per embed call."""

    def __init__(self, delay: float, dim: int = 8) -> None:
        super().__init__(dim=dim)
        self.delay = delay

    def embed(self, text: str) -> np.ndarray:
        time.sleep(self.delay)
        return super().embed(text)
