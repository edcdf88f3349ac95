"""Tests for EmbeddingService timeout, retry and validation behavior."""
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from smartnote_mcp.exceptions import ErrorCode, InvalidInputError, ProviderUnavailableError
from smartnote_mcp.services.embedding_service import EmbeddingService, is_retryable_error
from tests.fakes import (
    FailingEmbeddingProvider,
    FakeEmbeddingProvider,
    FlakyEmbeddingProvider,
    GatedEmbeddingProvider,
    SlowEmbeddingProvider,
    WrongDimensionProvider,
)


@pytest.fixture
def sleeps():
    return []


def make_service(provider, settings, sleeps, **overrides):
    if overrides:
        settings = settings.model_copy(update=overrides)
    return EmbeddingService(provider, settings, sleep=sleeps.append)


class TestEmbed:
    def test_embeds_lazily(self, settings, sleeps):
        provider = FakeEmbeddingProvider()
        service = make_service(provider, settings, sleeps)
        assert not service.embedder_loaded

        vector = service.embed("hello world")

        assert vector.dtype == np.float32
        assert vector.shape == (8,)
        assert provider.load_count == 1
        assert service.model_id == "fake-hash"
        assert service.dimension == 8
        service.shutdown()

    def test_deterministic(self, embedding_service):
        first = embedding_service.embed("same text")
        second = embedding_service.embed("same text")
        np.testing.assert_array_equal(first, second)

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_empty_text_rejected_without_provider_call(self, settings, sleeps, text):
        provider = FakeEmbeddingProvider()
        service = make_service(provider, settings, sleeps)
        with pytest.raises(InvalidInputError):
            service.embed(text)
        assert provider.embed_count == 0
        service.shutdown()

    def test_batch(self, embedding_service):
        vectors = embedding_service.embed_batch(["a", "b", "c"])
        assert len(vectors) == 3
        assert embedding_service.embed_batch([]) == []


class TestRetry:
    def test_transient_failures_are_retried_with_backoff(self, settings, sleeps):
        provider = FlakyEmbeddingProvider(failures=2)
        service = make_service(provider, settings, sleeps, embedding_retry_delay=0.5)

        vector = service.embed("retry me")

        assert vector.shape == (8,)
        assert provider.embed_count == 3
        assert sleeps == [0.5, 1.0]
        service.shutdown()

    def test_gives_up_after_max_retries(self, settings, sleeps):
        provider = FlakyEmbeddingProvider(failures=10)
        service = make_service(provider, settings, sleeps)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            service.embed("never works")

        assert provider.embed_count == settings.embedding_max_retries
        assert exc_info.value.retryable
        service.shutdown()

    def test_permanent_failure_is_not_retried(self, settings, sleeps):
        provider = FailingEmbeddingProvider(RuntimeError("quota exhausted"))
        service = make_service(provider, settings, sleeps)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            service.embed("no quota")

        assert provider.embed_count == 1
        assert sleeps == []
        assert isinstance(exc_info.value.original_error, RuntimeError)
        service.shutdown()

    def test_retryable_flag_and_patterns(self):
        assert is_retryable_error(ProviderUnavailableError("x", retryable=True))
        assert not is_retryable_error(ProviderUnavailableError("x", retryable=False))
        assert is_retryable_error(ConnectionError("Connection reset"))
        assert is_retryable_error(RuntimeError("HTTP 429 Too Many Requests"))
        assert not is_retryable_error(ValueError("invalid api key"))


class TestFailures:
    def test_malformed_vector(self, settings, sleeps):
        service = make_service(WrongDimensionProvider(dim=8, actual_dim=4), settings, sleeps)
        with pytest.raises(ProviderUnavailableError) as exc_info:
            service.embed("bad shape")
        assert exc_info.value.code == ErrorCode.EMBEDDING_MALFORMED
        service.shutdown()

    def test_timeout_is_a_provider_failure(self, settings, sleeps):
        provider = GatedEmbeddingProvider()
        service = make_service(
            provider, settings, sleeps, embedding_timeout=0.05, embedding_max_retries=1
        )
        try:
            with pytest.raises(ProviderUnavailableError) as exc_info:
                service.embed("slow")
            assert exc_info.value.code == ErrorCode.EMBEDDING_TIMEOUT
        finally:
            provider.gate.set()
            service.shutdown()

    def test_load_failure(self, settings, sleeps):
        class BrokenLoad(FakeEmbeddingProvider):
            def load(self):
                raise OSError("cannot reach endpoint")

        service = make_service(BrokenLoad(), settings, sleeps)
        with pytest.raises(ProviderUnavailableError) as exc_info:
            service.embed("text")
        assert exc_info.value.code == ErrorCode.EMBEDDING_CLIENT_LOAD_FAILED
        service.shutdown()

    def test_shutdown(self, settings, sleeps):
        provider = FakeEmbeddingProvider()
        service = make_service(provider, settings, sleeps)
        service.embed("warm up")
        service.shutdown()

        assert provider.unload_count == 1
        with pytest.raises(ProviderUnavailableError):
            service.embed("after shutdown")

    def test_queue_wait_does_not_count_toward_timeout(self, settings, sleeps):
        # Twelve 0.1s calls on two workers queue for ~0.5s; each call alone is well under the limit
        provider = SlowEmbeddingProvider(delay=0.1)
        service = make_service(
            provider,
            settings,
            sleeps,
            embedding_timeout=0.5,
            embedding_concurrency=2,
            embedding_max_retries=1,
        )
        try:
            with ThreadPoolExecutor(max_workers=12) as pool:
                vectors = list(pool.map(service.embed, [f"text {i}" for i in range(12)]))
        finally:
            service.shutdown()

        assert len(vectors) == 12
        assert provider.embed_count == 12
