"""Common test fixtures for the SmartNote MCP server."""

import pytest

from smartnote_mcp.config import config
from smartnote_mcp.models.db_models import init_db
from smartnote_mcp.observability import metrics
from smartnote_mcp.services.embedding_cache import EmbeddingCache
from smartnote_mcp.services.embedding_service import EmbeddingService
from smartnote_mcp.services.note_service import NoteService
from smartnote_mcp.services.organization_analyzer import OrganizationAnalyzer
from smartnote_mcp.services.search_service import SearchService, SemanticSearchRanker
from smartnote_mcp.storage import FolderRepository, NoteRepository, TagRepository
from tests.fakes import FakeEmbeddingProvider

OWNER = "owner-1"


@pytest.fixture(autouse=True)
def _isolate_global_state(tmp_path, monkeypatch):
    """Keep the global config and metrics file inside tmp_path."""
    monkeypatch.setattr(config, "database_path", tmp_path / "global.db")
    monkeypatch.setattr(metrics, "_metrics_file", tmp_path / "metrics.json")


@pytest.fixture
def settings(tmp_path):
    """Fast, deterministic engine settings for 8-dimensional fake vectors."""
    return config.model_copy(update={
        "database_path": tmp_path / "smartnote.db",
        "default_owner_id": OWNER,
        "embeddings_enabled": True,
        "embedding_model": "fake-hash",
        "embedding_dim": 8,
        "embedding_timeout": 2.0,
        "embedding_max_retries": 3,
        "embedding_retry_delay": 0.0,
        "embedding_concurrency": 4,
        "semantic_weight": 0.7,
        "lexical_weight": 0.3,
        "folder_match_threshold": 0.75,
        "parent_match_threshold": 0.6,
        "tag_match_threshold": 0.5,
        "tag_top_k": 5,
        "heuristic_confidence_cap": 0.6,
        "max_content_length": 10000,
        "search_max_results": 20,
        "max_query_length": 500,
    })


@pytest.fixture
def engine(settings):
    engine = init_db(f"sqlite:///{settings.database_path}")
    yield engine
    engine.dispose()


@pytest.fixture
def note_repository(engine):
    return NoteRepository(engine=engine)


@pytest.fixture
def folder_repository(note_repository):
    return FolderRepository(note_repository.session_factory, default_folder_name="Inbox")


@pytest.fixture
def tag_repository(note_repository):
    return TagRepository(note_repository.session_factory)


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def embedding_service(fake_provider, settings):
    service = EmbeddingService(fake_provider, settings, sleep=lambda _: None)
    yield service
    service.shutdown()


@pytest.fixture
def owner():
    return OWNER


@pytest.fixture
def make_note_service(note_repository, folder_repository, tag_repository, settings):
    """Factory for NoteService over the shared test database."""

    def factory(embedding_service=None) -> NoteService:
        cache = EmbeddingCache(note_repository, embedding_service, settings)
        return NoteService(
            note_repository,
            folder_repository,
            tag_repository,
            cache,
            OrganizationAnalyzer(embedding_service, settings),
            settings,
        )

    return factory


@pytest.fixture
def make_search_service(note_repository, folder_repository, settings):
    """Factory for SearchService over the shared test database."""

    def factory(embedding_service=None) -> SearchService:
        cache = EmbeddingCache(note_repository, embedding_service, settings)
        ranker = SemanticSearchRanker(cache, embedding_service, settings)
        return SearchService(note_repository, folder_repository, ranker, settings)

    return factory


@pytest.fixture
def note_service(make_note_service, embedding_service):
    return make_note_service(embedding_service)


@pytest.fixture
def offline_note_service(make_note_service):
    """NoteService with embeddings disabled (heuristic and lexical only)."""
    return make_note_service()
