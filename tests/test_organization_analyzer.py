"""Tests for folder/tag suggestions."""
import numpy as np
import pytest

from smartnote_mcp.exceptions import InvalidInputError
from smartnote_mcp.models.schema import Folder, Tag
from smartnote_mcp.services.content_normalizer import normalize, prepare_embedding_text
from smartnote_mcp.services.embedding_service import EmbeddingService
from smartnote_mcp.services.organization_analyzer import (
    AnalysisContext,
    CentroidIndex,
    OrganizationAnalyzer,
    build_centroids,
    embedding_layer,
    heuristic_layer,
)
from smartnote_mcp.services.signals import detect_signals
from tests.fakes import FailingEmbeddingProvider, KeywordEmbeddingProvider

QUICKSORT = "def quicksort(arr): ..."


@pytest.fixture
def inbox():
    return Folder(id="inbox", owner_id="o", name="Inbox", is_default=True)


@pytest.fixture
def keyword_service(settings):
    provider = KeywordEmbeddingProvider(["sort", "array", "pivot", "soup", "broth"])
    service = EmbeddingService(provider, settings, sleep=lambda _: None)
    yield service
    service.shutdown()


def make_context(raw, folders, tags=(), centroids=None, vector=None):
    normalized = normalize(raw)
    return AnalysisContext(
        normalized=normalized,
        signals=detect_signals(raw, normalized),
        title=None,
        was_truncated=False,
        folders=list(folders),
        tags=list(tags),
        centroids=centroids or CentroidIndex(),
        vector=vector,
    )


class TestQuicksortScenario:
    def test_heuristic_only(self, settings, inbox):
        suggestion = OrganizationAnalyzer(None, settings).analyze(QUICKSORT, [inbox], [])

        assert suggestion.heuristic_only
        folder = suggestion.folder
        assert folder.is_new
        assert folder.name == "Python"
        assert folder.parent_id is None
        assert folder.confidence <= settings.heuristic_confidence_cap
        assert [t.name for t in suggestion.tags] == ["python"]
        assert suggestion.tags[0].is_new
        assert suggestion.title == QUICKSORT

    def test_with_embeddings_and_no_similar_folder(self, settings, inbox, keyword_service):
        soup = Folder(id="soups", owner_id="o", name="Soups")
        centroids = CentroidIndex(folders={"soups": np.array([0, 0, 0, 1, 1], dtype=np.float32)})

        suggestion = OrganizationAnalyzer(keyword_service, settings).analyze(
            QUICKSORT, [inbox, soup], [], centroids
        )

        assert not suggestion.heuristic_only
        assert suggestion.folder.is_new
        assert suggestion.folder.name == "Python"
        assert suggestion.tags[0].name == "python"

    def test_provider_failure_falls_back_to_heuristics(self, settings, inbox):
        service = EmbeddingService(FailingEmbeddingProvider(), settings, sleep=lambda _: None)
        try:
            suggestion = OrganizationAnalyzer(service, settings).analyze(QUICKSORT, [inbox], [])
        finally:
            service.shutdown()

        assert suggestion.heuristic_only
        assert suggestion.folder.name == "Python"

    def test_existing_language_folder_is_reused(self, settings, inbox):
        programming = Folder(id="prog", owner_id="o", name="Programming")
        python = Folder(id="py", owner_id="o", name="python", parent_id="prog", depth=1)

        suggestion = OrganizationAnalyzer(None, settings).analyze(
            QUICKSORT, [inbox, programming, python], []
        )

        assert not suggestion.folder.is_new
        assert suggestion.folder.folder_id == "py"


class TestEmbeddingLayer:
    def test_similar_folder_is_suggested(self, settings, inbox):
        algorithms = Folder(id="algo", owner_id="o", name="Algorithms")
        ctx = make_context(
            "Partition the array around a pivot",
            [inbox, algorithms],
            centroids=CentroidIndex(folders={"algo": np.array([1.0, 1.0], dtype=np.float32)}),
            vector=np.array([1.0, 0.9], dtype=np.float32),
        )

        suggestion = embedding_layer(ctx, settings)

        assert suggestion.folder.folder_id == "algo"
        assert not suggestion.folder.is_new
        assert suggestion.folder.confidence >= settings.folder_match_threshold

    def test_new_folder_under_deep_parent_is_clamped(self, settings, inbox):
        a = Folder(id="a", owner_id="o", name="Code")
        b = Folder(id="b", owner_id="o", name="Snippets", parent_id="a", depth=1)
        c = Folder(id="c", owner_id="o", name="Sorting", parent_id="b", depth=2)
        # cosine 0.7: above the parent threshold, below the folder threshold
        ctx = make_context(
            QUICKSORT,
            [inbox, a, b, c],
            centroids=CentroidIndex(folders={"c": np.array([1.0, 0.0], dtype=np.float32)}),
            vector=np.array([0.7, np.sqrt(1 - 0.49)], dtype=np.float32),
        )

        folder = embedding_layer(ctx, settings).folder

        assert folder.is_new
        assert folder.name == "Python"
        assert folder.parent_id == "b"
        assert folder.depth == 2
        assert folder.clamped

    def test_no_signal_and_no_match_uses_default_folder(self, settings, inbox):
        ctx = make_context(
            "Buy milk and eggs",
            [inbox],
            vector=np.array([1.0, 0.0], dtype=np.float32),
        )
        folder = embedding_layer(ctx, settings).folder
        assert folder.folder_id == "inbox"
        assert folder.confidence < 0.45

    def test_similar_tags(self, settings, inbox):
        tags = [Tag(id=1, name="algorithms"), Tag(id=2, name="cooking")]
        ctx = make_context(
            "Binary heaps",
            [inbox],
            tags=tags,
            centroids=CentroidIndex(tags={
                1: np.array([1.0, 0.0], dtype=np.float32),
                2: np.array([0.0, 1.0], dtype=np.float32),
            }),
            vector=np.array([0.95, 0.1], dtype=np.float32),
        )

        suggestion = embedding_layer(ctx, settings)

        assert [t.name for t in suggestion.tags] == ["algorithms"]
        assert suggestion.tags[0].tag_id == 1
        assert not suggestion.tags[0].is_new

    def test_skipped_without_vector(self, settings, inbox):
        assert embedding_layer(make_context("text", [inbox]), settings) is None


class TestHeuristicLayer:
    def test_math_content(self, settings, inbox):
        ctx = make_context("Euler's identity: $$e^{i\\pi} + 1 = 0$$", [inbox])
        suggestion = heuristic_layer(ctx, settings)

        assert suggestion.folder.name == "Mathematics"
        assert "math" in [t.name for t in suggestion.tags]

    def test_literal_tag_match(self, settings, inbox):
        tags = [Tag(id=7, name="machine-learning")]
        ctx = make_context("Notes on machine learning pipelines", [inbox], tags=tags)

        suggestion = heuristic_layer(ctx, settings)

        assert [(t.name, t.tag_id) for t in suggestion.tags] == [("machine-learning", 7)]
        assert suggestion.folder.folder_id == "inbox"

    def test_heading_becomes_folder_label(self, settings, inbox):
        ctx = make_context("# Travel Plans\nFlights and hotels", [inbox])
        folder = heuristic_layer(ctx, settings).folder
        assert folder.name == "Travel Plans"
        assert folder.is_new

    def test_nothing_to_suggest(self, settings):
        suggestion = OrganizationAnalyzer(None, settings).analyze("Buy milk", [], [])
        assert suggestion.is_empty
        assert suggestion.heuristic_only
        assert suggestion.confidence == 0.0


class TestAnalyzeInput:
    @pytest.mark.parametrize("raw", ["", "   ", "<p> </p>", None])
    def test_empty_content_is_rejected(self, settings, raw):
        with pytest.raises(InvalidInputError):
            OrganizationAnalyzer(None, settings).analyze(raw, [], [])

    def test_long_content_is_truncated(self, settings, inbox):
        analyzer = OrganizationAnalyzer(None, settings.model_copy(update={"max_content_length": 20}))
        suggestion = analyzer.analyze("word " * 100, [inbox], [])
        assert suggestion.was_truncated

    def test_candidate_vector_uses_stored_note_text_shape(self, settings, embedding_service, fake_provider, inbox):
        raw = "<p>Partition around a pivot</p>"
        OrganizationAnalyzer(embedding_service, settings).analyze(raw, [inbox], [], title="Quicksort")
        assert fake_provider.texts[-1] == prepare_embedding_text(
            "Quicksort", raw, settings.embedding_max_chars
        )

    def test_title_alone_is_enough(self, settings, inbox):
        suggestion = OrganizationAnalyzer(None, settings).analyze("", [inbox], [], title="Soup recipes")
        assert suggestion.title == "Soup recipes"


def test_build_centroids_skips_missing_vectors():
    vectors = {
        "n1": np.array([1.0, 0.0], dtype=np.float32),
        "n2": np.array([0.0, 1.0], dtype=np.float32),
        "n3": None,
    }
    centroids = build_centroids({"f1": ["n1", "n2"], "f2": ["n3"]}, vectors)

    assert set(centroids) == {"f1"}
    np.testing.assert_allclose(centroids["f1"], [0.5, 0.5])
