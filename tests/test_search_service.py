"""Tests for blended semantic/lexical search."""
import numpy as np
import pytest

from smartnote_mcp.exceptions import ErrorCode, InvalidInputError, SearchError
from smartnote_mcp.models.schema import Note, Tag
from smartnote_mcp.services.embedding_cache import EmbeddingCache
from smartnote_mcp.services.embedding_service import EmbeddingService
from smartnote_mcp.services.search_service import (
    SearchHit,
    SemanticSearchRanker,
    ranking_key,
    similarity_level,
)
from tests.fakes import FailingEmbeddingProvider, KeywordEmbeddingProvider


@pytest.fixture
def keyword_provider():
    return KeywordEmbeddingProvider(["search", "binary", "derivative", "calculus", "pasta"])


@pytest.fixture
def keyword_service(keyword_provider, settings):
    service = EmbeddingService(keyword_provider, settings, sleep=lambda _: None)
    yield service
    service.shutdown()


@pytest.fixture
def failing_service(settings):
    service = EmbeddingService(FailingEmbeddingProvider(), settings, sleep=lambda _: None)
    yield service
    service.shutdown()


@pytest.fixture
def two_notes(offline_note_service):
    binary = offline_note_service.create_note(
        "Binary Search Template", "lo, hi = 0, len(a) - 1", tags=["searching"]
    )
    derivative = offline_note_service.create_note(
        "Derivative Rules", "d/dx x^n = n x^(n-1)", tags=["calculus"]
    )
    return binary, derivative


class TestScenarios:
    def test_title_match_wins_with_near_zero_similarity(
        self, make_search_service, settings, owner, two_notes
    ):
        binary, derivative = two_notes
        # Unrelated vocabulary: every similarity is zero
        provider = KeywordEmbeddingProvider(["pasta", "tomato"])
        service = EmbeddingService(provider, settings, sleep=lambda _: None)
        try:
            hits = make_search_service(service).search("search", owner)
        finally:
            service.shutdown()

        assert [h.note.id for h in hits] == [binary.id, derivative.id]
        assert hits[0].lexical_match
        assert hits[0].score == pytest.approx(settings.lexical_weight)
        assert hits[1].score == 0.0

    def test_semantic_ranking(self, make_search_service, keyword_service, owner, two_notes):
        binary, derivative = two_notes
        hits = make_search_service(keyword_service).search("calculus derivative", owner)

        assert hits[0].note.id == derivative.id
        assert hits[0].semantic_score > hits[1].semantic_score

    def test_provider_failure_keeps_notes(self, make_search_service, failing_service, owner, two_notes):
        hits = make_search_service(failing_service).search("search", owner)

        assert len(hits) == 2
        assert all(h.degraded for h in hits)
        assert all(h.semantic_score == 0.0 for h in hits)
        assert hits[0].note.title == "Binary Search Template"

    def test_note_without_vector_still_ranked(
        self, note_repository, settings, keyword_service, owner, two_notes
    ):
        binary, derivative = two_notes
        cache = EmbeddingCache(note_repository, keyword_service, settings)

        def flaky_many(notes):
            return {n.id: (None if n.id == binary.id else np.ones(5, dtype=np.float32)) for n in notes}

        cache.get_or_compute_many = flaky_many
        ranker = SemanticSearchRanker(cache, keyword_service, settings)
        hits = list(ranker.search("binary search", [binary, derivative]))

        assert {h.note.id for h in hits} == {binary.id, derivative.id}
        binary_hit = next(h for h in hits if h.note.id == binary.id)
        assert binary_hit.degraded
        assert binary_hit.semantic_score == 0.0
        assert binary_hit.lexical_match


class TestOrdering:
    def test_ties_are_broken_deterministically(self, settings):
        notes = [Note(owner_id="o", title=t) for t in ("beta", "Alpha", "gamma")]
        same_time = notes[0].content_updated_at
        for note in notes:
            note.content_updated_at = same_time
        hits = [SearchHit(note=n, score=0.5, semantic_score=0.0, lexical_match=False) for n in notes]

        ordered = sorted(hits, key=ranking_key)
        reordered = sorted(reversed(hits), key=ranking_key)

        assert [h.note.title for h in ordered] == ["Alpha", "beta", "gamma"]
        assert [h.note.id for h in ordered] == [h.note.id for h in reordered]

    def test_newer_content_breaks_score_ties(self, offline_note_service, make_search_service, owner):
        older = offline_note_service.create_note("Pasta one", "pasta")
        newer = offline_note_service.create_note("Pasta two", "pasta")

        hits = make_search_service().search("pasta", owner)

        assert [h.note.id for h in hits] == [newer.id, older.id]

    def test_repeated_searches_return_the_same_order(
        self, make_search_service, keyword_service, owner, two_notes
    ):
        search = make_search_service(keyword_service)
        first = [h.note.id for h in search.search("binary", owner)]
        second = [h.note.id for h in search.search("binary", owner)]
        assert first == second


class TestLazyResults:
    def test_nothing_runs_until_read(self, note_repository, settings, keyword_provider, keyword_service, two_notes):
        cache = EmbeddingCache(note_repository, keyword_service, settings)
        results = SemanticSearchRanker(cache, keyword_service, settings).search(
            "binary", list(two_notes)
        )

        assert not results.evaluated
        assert keyword_provider.embed_count == 0

        first_pass = [h.note.id for h in results]
        calls = keyword_provider.embed_count
        second_pass = [h.note.id for h in results]

        assert results.evaluated
        assert first_pass == second_pass
        assert keyword_provider.embed_count == calls
        assert len(results) == 2
        assert results[0].note.id == first_pass[0]


class TestFilters:
    def test_owner_scoping(self, offline_note_service, make_search_service, owner):
        offline_note_service.create_note("Mine", "shared words")
        offline_note_service.create_note("Theirs", "shared words", owner_id="someone-else")

        hits = make_search_service().search("shared", owner)

        assert [h.note.title for h in hits] == ["Mine"]

    def test_folder_filter(self, offline_note_service, make_search_service, owner):
        folder = offline_note_service.create_folder("Recipes")
        inside = offline_note_service.create_note("Soup", "broth", folder_id=folder.id)
        offline_note_service.create_note("Stock", "broth")

        hits = make_search_service().search("broth", owner, folder_id=folder.id)

        assert [h.note.id for h in hits] == [inside.id]

    def test_tag_filter(self, make_search_service, owner, two_notes):
        binary, _ = two_notes
        hits = make_search_service().search("rules", owner, tags=["Searching"])
        assert [h.note.id for h in hits] == [binary.id]

    def test_folder_name_counts_as_lexical_match(self, offline_note_service, make_search_service, owner):
        folder = offline_note_service.create_folder("Algorithms")
        note = offline_note_service.create_note("Untitled", "nothing here", folder_id=folder.id)

        hits = make_search_service().search("algorithm", owner)

        assert hits[0].note.id == note.id
        assert hits[0].lexical_match

    def test_tag_name_counts_as_lexical_match(self, make_search_service, owner, two_notes):
        _, derivative = two_notes
        hits = make_search_service().search("calc", owner)
        assert hits[0].note.id == derivative.id
        assert hits[0].lexical_match

    def test_limit(self, offline_note_service, make_search_service, owner):
        for i in range(5):
            offline_note_service.create_note(f"Note {i}", "common")
        assert len(make_search_service().search("common", owner, limit=3)) == 3


class TestValidation:
    @pytest.mark.parametrize("query", ["", "   "])
    def test_blank_query(self, make_search_service, owner, query):
        with pytest.raises(InvalidInputError):
            make_search_service().search(query, owner)

    def test_query_too_long(self, make_search_service, owner, settings):
        with pytest.raises(SearchError) as exc_info:
            make_search_service().search("x" * (settings.max_query_length + 1), owner)
        assert exc_info.value.code == ErrorCode.SEARCH_INVALID_QUERY


def test_similarity_levels():
    assert similarity_level(0.95) == "Very High"
    assert similarity_level(0.85) == "High"
    assert similarity_level(0.75) == "Good"
    assert similarity_level(0.65) == "Moderate"
    assert similarity_level(0.1) == "Low"


def test_lexical_match_ignores_markup():
    note = Note(owner_id="o", title="t", content="<p>Graph <b>traversal</b></p>", tags=[Tag(name="x")])
    assert SemanticSearchRanker.lexical_match("graph traversal", note)
    assert not SemanticSearchRanker.lexical_match("<b>", note)
