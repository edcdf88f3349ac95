"""Semantic search over an owner's notes.

Score = semantic_weight * cosine(query, note) + lexical_weight * bonus,
where cosine is clamped to [0, 1] and the bonus is 1 iff the query is a
case-insensitive substring of the title, the normalized content, a tag
name or the folder name. Notes without a vector still take part with a
semantic term of zero; if the query itself cannot be embedded, every
note is ranked lexically.

Ties are broken by contentUpdatedAt (newest first), then case-folded
title, then id, so the order is total and repeatable.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
)

import numpy as np

from smartnote_mcp.config import SmartNoteConfig, config as default_config
from smartnote_mcp.exceptions import (
    ErrorCode,
    InvalidInputError,
    ProviderUnavailableError,
    SearchError,
)
from smartnote_mcp.models.schema import Note, normalize_tag_name
from smartnote_mcp.observability import timed_operation
from smartnote_mcp.services.content_normalizer import normalize
from smartnote_mcp.utils import contains_casefold, cosine_similarity

if TYPE_CHECKING:
    from smartnote_mcp.services.embedding_cache import EmbeddingCache
    from smartnote_mcp.services.embedding_service import EmbeddingService
    from smartnote_mcp.storage.folder_repository import FolderRepository
    from smartnote_mcp.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


def similarity_level(similarity: float) -> str:
    """Human-readable label for a [0, 1] similarity."""
    if similarity >= 0.9:
        return "Very High"
    if similarity >= 0.8:
        return "High"
    if similarity >= 0.7:
        return "Good"
    if similarity >= 0.6:
        return "Moderate"
    return "Low"


@dataclass
class SearchHit:
    """A ranked note.

    Attributes:
        note: The matched note.
        score: Blended relevance score.
        semantic_score: Clamped cosine similarity (0 when unavailable).
        lexical_match: Whether the lexical bonus applied.
        degraded: No vector was available for this note or for the query.
    """

    note: Note
    score: float
    semantic_score: float
    lexical_match: bool
    degraded: bool = False

    @property
    def similarity_label(self) -> str:
        return similarity_level(self.semantic_score)


def ranking_key(hit: SearchHit):
    return (
        -hit.score,
        -hit.note.content_updated_at.timestamp(),
        hit.note.title.casefold(),
        hit.note.id,
    )


class SearchResults(Sequence[SearchHit]):
    """Lazy, finite, restartable result sequence.

    Nothing (not even the query embedding) is computed until the results
    are first read; the ranked list is then memoized, so iterating again
    yields the same order without new provider calls.
    """

    def __init__(self, compute: Callable[[], List[SearchHit]]):
        self._compute = compute
        self._hits: Optional[List[SearchHit]] = None
        self._lock = threading.Lock()

    def _materialize(self) -> List[SearchHit]:
        if self._hits is None:
            with self._lock:
                if self._hits is None:
                    self._hits = self._compute()
        return self._hits

    @property
    def evaluated(self) -> bool:
        return self._hits is not None

    def __iter__(self) -> Iterator[SearchHit]:
        return iter(self._materialize())

    def __len__(self) -> int:
        return len(self._materialize())

    def __getitem__(self, index):
        return self._materialize()[index]


class SemanticSearchRanker:
    """Ranks candidate notes against a query.

    Args:
        cache: EmbeddingCache used for candidate vectors.
        embedding_service: Used to embed the query (never cached);
            None ranks lexically.
        settings: Configuration; defaults to the global config.
    """

    def __init__(
        self,
        cache: EmbeddingCache,
        embedding_service: Optional[EmbeddingService] = None,
        settings: Optional[SmartNoteConfig] = None,
    ):
        self.cache = cache
        self.embedding_service = embedding_service
        self.settings = settings or default_config

    def _embed_query(self, query: str) -> Optional[np.ndarray]:
        if self.embedding_service is None:
            return None
        try:
            return self.embedding_service.embed(query)
        except ProviderUnavailableError as e:
            logger.warning(f"Query embedding failed, ranking lexically: {e.message}")
            return None

    @staticmethod
    def lexical_match(query: str, note: Note, folder_name: Optional[str] = None) -> bool:
        needle = query.strip()
        return (
            contains_casefold(note.title, needle)
            or contains_casefold(normalize(note.content), needle)
            or any(contains_casefold(tag.name, needle) for tag in note.tags)
            or contains_casefold(folder_name, needle)
        )

    def _rank(
        self,
        query: str,
        candidates: List[Note],
        folder_names: Mapping[str, str],
    ) -> List[SearchHit]:
        semantic_weight = self.settings.semantic_weight
        lexical_weight = self.settings.lexical_weight

        with timed_operation("search", query=query[:50], candidates=len(candidates)) as op:
            query_vector = self._embed_query(query)
            vectors: Dict[str, Optional[np.ndarray]] = {}
            if query_vector is not None and candidates:
                vectors = self.cache.get_or_compute_many(candidates)

            hits = []
            for note in candidates:
                note_vector = vectors.get(note.id)
                semantic = cosine_similarity(query_vector, note_vector)
                lexical = self.lexical_match(
                    query, note, folder_names.get(note.folder_id) if note.folder_id else None
                )
                hits.append(SearchHit(
                    note=note,
                    score=semantic_weight * semantic + lexical_weight * (1.0 if lexical else 0.0),
                    semantic_score=semantic,
                    lexical_match=lexical,
                    degraded=query_vector is None or note_vector is None,
                ))
            hits.sort(key=ranking_key)
            op["result_count"] = len(hits)
            op["degraded"] = query_vector is None
            return hits

    def search(
        self,
        query: str,
        candidates: Sequence[Note],
        folder_names: Optional[Mapping[str, str]] = None,
    ) -> SearchResults:
        """Rank candidates against query; evaluation is deferred to first read."""
        candidates = list(candidates)
        folder_names = dict(folder_names or {})
        return SearchResults(lambda: self._rank(query, candidates, folder_names))


class SearchService:
    """Owner-scoped search with validation and filters."""

    def __init__(
        self,
        repository: NoteRepository,
        folder_repository: FolderRepository,
        ranker: SemanticSearchRanker,
        settings: Optional[SmartNoteConfig] = None,
    ):
        self.repository = repository
        self.folder_repository = folder_repository
        self.ranker = ranker
        self.settings = settings or default_config

    def validate_query(self, query: str) -> str:
        if not isinstance(query, str) or not query.strip():
            raise InvalidInputError("Search query cannot be empty", field="query")
        query = query.strip()
        if len(query) > self.settings.max_query_length:
            raise SearchError(
                f"Search query exceeds {self.settings.max_query_length} characters",
                query=query,
                code=ErrorCode.SEARCH_INVALID_QUERY,
            )
        return query

    def search(
        self,
        query: str,
        owner_id: str,
        folder_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> List[SearchHit]:
        """Search an owner's notes.

        Args:
            query: Free-text query (non-empty, bounded length).
            owner_id: Only this owner's notes are candidates.
            folder_id: Restrict to one folder.
            tags: Restrict to notes carrying any of these tags.
            limit: Maximum hits (default search_max_results).
        """
        query = self.validate_query(query)
        limit = limit or self.settings.search_max_results
        if limit < 1:
            raise SearchError("limit must be positive", query=query, code=ErrorCode.SEARCH_INVALID_QUERY)

        candidates = self.repository.get_all(owner_id, folder_id=folder_id)
        if tags:
            wanted = {normalize_tag_name(t) for t in tags if t.strip()}
            candidates = [n for n in candidates if wanted.intersection(n.tag_names)]

        folder_names = {f.id: f.name for f in self.folder_repository.get_all(owner_id)}
        results = self.ranker.search(query, candidates, folder_names)
        return list(results[:limit])
