"""Per-note embedding cache keyed by content timestamp.

A stored record is valid for a note iff it was computed from the note's
current content (``source_timestamp >= note.content_updated_at``) by the
active model with the active dimension. Everything else is recomputed
lazily on the next read.

Writes are ordered by source timestamp, never by completion order: the
repository's conditional upsert refuses to replace a newer record, and a
writer that loses returns the newer stored vector instead of its own.
Concurrent reads of the same note version share one provider call.
"""

import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

import numpy as np

from smartnote_mcp.config import SmartNoteConfig, config as default_config
from smartnote_mcp.exceptions import (
    CacheWriteConflict,
    ProviderUnavailableError,
    SmartNoteError,
)
from smartnote_mcp.models.schema import EmbeddingRecord, Note, utc_now
from smartnote_mcp.observability import timed_operation
from smartnote_mcp.services.content_normalizer import prepare_embedding_text

logger = logging.getLogger(__name__)


class CacheState(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    MISSING = "missing"


class StaleReason(str, Enum):
    NONE = "none"
    NO_EMBEDDING = "no_embedding"
    INVALIDATED = "invalidated"
    CONTENT_UPDATED = "content_updated"
    MODEL_CHANGED = "model_changed"
    CORRUPTED = "corrupted"


class WriteDecision(str, Enum):
    ACCEPT = "accept"
    DISCARD = "discard"


def classify(
    record: Optional[EmbeddingRecord], note: Note, model_id: str, dimension: int
) -> Tuple[CacheState, StaleReason]:
    """Classify a stored record against the note it belongs to."""
    if record is None:
        return CacheState.MISSING, StaleReason.NO_EMBEDDING
    if record.model_id != model_id:
        return CacheState.STALE, StaleReason.MODEL_CHANGED
    if record.dimension != dimension:
        return CacheState.STALE, StaleReason.CORRUPTED
    if record.source_timestamp is None:
        return CacheState.STALE, StaleReason.INVALIDATED
    if record.source_timestamp < note.content_updated_at:
        return CacheState.STALE, StaleReason.CONTENT_UPDATED
    return CacheState.FRESH, StaleReason.NONE


def decide_write(
    stored: Optional[EmbeddingRecord], incoming: EmbeddingRecord
) -> WriteDecision:
    """Timestamp-ordered write rule (mirrors the repository's SQL predicate)."""
    if stored is None or stored.source_timestamp is None:
        return WriteDecision.ACCEPT
    if incoming.source_timestamp is None:
        return WriteDecision.DISCARD
    if incoming.source_timestamp >= stored.source_timestamp:
        return WriteDecision.ACCEPT
    return WriteDecision.DISCARD


class EmbeddingCache:
    """Lazily computed, timestamp-validated note embeddings.

    Args:
        repository: NoteRepository (record read, conditional write, bulk
            invalidation).
        embedding_service: EmbeddingService, or None when embeddings are
            disabled (every miss then degrades to last-known-good or fails).
        settings: Configuration; defaults to the global config.
    """

    def __init__(self, repository, embedding_service=None, settings: Optional[SmartNoteConfig] = None):
        self.settings = settings or default_config
        self.repository = repository
        self.embedding_service = embedding_service

        self._inflight: Dict[Tuple[str, Any, str], Future] = {}
        self._inflight_lock = threading.Lock()
        self._stats: Counter = Counter()
        self._stats_lock = threading.Lock()

    @property
    def model_id(self) -> str:
        if self.embedding_service is not None:
            return self.embedding_service.model_id
        return self.settings.embedding_model

    @property
    def dimension(self) -> int:
        if self.embedding_service is not None:
            return self.embedding_service.dimension
        return self.settings.embedding_dim

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[name] += amount

    def stats(self) -> Dict[str, int]:
        """Hit/miss/conflict counters since process start."""
        with self._stats_lock:
            return dict(self._stats)

    def classify(self, record: Optional[EmbeddingRecord], note: Note) -> Tuple[CacheState, StaleReason]:
        return classify(record, note, self.model_id, self.dimension)

    def get_or_compute(self, note: Note) -> np.ndarray:
        """Return the note's embedding, recomputing only when stale.

        Raises:
            ProviderUnavailableError: The provider failed and no
                last-known-good vector exists.
        """
        record = self.repository.get_embedding_record(note.id)
        return self._resolve(note, record)

    def _resolve(self, note: Note, record: Optional[EmbeddingRecord]) -> np.ndarray:
        state, reason = self.classify(record, note)
        if state is CacheState.FRESH:
            self._count("hits")
            return record.vector

        self._count("misses")
        logger.debug(f"Embedding for note {note.id} is {state.value} ({reason.value})")

        key = (note.id, note.content_updated_at, self.model_id)
        with self._inflight_lock:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future
        if not owner:
            self._count("coalesced")
            return future.result()

        try:
            vector = self._recompute(note, record)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(vector)
            return vector
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)

    def _last_known_good(self, record: Optional[EmbeddingRecord]) -> Optional[np.ndarray]:
        if (
            record is not None
            and record.model_id == self.model_id
            and record.dimension == self.dimension
        ):
            return record.vector
        return None

    def _write(self, note: Note, vector: np.ndarray) -> bool:
        """Store a vector computed from the note's current content.

        Returns False when a newer record was already stored.
        """
        incoming = EmbeddingRecord(
            note_id=note.id,
            vector=vector,
            source_timestamp=note.content_updated_at,
            model_id=self.model_id,
            computed_at=utc_now(),
        )
        if self.repository.store_embedding_record(incoming):
            self._count("computed")
            return True
        conflict = CacheWriteConflict(note.id)
        self._count("write_conflicts")
        logger.debug(str(conflict))
        return False

    def _recompute(self, note: Note, record: Optional[EmbeddingRecord]) -> np.ndarray:
        try:
            if self.embedding_service is None:
                raise ProviderUnavailableError(
                    "Embeddings are disabled", operation="get_or_compute"
                )
            text = prepare_embedding_text(
                note.title, note.content, self.settings.embedding_max_chars
            )
            vector = self.embedding_service.embed(text)
        except ProviderUnavailableError as e:
            self._count("provider_failures")
            fallback = self._last_known_good(record)
            if fallback is None:
                raise
            self._count("last_known_good")
            logger.warning(
                f"Using last-known-good embedding for note {note.id}: {e.message}"
            )
            return fallback

        if self._write(note, vector):
            return vector

        # A newer record landed first
        stored = self.repository.get_embedding_record(note.id)
        if stored is not None and self.classify(stored, note)[0] is CacheState.FRESH:
            return stored.vector
        return vector

    def get_or_compute_many(self, notes: Iterable[Note]) -> Dict[str, Optional[np.ndarray]]:
        """Resolve embeddings for many notes; failures map to None.

        Fresh records are served directly; the rest are recomputed with at
        most ``embedding_concurrency`` provider calls in flight.
        """
        notes = list(notes)
        if not notes:
            return {}
        records = self.repository.get_embedding_records(n.id for n in notes)
        results: Dict[str, Optional[np.ndarray]] = {}
        pending = []
        for note in notes:
            record = records.get(note.id)
            if self.classify(record, note)[0] is CacheState.FRESH:
                self._count("hits")
                results[note.id] = record.vector
            else:
                pending.append((note, record))

        if not pending:
            return results

        def resolve(item):
            note, record = item
            try:
                return note.id, self._resolve(note, record)
            except SmartNoteError as e:
                logger.info(f"No embedding for note {note.id}: {e.message}")
                return note.id, None

        with timed_operation("embed_notes", count=len(pending)):
            workers = min(self.settings.embedding_concurrency, len(pending))
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="smartnote-cache"
            ) as pool:
                for note_id, vector in pool.map(resolve, pending):
                    results[note_id] = vector
        return results

    def rebuild(self, notes: Iterable[Note], batch_size: int = 32) -> Dict[str, int]:
        """Recompute every non-fresh embedding now, in provider batches.

        Uses the same timestamp-ordered write as lazy recomputation, so a
        note edited meanwhile keeps its newer vector. A failed batch is
        counted and skipped; its notes stay stale for lazy recovery.

        Raises:
            ProviderUnavailableError: If embeddings are disabled.
        """
        if self.embedding_service is None:
            raise ProviderUnavailableError("Embeddings are disabled", operation="rebuild")
        notes = list(notes)
        records = self.repository.get_embedding_records(n.id for n in notes)
        pending = [
            n for n in notes
            if self.classify(records.get(n.id), n)[0] is not CacheState.FRESH
        ]
        summary = {"total": len(notes), "rebuilt": 0, "conflicts": 0, "failed": 0}

        with timed_operation("rebuild_embeddings", count=len(pending)):
            for start in range(0, len(pending), batch_size):
                batch = pending[start:start + batch_size]
                texts = [
                    prepare_embedding_text(n.title, n.content, self.settings.embedding_max_chars)
                    for n in batch
                ]
                try:
                    vectors = self.embedding_service.embed_batch(texts, batch_size)
                except ProviderUnavailableError as e:
                    self._count("provider_failures")
                    summary["failed"] += len(batch)
                    logger.warning(f"Skipping {len(batch)} notes in rebuild: {e.message}")
                    continue
                for note, vector in zip(batch, vectors):
                    summary["rebuilt" if self._write(note, vector) else "conflicts"] += 1

        logger.info(
            f"Rebuilt {summary['rebuilt']} of {len(pending)} stale embeddings "
            f"({summary['failed']} failed)"
        )
        return summary

    def invalidate_all(self) -> int:
        """Mark every record stale so it is rebuilt lazily on next access."""
        count = self.repository.invalidate_all_embeddings()
        self._count("invalidations")
        logger.info(f"Invalidated {count} cached embeddings")
        return count

    def status(self, notes: Iterable[Note]) -> Dict[str, Any]:
        """Report how many notes have fresh, missing or stale embeddings."""
        notes = list(notes)
        records = self.repository.get_embedding_records(n.id for n in notes)
        reasons: Counter = Counter()
        states: Counter = Counter()
        for note in notes:
            state, reason = self.classify(records.get(note.id), note)
            states[state.value] += 1
            if reason is not StaleReason.NONE:
                reasons[reason.value] += 1
        return {
            "model_id": self.model_id,
            "dimension": self.dimension,
            "embeddings_enabled": self.embedding_service is not None,
            "total": len(notes),
            "fresh": states[CacheState.FRESH.value],
            "stale": states[CacheState.STALE.value],
            "missing": states[CacheState.MISSING.value],
            "reasons": dict(reasons),
            "stats": self.stats(),
        }
