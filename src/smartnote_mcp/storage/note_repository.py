"""Repository for note storage, retrieval and the per-note embedding cache table."""

import json
import logging
import threading
import weakref
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from smartnote_mcp.exceptions import ErrorCode, NoteNotFoundError, StorageError
from smartnote_mcp.models.db_models import (
    DBEmbedding,
    DBNote,
    DBTag,
    get_session_factory,
    init_db,
    note_tags,
)
from smartnote_mcp.models.schema import (
    EmbeddingRecord,
    Note,
    Tag,
    ensure_timezone_aware,
    to_naive_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

# Marks a keyword argument as "leave unchanged" where None is a real value
_KEEP = object()


class NoteRepository:
    """Repository for notes and their cached embeddings.

    SQLite (WAL mode) is the single source of truth. Embedding writes are
    conditional on source-timestamp order, so concurrent recomputations of
    the same note can complete in any order without an older vector
    overwriting a newer one.
    """

    def __init__(self, engine: Optional[Any] = None):
        """Initialize the repository.

        Args:
            engine: Pre-configured SQLAlchemy engine. When provided, the
                    repository shares it instead of calling init_db().
        """
        self.engine = engine if engine is not None else init_db()
        self.session_factory = get_session_factory(self.engine)

        # Per-note locks serialize update/delete of the same note
        self._note_locks: "weakref.WeakValueDictionary[str, threading.RLock]" = (
            weakref.WeakValueDictionary()
        )
        self._note_locks_lock = threading.Lock()

    def _get_note_lock(self, note_id: str) -> threading.RLock:
        """Get or create a lock for a specific note.

        Uses WeakValueDictionary so locks are garbage collected when no longer
        held.
        """
        with self._note_locks_lock:
            lock = self._note_locks.get(note_id)
            if lock is None:
                lock = threading.RLock()
                self._note_locks[note_id] = lock
            return lock

    # =========================================================================
    # Conversion helpers
    # =========================================================================

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> Note:
        """Convert a SQLAlchemy DBNote (tags eager-loaded) to a domain Note."""
        tags = sorted(
            (Tag(id=t.id, name=t.name) for t in (db_note.tags or [])),
            key=lambda t: t.name,
        )
        suggestions = json.loads(db_note.ai_suggestions) if db_note.ai_suggestions else None
        return Note(
            id=db_note.id,
            owner_id=db_note.owner_id,
            title=db_note.title,
            content=db_note.content or "",
            folder_id=db_note.folder_id,
            tags=tags,
            is_auto_organized=bool(db_note.is_auto_organized),
            is_favorite=bool(db_note.is_favorite),
            ai_suggestions=suggestions,
            content_updated_at=ensure_timezone_aware(db_note.content_updated_at),
            created_at=ensure_timezone_aware(db_note.created_at),
            updated_at=ensure_timezone_aware(db_note.updated_at),
        )

    @staticmethod
    def _db_embedding_to_record(db_embedding: DBEmbedding) -> EmbeddingRecord:
        vector = np.frombuffer(db_embedding.vector, dtype=np.float32).copy()
        return EmbeddingRecord(
            note_id=db_embedding.note_id,
            vector=vector,
            source_timestamp=(
                ensure_timezone_aware(db_embedding.source_timestamp)
                if db_embedding.source_timestamp is not None
                else None
            ),
            model_id=db_embedding.model_id,
            computed_at=ensure_timezone_aware(db_embedding.computed_at),
        )

    def _sync_tags(self, session: Session, db_note: DBNote, tags: List[Tag]) -> None:
        """Replace the note's tag set, creating per-owner tags as needed."""
        db_tags = []
        for tag in tags:
            session.execute(
                sqlite_insert(DBTag)
                .values(owner_id=db_note.owner_id, name=tag.name)
                .on_conflict_do_nothing(index_elements=["owner_id", "name"])
            )
            db_tags.append(
                session.scalar(
                    select(DBTag).where(
                        DBTag.owner_id == db_note.owner_id, DBTag.name == tag.name
                    )
                )
            )
        db_note.tags = db_tags

    @staticmethod
    def _apply_fields(db_note: DBNote, note: Note) -> None:
        db_note.owner_id = note.owner_id
        db_note.title = note.title
        db_note.content = note.content
        db_note.folder_id = note.folder_id
        db_note.is_auto_organized = note.is_auto_organized
        db_note.is_favorite = note.is_favorite
        db_note.ai_suggestions = (
            json.dumps(note.ai_suggestions) if note.ai_suggestions is not None else None
        )
        db_note.content_updated_at = to_naive_utc(note.content_updated_at)
        db_note.created_at = to_naive_utc(note.created_at)
        db_note.updated_at = to_naive_utc(note.updated_at)

    # =========================================================================
    # Note CRUD
    # =========================================================================

    def create(self, note: Note) -> Note:
        """Create a new note."""
        try:
            with self.session_factory() as session:
                db_note = DBNote(id=note.id)
                self._apply_fields(db_note, note)
                session.add(db_note)
                self._sync_tags(session, db_note, note.tags)
                session.commit()
                return self._db_note_to_model(db_note)
        except IntegrityError as e:
            raise StorageError(
                f"Failed to create note {note.id}",
                operation="create",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def get(self, id: str) -> Optional[Note]:
        """Get a note by ID, or None."""
        with self.session_factory() as session:
            db_note = session.scalar(
                select(DBNote).options(selectinload(DBNote.tags)).where(DBNote.id == id)
            )
            return self._db_note_to_model(db_note) if db_note else None

    def get_by_ids(self, ids: Iterable[str]) -> List[Note]:
        """Get several notes by ID; unknown IDs are skipped."""
        ids = list(ids)
        if not ids:
            return []
        with self.session_factory() as session:
            db_notes = session.scalars(
                select(DBNote)
                .options(selectinload(DBNote.tags))
                .where(DBNote.id.in_(ids))
                .order_by(DBNote.id)
            ).all()
            return [self._db_note_to_model(n) for n in db_notes]

    def get_all(
        self,
        owner_id: str,
        folder_id: Optional[str] = None,
        favorites_only: bool = False,
    ) -> List[Note]:
        """Get every note of an owner, optionally limited to one folder or to favorites."""
        with self.session_factory() as session:
            query = (
                select(DBNote)
                .options(selectinload(DBNote.tags))
                .where(DBNote.owner_id == owner_id)
            )
            if folder_id is not None:
                query = query.where(DBNote.folder_id == folder_id)
            if favorites_only:
                query = query.where(DBNote.is_favorite.is_(True))
            db_notes = session.scalars(query.order_by(DBNote.id)).all()
            return [self._db_note_to_model(n) for n in db_notes]

    def update(self, note: Note) -> Note:
        """Persist all fields of an existing note.

        Timestamps are written as given: the caller decides whether the
        change touched the content body.
        """
        note_lock = self._get_note_lock(note.id)
        with note_lock:
            with self.session_factory() as session:
                db_note = session.scalar(
                    select(DBNote)
                    .options(selectinload(DBNote.tags))
                    .where(DBNote.id == note.id)
                )
                if db_note is None:
                    raise NoteNotFoundError(note.id)
                self._apply_fields(db_note, note)
                self._sync_tags(session, db_note, note.tags)
                session.commit()
                return self._db_note_to_model(db_note)

    def note_lock(self, note_id: str) -> threading.RLock:
        """Lock held by every write to this note.

        Re-entrant, so a caller may hold it across a read-modify-write
        that ends in update().
        """
        return self._get_note_lock(note_id)

    def update_metadata(
        self,
        note_id: str,
        ai_suggestions: Any = _KEEP,
        folder_id: Optional[str] = None,
        add_tags: Iterable[Tag] = (),
        remove_tags: Iterable[str] = (),
        mark_auto_organized: bool = False,
        is_favorite: Optional[bool] = None,
    ) -> Note:
        """Write only metadata fields of a note, read fresh under its lock.

        Title, content and content_updated_at are never touched, so an
        edit that lands while a suggestion is being computed survives, and
        the note's embedding stays valid.
        """
        with self._get_note_lock(note_id):
            with self.session_factory() as session:
                db_note = session.scalar(
                    select(DBNote)
                    .options(selectinload(DBNote.tags))
                    .where(DBNote.id == note_id)
                )
                if db_note is None:
                    raise NoteNotFoundError(note_id)
                if ai_suggestions is not _KEEP:
                    db_note.ai_suggestions = (
                        json.dumps(ai_suggestions) if ai_suggestions is not None else None
                    )
                if folder_id is not None:
                    db_note.folder_id = folder_id
                if mark_auto_organized:
                    db_note.is_auto_organized = True
                if is_favorite is not None:
                    db_note.is_favorite = is_favorite

                removed = set(remove_tags)
                tags = [Tag(id=t.id, name=t.name) for t in db_note.tags if t.name not in removed]
                changed = len(tags) != len(db_note.tags)
                known = {t.name for t in tags}
                for tag in add_tags:
                    if tag.name not in known:
                        tags.append(tag)
                        known.add(tag.name)
                        changed = True
                if changed:
                    self._sync_tags(session, db_note, tags)

                db_note.updated_at = to_naive_utc(utc_now())
                session.commit()
                return self._db_note_to_model(db_note)

    def delete(self, id: str) -> None:
        """Delete a note, its tag links and its embedding record."""
        note_lock = self._get_note_lock(id)
        with note_lock:
            with self.session_factory() as session:
                if session.get(DBNote, id) is None:
                    raise NoteNotFoundError(id)
                session.execute(delete(DBEmbedding).where(DBEmbedding.note_id == id))
                session.execute(delete(note_tags).where(note_tags.c.note_id == id))
                session.execute(delete(DBNote).where(DBNote.id == id))
                session.commit()

    # =========================================================================
    # Embedding cache records
    # =========================================================================

    def get_embedding_record(self, note_id: str) -> Optional[EmbeddingRecord]:
        """Fetch the cached embedding record for a note, or None."""
        with self.session_factory() as session:
            db_embedding = session.get(DBEmbedding, note_id)
            if db_embedding is None:
                return None
            return self._db_embedding_to_record(db_embedding)

    def get_embedding_records(self, note_ids: Iterable[str]) -> Dict[str, EmbeddingRecord]:
        """Fetch cached records for several notes, keyed by note ID."""
        note_ids = list(note_ids)
        if not note_ids:
            return {}
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBEmbedding).where(DBEmbedding.note_id.in_(note_ids))
            ).all()
            return {row.note_id: self._db_embedding_to_record(row) for row in rows}

    def store_embedding_record(self, record: EmbeddingRecord) -> bool:
        """Insert or replace a note's embedding, ordered by source timestamp.

        The write only lands when the stored record is invalidated or its
        source timestamp is not newer than the incoming one. Evaluated as a
        single conditional upsert, so it holds across threads and processes.

        Returns:
            True if the record was written, False if a newer record won
            (or the note no longer exists).
        """
        if record.source_timestamp is None:
            raise ValueError("Cannot store an embedding without a source timestamp")

        source_ts = to_naive_utc(record.source_timestamp)
        stmt = sqlite_insert(DBEmbedding).values(
            note_id=record.note_id,
            vector=np.asarray(record.vector, dtype=np.float32).tobytes(),
            dimension=record.dimension,
            source_timestamp=source_ts,
            model_id=record.model_id,
            computed_at=to_naive_utc(record.computed_at),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[DBEmbedding.note_id],
            set_={
                "vector": stmt.excluded.vector,
                "dimension": stmt.excluded.dimension,
                "source_timestamp": stmt.excluded.source_timestamp,
                "model_id": stmt.excluded.model_id,
                "computed_at": stmt.excluded.computed_at,
            },
            where=or_(
                DBEmbedding.source_timestamp.is_(None),
                DBEmbedding.source_timestamp <= stmt.excluded.source_timestamp,
            ),
        )
        try:
            with self.session_factory() as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount > 0
        except IntegrityError:
            # Note deleted while its embedding was being computed
            logger.debug(f"Dropped embedding for deleted note {record.note_id}")
            return False
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to store embedding for note {record.note_id}",
                operation="store_embedding",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def invalidate_all_embeddings(self) -> int:
        """Mark every embedding record stale in one statement.

        Vectors are kept so they can serve as last-known-good values.

        Returns:
            Number of records marked (idempotent: re-marking is harmless).
        """
        with self.session_factory() as session:
            result = session.execute(update(DBEmbedding).values(source_timestamp=None))
            session.commit()
            return result.rowcount

    def count_embeddings(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count(DBEmbedding.note_id))) or 0

