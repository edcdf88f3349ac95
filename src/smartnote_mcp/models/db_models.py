"""SQLAlchemy database models for the SmartNote MCP server."""
import datetime
from typing import Optional

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Integer,
                        LargeBinary, String, Table, Text, UniqueConstraint,
                        create_engine, event)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool

from smartnote_mcp.config import config


def _utcnow_naive() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# Create base class for SQLAlchemy models
Base = declarative_base()

# Association table for tags and notes
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", String(64), ForeignKey("notes.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class DBFolder(Base):
    """Database model for a folder."""
    __tablename__ = "folders"
    id = Column(String(64), primary_key=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    color = Column(String(20), default="gray", nullable=False)
    parent_id = Column(String(64), ForeignKey("folders.id"), nullable=True, index=True)
    depth = Column(Integer, default=0, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_utcnow_naive, nullable=False)
    updated_at = Column(DateTime, default=_utcnow_naive, nullable=False)

    notes = relationship("DBNote", back_populates="folder")

    def __repr__(self) -> str:
        """Return string representation of folder."""
        return f"<Folder(id='{self.id}', name='{self.name}', depth={self.depth})>"


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(64), primary_key=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    title = Column(String(255), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    folder_id = Column(String(64), ForeignKey("folders.id"), nullable=True, index=True)
    is_auto_organized = Column(Boolean, default=False, nullable=False)
    is_favorite = Column(Boolean, default=False, nullable=False, index=True)
    # JSON-encoded OrganizationSuggestion payload
    ai_suggestions = Column(Text, nullable=True)
    content_updated_at = Column(DateTime, default=_utcnow_naive, nullable=False)
    created_at = Column(DateTime, default=_utcnow_naive, nullable=False)
    updated_at = Column(DateTime, default=_utcnow_naive, nullable=False)

    # Relationships
    folder = relationship("DBFolder", back_populates="notes")
    tags = relationship("DBTag", secondary=note_tags, back_populates="notes")

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(255), nullable=False, index=True)
    name = Column(String(50), nullable=False)

    # Relationships
    notes = relationship("DBNote", secondary=note_tags, back_populates="tags")

    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="unique_owner_tag"),
    )

    def __repr__(self) -> str:
        """Return string representation of tag."""
        return f"<Tag(id={self.id}, name='{self.name}')>"


class DBEmbedding(Base):
    """Cached embedding for a note.

    ``source_timestamp`` is the note's content_updated_at at compute time;
    NULL marks the record as invalidated (vector kept as last-known-good).
    """
    __tablename__ = "note_embeddings"
    note_id = Column(String(64), ForeignKey("notes.id"), primary_key=True)
    vector = Column(LargeBinary, nullable=False)
    dimension = Column(Integer, nullable=False)
    source_timestamp = Column(DateTime, nullable=True)
    model_id = Column(String(255), nullable=False)
    computed_at = Column(DateTime, default=_utcnow_naive, nullable=False)

    def __repr__(self) -> str:
        return f"<Embedding(note_id='{self.note_id}', model='{self.model_id}')>"


def init_db(engine_url: Optional[str] = None):
    """Initialize the database with hardened configuration.

    Applies SQLite best practices for crash resilience:
    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode
    - QueuePool for connection reuse with size limits
    - Pool pre-ping to detect stale connections

    Returns:
        The configured SQLAlchemy engine.
    """
    # SQLite is single-writer, so a small pool is ideal
    engine = create_engine(
        engine_url or config.get_db_url(),
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        # Wait for the writer instead of failing with "database is locked"
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
