"""Data models for the SmartNote MCP server."""

import datetime
import os
import re
import threading
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

import numpy as np
from pydantic import BaseModel, Field, field_validator

from smartnote_mcp.config import MAX_FOLDER_DEPTH

MAX_TAG_LENGTH = 50

# Regex pattern for valid entity IDs (alphanumeric, underscores, hyphens, T separator)
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-T]+$")

_WHITESPACE_RUN = re.compile(r"\s+")


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite hands back naive datetimes; everything stored there is UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def to_naive_utc(dt_value: datetime.datetime) -> datetime.datetime:
    """Convert to a naive UTC datetime for storage.

    Naive UTC values keep SQL comparisons between stored timestamps
    consistent (SQLite compares them as text).
    """
    if dt_value.tzinfo is None:
        return dt_value
    return dt_value.astimezone(timezone.utc).replace(tzinfo=None)


def validate_safe_id(value: str, field_name: str = "value") -> str:
    """Validate that an ID only contains safe characters."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if not SAFE_ID_PATTERN.match(value):
        raise ValueError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric characters, underscores, hyphens, and 'T' are allowed."
        )
    return value


def normalize_tag_name(name: str) -> str:
    """Normalize a tag name: trimmed, lower-cased, inner whitespace as '-'.

    Raises:
        ValueError: If the result is empty or longer than MAX_TAG_LENGTH.
    """
    normalized = _WHITESPACE_RUN.sub("-", name.strip().lower())
    if not normalized:
        raise ValueError("Tag name cannot be empty")
    if len(normalized) > MAX_TAG_LENGTH:
        raise ValueError(
            f"Tag name exceeds maximum length of {MAX_TAG_LENGTH} characters"
        )
    return normalized


# Thread-safe counter for uniqueness (seeded from PID for cross-process safety)
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 1_000_000


def generate_id() -> str:
    """Generate a timestamp-based ID with guaranteed uniqueness.

    Returns:
        A string in format "YYYYMMDDTHHMMSSsssssscccccc": date, 'T', time,
        6-digit microseconds and a 6-digit counter for same-microsecond
        and cross-process uniqueness.
    """
    global _last_timestamp, _counter

    with _id_lock:
        now = utc_now()
        current_timestamp = int(now.timestamp() * 1_000_000)

        if current_timestamp == _last_timestamp:
            _counter += 1
        else:
            _last_timestamp = current_timestamp
            _counter = (os.getpid() * 7) % 1_000_000

        _counter %= 1_000_000

        date_time = now.strftime("%Y%m%dT%H%M%S")
        return f"{date_time}{now.microsecond:06d}{_counter:06d}"


class FolderColor(str, Enum):
    """Display colors available for folders."""

    GRAY = "gray"
    RED = "red"
    ORANGE = "orange"
    YELLOW = "yellow"
    GREEN = "green"
    BLUE = "blue"
    PURPLE = "purple"
    PINK = "pink"


class Tag(BaseModel):
    """A tag for categorizing notes."""

    id: Optional[int] = Field(default=None, description="Database ID of the tag")
    name: str = Field(..., description="Normalized tag name")

    model_config = {"validate_assignment": True, "frozen": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Normalize the tag name."""
        return normalize_tag_name(v)

    def __str__(self) -> str:
        """Return string representation of tag."""
        return self.name


class Folder(BaseModel):
    """A folder in a user's (at most three levels deep) folder tree."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the folder")
    owner_id: str = Field(..., description="Owner of the folder")
    name: str = Field(..., description="Display name")
    color: FolderColor = Field(default=FolderColor.GRAY, description="Display color")
    parent_id: Optional[str] = Field(default=None, description="Parent folder ID")
    depth: int = Field(default=0, description="0 = root, 1 = child, 2 = grandchild")
    is_default: bool = Field(default=False, description="The owner's Inbox folder")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_safe_id(v, "Folder ID")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate that the name is not empty."""
        if not v.strip():
            raise ValueError("Folder name cannot be empty")
        return v.strip()

    @field_validator("depth")
    @classmethod
    def validate_depth(cls, v: int) -> int:
        if v < 0 or v > MAX_FOLDER_DEPTH:
            raise ValueError(
                f"Folder depth must be between 0 and {MAX_FOLDER_DEPTH}, got {v}"
            )
        return v


class Note(BaseModel):
    """A note with rich (HTML or markdown) content."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the note")
    owner_id: str = Field(..., description="Owner of the note")
    title: str = Field(..., description="Title of the note")
    content: str = Field(default="", description="Raw rich content of the note")
    folder_id: Optional[str] = Field(default=None, description="Containing folder")
    tags: List[Tag] = Field(default_factory=list, description="Tags for categorization")
    is_auto_organized: bool = Field(
        default=False, description="Whether folder/tags came from an accepted suggestion"
    )
    is_favorite: bool = Field(default=False, description="Pinned by the user")
    ai_suggestions: Optional[Dict[str, Any]] = Field(
        default=None, description="Last organization suggestion payload (opaque)"
    )
    content_updated_at: datetime.datetime = Field(
        default_factory=utc_now,
        description="Changes only when the title or content body changes (UTC)",
    )
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last updated (UTC)"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_safe_id(v, "Note ID")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Validate that the title is not empty."""
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v

    @property
    def tag_names(self) -> List[str]:
        return [tag.name for tag in self.tags]

    def add_tag(self, tag: Union[str, Tag]) -> None:
        """Add a tag to the note (metadata only: content timestamp untouched)."""
        if isinstance(tag, str):
            tag = Tag(name=tag)
        if tag.name not in self.tag_names:
            self.tags = [*self.tags, tag]
            self.updated_at = utc_now()

    def remove_tag(self, tag: Union[str, Tag]) -> None:
        """Remove a tag from the note."""
        tag_name = tag.name if isinstance(tag, Tag) else normalize_tag_name(tag)
        self.tags = [t for t in self.tags if t.name != tag_name]
        self.updated_at = utc_now()


@dataclass
class EmbeddingRecord:
    """Cached embedding for a note.

    Attributes:
        note_id: Owning note.
        vector: 1-D float32 vector.
        source_timestamp: The note's content_updated_at the vector was
            computed from. None means the record was invalidated.
        model_id: Embedding model that produced the vector.
        computed_at: When the provider call finished.
    """

    note_id: str
    vector: np.ndarray
    source_timestamp: Optional[datetime.datetime]
    model_id: str
    computed_at: datetime.datetime = field(default_factory=utc_now)

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


class FolderSuggestion(BaseModel):
    """A proposed destination folder: existing, or new under an optional parent."""

    folder_id: Optional[str] = Field(default=None, description="Existing folder ID")
    name: str = Field(..., description="Folder name (label)")
    parent_id: Optional[str] = Field(default=None, description="Parent of a new folder")
    depth: int = Field(default=0, ge=0, le=MAX_FOLDER_DEPTH)
    is_new: bool = Field(default=False)
    confidence: float = Field(..., ge=0.0, le=1.0)
    explanation: str = Field(default="")
    clamped: bool = Field(
        default=False, description="Parent was moved up to respect the depth limit"
    )


class TagSuggestion(BaseModel):
    """A proposed tag, existing or new."""

    name: str = Field(..., description="Normalized tag name")
    tag_id: Optional[int] = Field(default=None, description="Existing tag ID")
    is_new: bool = Field(default=False)
    confidence: float = Field(..., ge=0.0, le=1.0)
    explanation: str = Field(default="")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return normalize_tag_name(v)


ConfidenceLevel = Literal["high", "medium", "low"]


def confidence_level(confidence: float) -> ConfidenceLevel:
    """Bucket a [0, 1] confidence into a human-readable level."""
    if confidence >= 0.75:
        return "high"
    if confidence >= 0.45:
        return "medium"
    return "low"


class OrganizationSuggestion(BaseModel):
    """Transient folder/tag proposal for captured content.

    Never applied automatically; callers decide whether to accept it.
    """

    title: Optional[str] = Field(default=None, description="Suggested note title")
    folders: List[FolderSuggestion] = Field(default_factory=list)
    tags: List[TagSuggestion] = Field(default_factory=list)
    heuristic_only: bool = Field(
        default=False, description="Embeddings were unavailable; signals only"
    )
    was_truncated: bool = Field(default=False)
    signals: Dict[str, Any] = Field(default_factory=dict)

    @property
    def folder(self) -> Optional[FolderSuggestion]:
        """The best folder candidate, if any."""
        return self.folders[0] if self.folders else None

    @property
    def confidence(self) -> float:
        """Overall confidence: the best folder's, else the best tag's."""
        if self.folders:
            return self.folders[0].confidence
        if self.tags:
            return self.tags[0].confidence
        return 0.0

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return confidence_level(self.confidence)

    @property
    def is_empty(self) -> bool:
        return not self.folders and not self.tags
