"""Service layer for notes, folders and organization suggestions."""

import logging
from typing import Any, Dict, List, Optional, Union

from smartnote_mcp.config import SmartNoteConfig, config as default_config
from smartnote_mcp.exceptions import (
    ErrorCode,
    FolderError,
    NoteNotFoundError,
    TagError,
    ValidationError,
)
from smartnote_mcp.models.schema import (
    Folder,
    FolderColor,
    FolderSuggestion,
    Note,
    OrganizationSuggestion,
    Tag,
    utc_now,
)
from smartnote_mcp.services.embedding_cache import EmbeddingCache
from smartnote_mcp.services.organization_analyzer import (
    CentroidIndex,
    OrganizationAnalyzer,
    build_centroids,
)
from smartnote_mcp.storage.folder_repository import FolderRepository
from smartnote_mcp.storage.note_repository import NoteRepository
from smartnote_mcp.storage.tag_repository import TagRepository

logger = logging.getLogger(__name__)


def _to_tags(names: Optional[List[str]]) -> List[Tag]:
    tags: Dict[str, Tag] = {}
    for name in names or []:
        try:
            tag = Tag(name=name)
        except ValueError as e:
            raise TagError(f"Invalid tag '{name}'", tag_name=name) from e
        tags[tag.name] = tag
    return list(tags.values())


class NoteService:
    """CRUD facade over the repositories plus the AI-assisted operations.

    ``content_updated_at`` is owned here: it moves only when the title or
    the content body changes, never on folder/tag/suggestion edits.
    """

    def __init__(
        self,
        repository: NoteRepository,
        folder_repository: FolderRepository,
        tag_repository: TagRepository,
        cache: EmbeddingCache,
        analyzer: OrganizationAnalyzer,
        settings: Optional[SmartNoteConfig] = None,
    ):
        self.repository = repository
        self.folder_repository = folder_repository
        self.tag_repository = tag_repository
        self.cache = cache
        self.analyzer = analyzer
        self.settings = settings or default_config

    def _owner(self, owner_id: Optional[str]) -> str:
        return owner_id or self.settings.default_owner_id

    def _resolve_folder(self, owner_id: str, folder_id: Optional[str]) -> Folder:
        if folder_id is None:
            return self.folder_repository.ensure_default_folder(owner_id)
        folder = self.folder_repository.get(folder_id)
        if folder is None or folder.owner_id != owner_id:
            raise FolderError(f"Folder with ID '{folder_id}' not found", folder_id=folder_id)
        return folder

    # =========================================================================
    # Notes
    # =========================================================================

    def create_note(
        self,
        title: str,
        content: str = "",
        owner_id: Optional[str] = None,
        folder_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Note:
        """Create a note; without a folder it lands in the owner's default folder."""
        if not title or not title.strip():
            raise ValidationError(
                "Title is required", field="title", code=ErrorCode.NOTE_TITLE_REQUIRED
            )
        owner_id = self._owner(owner_id)
        folder = self._resolve_folder(owner_id, folder_id)
        note = Note(
            owner_id=owner_id,
            title=title.strip(),
            content=content or "",
            folder_id=folder.id,
            tags=_to_tags(tags),
        )
        created = self.repository.create(note)
        logger.info(f"Created note {created.id} in folder '{folder.name}'")
        return created

    def get_note(self, note_id: str) -> Note:
        note = self.repository.get(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        return note

    def list_notes(self, owner_id: Optional[str] = None, folder_id: Optional[str] = None) -> List[Note]:
        return self.repository.get_all(self._owner(owner_id), folder_id=folder_id)

    def update_note(
        self,
        note_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        folder_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Note:
        """Update a note; only a title or content change marks its embedding stale."""
        if title is not None and not title.strip():
            raise ValidationError(
                "Title cannot be empty", field="title", code=ErrorCode.NOTE_TITLE_REQUIRED
            )
        with self.repository.note_lock(note_id):
            note = self.get_note(note_id)
            now = utc_now()
            content_changed = False

            if title is not None and title.strip() != note.title:
                note.title = title.strip()
                content_changed = True
            if content is not None and content != note.content:
                note.content = content
                content_changed = True
            if folder_id is not None and folder_id != note.folder_id:
                note.folder_id = self._resolve_folder(note.owner_id, folder_id).id
            if tags is not None:
                note.tags = _to_tags(tags)

            if content_changed:
                note.content_updated_at = now
            note.updated_at = now
            return self.repository.update(note)

    def delete_note(self, note_id: str) -> None:
        self.repository.delete(note_id)
        logger.info(f"Deleted note {note_id}")

    def toggle_favorite(self, note_id: str) -> Note:
        """Flip a note's favorite flag (metadata only)."""
        with self.repository.note_lock(note_id):
            note = self.get_note(note_id)
            return self.repository.update_metadata(note_id, is_favorite=not note.is_favorite)

    def list_favorites(self, owner_id: Optional[str] = None) -> List[Note]:
        """Favorite notes, most recently updated first."""
        notes = self.repository.get_all(self._owner(owner_id), favorites_only=True)
        return sorted(notes, key=lambda n: (n.updated_at, n.id), reverse=True)

    # =========================================================================
    # Tags
    # =========================================================================

    def list_tags(self, owner_id: Optional[str] = None) -> Dict[str, int]:
        return self.tag_repository.get_with_counts(self._owner(owner_id))

    def list_notes_by_tags(
        self,
        tag_names: List[str],
        owner_id: Optional[str] = None,
        match_all: bool = False,
    ) -> List[Note]:
        """Notes carrying any (or all) of the tags, most recently updated first.

        Raises:
            TagError: If no tag is given or one of them does not exist.
        """
        owner_id = self._owner(owner_id)
        names = [name for name in tag_names if name and name.strip()]
        if not names:
            raise TagError("At least one tag is required")
        for name in names:
            if self.tag_repository.get(owner_id, name) is None:
                raise TagError(f"Tag '{name}' not found", tag_name=name)
        note_ids = self.tag_repository.find_note_ids_by_tags(owner_id, names, match_all=match_all)
        notes = self.repository.get_by_ids(note_ids)
        return sorted(notes, key=lambda n: (n.updated_at, n.id), reverse=True)

    def add_tag_to_note(self, note_id: str, tag_name: str) -> Note:
        """Attach a tag; attaching one the note already carries is a no-op."""
        return self.repository.update_metadata(note_id, add_tags=_to_tags([tag_name]))

    def remove_tag_from_note(self, note_id: str, tag_name: str) -> Note:
        """Detach a tag; the tag itself is kept for other notes."""
        tag = _to_tags([tag_name])[0]
        return self.repository.update_metadata(note_id, remove_tags=[tag.name])

    def rename_tag(self, old_name: str, new_name: str, owner_id: Optional[str] = None) -> Tag:
        return self.tag_repository.rename(self._owner(owner_id), old_name, new_name)

    def delete_tag(self, tag_name: str, owner_id: Optional[str] = None) -> int:
        return self.tag_repository.delete(self._owner(owner_id), tag_name)

    def delete_unused_tags(self, owner_id: Optional[str] = None) -> int:
        return self.tag_repository.delete_unused(self._owner(owner_id))

    # =========================================================================
    # Folders
    # =========================================================================

    def create_folder(
        self,
        name: str,
        owner_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        color: Union[str, FolderColor] = FolderColor.GRAY,
    ) -> Folder:
        owner_id = self._owner(owner_id)
        self.folder_repository.ensure_default_folder(owner_id)
        return self.folder_repository.create(owner_id, name, parent_id=parent_id, color=color)

    def list_folders(self, owner_id: Optional[str] = None) -> List[Folder]:
        owner_id = self._owner(owner_id)
        self.folder_repository.ensure_default_folder(owner_id)
        return self.folder_repository.get_all(owner_id)

    def update_folder(
        self,
        folder_id: str,
        name: Optional[str] = None,
        color: Optional[Union[str, FolderColor]] = None,
    ) -> Folder:
        return self.folder_repository.update(folder_id, name=name, color=color)

    def move_folder(self, folder_id: str, new_parent_id: Optional[str]) -> Folder:
        return self.folder_repository.move(folder_id, new_parent_id)

    def delete_folder(self, folder_id: str) -> int:
        return self.folder_repository.delete(folder_id)

    # =========================================================================
    # Organization suggestions
    # =========================================================================

    def build_centroid_index(self, owner_id: str) -> CentroidIndex:
        """Folder and tag centroids from the owner's current note embeddings."""
        if self.analyzer.embedding_service is None:
            return CentroidIndex()
        folder_membership = self.folder_repository.get_membership(owner_id)
        tag_membership = self.tag_repository.get_membership(owner_id)
        member_ids = {
            note_id
            for group in (*folder_membership.values(), *tag_membership.values())
            for note_id in group
        }
        if not member_ids:
            return CentroidIndex()
        notes = self.repository.get_by_ids(sorted(member_ids))
        vectors = self.cache.get_or_compute_many(notes)
        return CentroidIndex(
            folders=build_centroids(folder_membership, vectors),
            tags=build_centroids(tag_membership, vectors),
        )

    def analyze(
        self,
        content: str,
        owner_id: Optional[str] = None,
        note_id: Optional[str] = None,
    ) -> OrganizationSuggestion:
        """Suggest a folder and tags for content.

        With ``note_id`` the note's own content is analyzed (unless content
        is given) and the suggestion is stored on the note as metadata.
        """
        note = self.get_note(note_id) if note_id else None
        title = ""
        if note is not None:
            owner_id = note.owner_id
            if not content:
                title, content = note.title, note.content
        owner_id = self._owner(owner_id)

        folders = self.list_folders(owner_id)
        tags = self.tag_repository.get_all(owner_id)
        suggestion = self.analyzer.analyze(
            content, folders, tags, self.build_centroid_index(owner_id), title=title
        )

        if note is not None:
            # The note may have been edited while the suggestion was computed
            self.repository.update_metadata(
                note.id, ai_suggestions=suggestion.model_dump(mode="json")
            )
        return suggestion

    def _materialize_folder(self, owner_id: str, candidate: FolderSuggestion) -> Folder:
        if not candidate.is_new and candidate.folder_id:
            return self._resolve_folder(owner_id, candidate.folder_id)
        existing = self.folder_repository.find_child_by_name(
            owner_id, candidate.parent_id, candidate.name
        )
        if existing is not None:
            return existing
        return self.folder_repository.create(
            owner_id, candidate.name, parent_id=candidate.parent_id
        )

    def apply_suggestion(
        self,
        note_id: str,
        suggestion: Union[OrganizationSuggestion, Dict[str, Any], None] = None,
        folder_index: int = 0,
        accept_tags: bool = True,
    ) -> Note:
        """Apply an accepted suggestion to a note.

        Uses the note's stored suggestion when none is given. New folders
        are created here; tags are added to the note's existing ones.
        Metadata only: the embedding stays valid.
        """
        note = self.get_note(note_id)
        if suggestion is None:
            suggestion = note.ai_suggestions
        if suggestion is None:
            raise ValidationError("Note has no stored suggestion to apply", field="suggestion")
        if isinstance(suggestion, dict):
            suggestion = OrganizationSuggestion.model_validate(suggestion)

        folder_id = None
        if suggestion.folders:
            if not 0 <= folder_index < len(suggestion.folders):
                raise ValidationError(
                    f"folder_index must be between 0 and {len(suggestion.folders) - 1}",
                    field="folder_index",
                    value=folder_index,
                )
            folder_id = self._materialize_folder(
                note.owner_id, suggestion.folders[folder_index]
            ).id
        new_tags = _to_tags([t.name for t in suggestion.tags]) if accept_tags else []

        updated = self.repository.update_metadata(
            note_id,
            ai_suggestions=suggestion.model_dump(mode="json"),
            folder_id=folder_id,
            add_tags=new_tags,
            mark_auto_organized=True,
        )
        logger.info(f"Applied organization suggestion to note {note_id}")
        return updated

    # =========================================================================
    # Embedding maintenance
    # =========================================================================

    def embedding_status(self, owner_id: Optional[str] = None) -> Dict[str, Any]:
        return self.cache.status(self.list_notes(owner_id))

    def invalidate_all_embeddings(self) -> int:
        return self.cache.invalidate_all()

    def rebuild_embeddings(self, owner_id: Optional[str] = None) -> Dict[str, int]:
        """Recompute the owner's stale embeddings now instead of on next use."""
        return self.cache.rebuild(self.list_notes(owner_id))
