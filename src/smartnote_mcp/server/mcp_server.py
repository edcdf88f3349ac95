"""MCP server implementation for SmartNote."""

import atexit
import json
import logging
import uuid
from typing import List, Optional

from mcp.server.fastmcp import FastMCP

from smartnote_mcp.config import SmartNoteConfig, config as default_config
from smartnote_mcp.exceptions import SmartNoteError, ValidationError
from smartnote_mcp.models.schema import Folder, Note, OrganizationSuggestion
from smartnote_mcp.observability import metrics, timed_operation
from smartnote_mcp.services.embedding_cache import EmbeddingCache
from smartnote_mcp.services.note_service import NoteService
from smartnote_mcp.services.organization_analyzer import OrganizationAnalyzer
from smartnote_mcp.services.search_service import SearchService, SemanticSearchRanker
from smartnote_mcp.storage import FolderRepository, NoteRepository, TagRepository

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_CONTENT_LENGTH = 1_000_000  # 1 MB


def _validate_input_lengths(
    title: Optional[str] = None, content: Optional[str] = None
) -> None:
    """Validate input string lengths at the MCP boundary."""
    if title and len(title) > MAX_TITLE_LENGTH:
        raise ValueError(
            f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters"
        )
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise ValueError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
        )


def _split_tags(tags: Optional[str]) -> Optional[List[str]]:
    if tags is None:
        return None
    return [t.strip() for t in tags.split(",") if t.strip()]


def format_suggestion(suggestion: OrganizationSuggestion) -> str:
    """Render a suggestion for humans."""
    if suggestion.is_empty:
        return "No organization suggestion could be made for this content."

    mode = "heuristic" if suggestion.heuristic_only else "semantic"
    output = (
        f"Organization suggestion ({mode}, confidence: "
        f"{suggestion.confidence:.2f} {suggestion.confidence_level})\n"
    )
    if suggestion.title:
        output += f"Suggested title: {suggestion.title}\n"
    if suggestion.was_truncated:
        output += "Note: content was truncated before analysis.\n"

    if suggestion.folders:
        output += "\nFolders:\n"
        for i, folder in enumerate(suggestion.folders):
            status = "new" if folder.is_new else f"ID: {folder.folder_id}"
            output += f"  [{i}] {folder.name} ({status}) - {folder.confidence:.2f}\n"
            if folder.is_new and folder.parent_id:
                output += f"      Parent: {folder.parent_id}\n"
            if folder.explanation:
                output += f"      {folder.explanation}\n"
    if suggestion.tags:
        output += "\nTags:\n"
        for tag in suggestion.tags:
            status = "new" if tag.is_new else "existing"
            output += f"  - {tag.name} ({status}) - {tag.confidence:.2f}\n"
    return output.rstrip()


def format_note(note: Note, folder: Optional[Folder] = None) -> str:
    output = f"# {note.title}\n"
    output += f"ID: {note.id}\n"
    output += f"Folder: {folder.name if folder else note.folder_id or '(none)'}\n"
    if note.tags:
        output += f"Tags: {', '.join(note.tag_names)}\n"
    if note.is_auto_organized:
        output += "Organized: from AI suggestion\n"
    if note.is_favorite:
        output += "Favorite: yes\n"
    output += f"Created: {note.created_at.isoformat()}\n"
    output += f"Updated: {note.updated_at.isoformat()}\n"
    output += f"\n{note.content}"
    return output


def format_note_list(header: str, notes: List[Note], limit: int = 50) -> str:
    output = f"{header} ({len(notes)}):\n\n"
    for i, note in enumerate(notes[:limit], 1):
        star = " *" if note.is_favorite else ""
        output += f"{i}. {note.title}{star} (ID: {note.id})\n"
        if note.tags:
            output += f"   Tags: {', '.join(note.tag_names)}\n"
    return output.rstrip()


class SmartNoteMcpServer:
    """MCP server exposing notes, folders, search and organization tools."""

    def __init__(
        self,
        engine=None,
        embedding_service=None,
        settings: Optional[SmartNoteConfig] = None,
    ):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by all
                repositories. When None, one is created from config.
            embedding_service: EmbeddingService to use. When None, one is
                created from config if embeddings are enabled.
            settings: Configuration; defaults to the global config.
        """
        self.settings = settings or default_config
        self.mcp = FastMCP(self.settings.server_name)
        if embedding_service is None:
            embedding_service = self._create_embedding_service(self.settings)
        self.embedding_service = embedding_service

        self.repository = NoteRepository(engine=engine)
        session_factory = self.repository.session_factory
        self.folder_repository = FolderRepository(
            session_factory, default_folder_name=self.settings.default_folder_name
        )
        self.tag_repository = TagRepository(session_factory)

        self.cache = EmbeddingCache(self.repository, embedding_service, self.settings)
        self.note_service = NoteService(
            self.repository,
            self.folder_repository,
            self.tag_repository,
            self.cache,
            OrganizationAnalyzer(embedding_service, self.settings),
            self.settings,
        )
        self.search_service = SearchService(
            self.repository,
            self.folder_repository,
            SemanticSearchRanker(self.cache, embedding_service, self.settings),
            self.settings,
        )
        atexit.register(self._shutdown)
        self._register_tools()
        logger.info("SmartNote MCP server initialized")

    def _shutdown(self) -> None:
        """Clean up resources on server exit."""
        if self.embedding_service is not None:
            self.embedding_service.shutdown()

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Domain errors carry their own message; anything else is logged
        with a short reference id and reported generically.
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, SmartNoteError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, (IOError, OSError)):
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    @staticmethod
    def _create_embedding_service(settings: SmartNoteConfig):
        """Create an EmbeddingService backed by OpenAI, or None.

        Returns None when embeddings are disabled or no API key is set;
        search then ranks lexically and analysis uses heuristics.
        """
        if not settings.embeddings_enabled:
            logger.info("Embeddings disabled (SMARTNOTE_EMBEDDINGS_ENABLED=false)")
            return None
        if not settings.openai_api_key:
            logger.warning("Embeddings enabled but OPENAI_API_KEY is not set")
            return None

        from smartnote_mcp.services.embedding_service import EmbeddingService
        from smartnote_mcp.services.openai_provider import OpenAIEmbeddingProvider

        embedder = OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimension=settings.embedding_dim,
            timeout=settings.embedding_timeout,
        )
        logger.info(
            f"Embedding service created (model={settings.embedding_model}, "
            f"dim={settings.embedding_dim})"
        )
        return EmbeddingService(embedder, settings)

    def _register_tools(self) -> None:
        """Register MCP tools."""
        self._register_note_tools()
        self._register_folder_tools()
        self._register_tag_tools()
        self._register_ai_tools()

    def _register_note_tools(self) -> None:
        @self.mcp.tool(name="sn_create_note")
        def sn_create_note(
            title: str,
            content: str,
            folder_id: Optional[str] = None,
            tags: Optional[str] = None,
        ) -> str:
            """Create a new note.
            Args:
                title: The title of the note
                content: The note body (plain text, Markdown or editor HTML)
                folder_id: Destination folder (defaults to the Inbox folder)
                tags: Comma-separated list of tags (optional)
            """
            with timed_operation("sn_create_note", title=title[:30]) as op:
                try:
                    _validate_input_lengths(title=title, content=content)
                    note = self.note_service.create_note(
                        title=title,
                        content=content,
                        folder_id=folder_id,
                        tags=_split_tags(tags),
                    )
                    op["note_id"] = note.id
                    return f"Note created successfully with ID: {note.id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_get_note")
        def sn_get_note(note_id: str) -> str:
            """Retrieve a note by ID.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("sn_get_note", note_id=note_id):
                try:
                    note = self.note_service.get_note(note_id)
                    folder = (
                        self.folder_repository.get(note.folder_id)
                        if note.folder_id else None
                    )
                    return format_note(note, folder)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_update_note")
        def sn_update_note(
            note_id: str,
            title: Optional[str] = None,
            content: Optional[str] = None,
            folder_id: Optional[str] = None,
            tags: Optional[str] = None,
        ) -> str:
            """Update an existing note.
            Args:
                note_id: The ID of the note to update
                title: New title (optional)
                content: New content (optional)
                folder_id: Move the note to this folder (optional)
                tags: Comma-separated tags replacing the current ones (optional)
            """
            with timed_operation("sn_update_note", note_id=note_id):
                try:
                    _validate_input_lengths(title=title, content=content)
                    note = self.note_service.update_note(
                        note_id,
                        title=title,
                        content=content,
                        folder_id=folder_id,
                        tags=_split_tags(tags),
                    )
                    return f"Note updated successfully: {note.id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_delete_note")
        def sn_delete_note(note_id: str) -> str:
            """Delete a note and its cached embedding.
            Args:
                note_id: The ID of the note to delete
            """
            with timed_operation("sn_delete_note", note_id=note_id):
                try:
                    self.note_service.delete_note(note_id)
                    return f"Note deleted successfully: {note_id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_list_notes")
        def sn_list_notes(folder_id: Optional[str] = None, limit: int = 50) -> str:
            """List notes, newest content first.
            Args:
                folder_id: Only list notes in this folder (optional)
                limit: Maximum number of notes to list
            """
            with timed_operation("sn_list_notes") as op:
                try:
                    notes = self.note_service.list_notes(folder_id=folder_id)
                    op["count"] = len(notes)
                    if not notes:
                        return "No notes found."
                    notes.sort(key=lambda n: n.content_updated_at, reverse=True)
                    return format_note_list("Notes", notes, limit)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_toggle_favorite")
        def sn_toggle_favorite(note_id: str) -> str:
            """Mark a note as favorite, or unmark it if it already is.
            Args:
                note_id: The note to toggle
            """
            with timed_operation("sn_toggle_favorite", note_id=note_id):
                try:
                    note = self.note_service.toggle_favorite(note_id)
                    state = "added to" if note.is_favorite else "removed from"
                    return f"'{note.title}' {state} favorites."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_list_favorites")
        def sn_list_favorites(limit: int = 50) -> str:
            """List favorite notes, most recently updated first.
            Args:
                limit: Maximum number of notes to list
            """
            with timed_operation("sn_list_favorites") as op:
                try:
                    notes = self.note_service.list_favorites()
                    op["count"] = len(notes)
                    if not notes:
                        return "No favorite notes."
                    return format_note_list("Favorites", notes, limit)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_search")
        def sn_search(
            query: str,
            folder_id: Optional[str] = None,
            tags: Optional[str] = None,
            limit: int = 10,
        ) -> str:
            """Search notes by meaning, boosted by exact text matches.
            Args:
                query: Free-text query
                folder_id: Restrict to one folder (optional)
                tags: Comma-separated tags; notes must carry at least one (optional)
                limit: Maximum number of results to return
            """
            with timed_operation("sn_search", query=query[:30] if query else None) as op:
                try:
                    hits = self.search_service.search(
                        query,
                        owner_id=self.settings.default_owner_id,
                        folder_id=folder_id,
                        tags=_split_tags(tags),
                        limit=limit,
                    )
                    op["result_count"] = len(hits)
                    if not hits:
                        return "No matching notes found."

                    output = f"Found {len(hits)} notes:\n\n"
                    for i, hit in enumerate(hits, 1):
                        note = hit.note
                        output += f"{i}. {note.title} (ID: {note.id})\n"
                        output += (
                            f"   Score: {hit.score:.3f} "
                            f"(similarity: {hit.similarity_label}"
                        )
                        if hit.lexical_match:
                            output += ", text match"
                        output += ")\n"
                        if note.tags:
                            output += f"   Tags: {', '.join(note.tag_names)}\n"
                        preview = note.content[:150].replace("\n", " ")
                        if len(note.content) > 150:
                            preview += "..."
                        output += f"   Preview: {preview}\n\n"
                    if any(hit.degraded for hit in hits):
                        output += "(Some results were ranked by text match only.)\n"
                    return output.rstrip()
                except Exception as e:
                    return self.format_error_response(e)

    def _register_folder_tools(self) -> None:
        @self.mcp.tool(name="sn_create_folder")
        def sn_create_folder(
            name: str, parent_id: Optional[str] = None, color: str = "gray"
        ) -> str:
            """Create a folder. Folders nest at most three levels deep.
            Args:
                name: Folder name (unique among its siblings)
                parent_id: Parent folder ID (optional, root when omitted)
                color: One of gray, red, orange, yellow, green, blue, purple, pink
            """
            with timed_operation("sn_create_folder", name=name[:30]) as op:
                try:
                    folder = self.note_service.create_folder(
                        name, parent_id=parent_id, color=color
                    )
                    op["folder_id"] = folder.id
                    return f"Folder created: {folder.name} (ID: {folder.id}, depth {folder.depth})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_list_folders")
        def sn_list_folders() -> str:
            """List the folder tree with note counts."""
            with timed_operation("sn_list_folders") as op:
                try:
                    folders = self.note_service.list_folders()
                    membership = self.folder_repository.get_membership(
                        self.settings.default_owner_id
                    )
                    op["count"] = len(folders)
                    children = {}
                    for folder in folders:
                        children.setdefault(folder.parent_id, []).append(folder)

                    lines = [f"Folders ({len(folders)}):", ""]

                    def walk(parent_id):
                        for folder in children.get(parent_id, []):
                            marker = " [default]" if folder.is_default else ""
                            count = len(membership.get(folder.id, []))
                            lines.append(
                                f"{'  ' * folder.depth}* {folder.name}{marker} "
                                f"(ID: {folder.id}, {count} notes)"
                            )
                            walk(folder.id)

                    walk(None)
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_update_folder")
        def sn_update_folder(
            folder_id: str, name: Optional[str] = None, color: Optional[str] = None
        ) -> str:
            """Rename or recolor a folder.
            Args:
                folder_id: The folder to update
                name: New name (optional)
                color: New color (optional)
            """
            with timed_operation("sn_update_folder", folder_id=folder_id):
                try:
                    folder = self.note_service.update_folder(
                        folder_id, name=name, color=color
                    )
                    return f"Folder updated: {folder.name} ({folder.color.value})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_move_folder")
        def sn_move_folder(folder_id: str, new_parent_id: Optional[str] = None) -> str:
            """Move a folder (with its subtree) under another parent.
            Args:
                folder_id: The folder to move
                new_parent_id: New parent ID, or omit to make it a root folder
            """
            with timed_operation("sn_move_folder", folder_id=folder_id):
                try:
                    folder = self.note_service.move_folder(folder_id, new_parent_id)
                    return f"Folder moved: {folder.name} (depth {folder.depth})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_delete_folder")
        def sn_delete_folder(folder_id: str, confirm: bool = False) -> str:
            """Delete an empty-of-subfolders folder; its notes move to the default folder.
            Args:
                folder_id: The folder to delete
                confirm: Must be True to proceed (safety check)
            """
            with timed_operation("sn_delete_folder", folder_id=folder_id) as op:
                try:
                    folder = self.folder_repository.get(folder_id)
                    if folder is None:
                        return f"Folder '{folder_id}' not found."
                    if not confirm:
                        return (
                            f"Delete folder '{folder.name}'?\n\n"
                            "Its notes will move to the default folder.\n"
                            "To proceed, call again with confirm=True"
                        )
                    moved = self.note_service.delete_folder(folder_id)
                    op["moved_notes"] = moved
                    return f"Folder '{folder.name}' deleted ({moved} notes moved)."
                except Exception as e:
                    return self.format_error_response(e)

    def _register_tag_tools(self) -> None:
        @self.mcp.tool(name="sn_list_tags")
        def sn_list_tags() -> str:
            """List tags with their usage counts."""
            with timed_operation("sn_list_tags"):
                try:
                    counts = self.note_service.list_tags()
                    if not counts:
                        return "No tags found."
                    output = f"Tags ({len(counts)}):\n\n"
                    for name, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])):
                        output += f"- {name} ({count} notes)\n"
                    return output.rstrip()
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_notes_by_tag")
        def sn_notes_by_tag(tags: str, match_all: bool = False, limit: int = 50) -> str:
            """List notes carrying the given tags, most recently updated first.
            Args:
                tags: Comma-separated tags
                match_all: Require every tag instead of any of them
                limit: Maximum number of notes to list
            """
            with timed_operation("sn_notes_by_tag") as op:
                try:
                    notes = self.note_service.list_notes_by_tags(
                        _split_tags(tags) or [], match_all=match_all
                    )
                    op["count"] = len(notes)
                    if not notes:
                        return "No notes carry these tags."
                    return format_note_list(f"Notes tagged {tags.strip()}", notes, limit)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_tag_note")
        def sn_tag_note(note_id: str, tag: str) -> str:
            """Add a tag to a note, creating the tag if needed.
            Args:
                note_id: The note to tag
                tag: Tag name
            """
            with timed_operation("sn_tag_note", note_id=note_id):
                try:
                    note = self.note_service.add_tag_to_note(note_id, tag)
                    return f"Tags of '{note.title}': {', '.join(note.tag_names)}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_untag_note")
        def sn_untag_note(note_id: str, tag: str) -> str:
            """Remove a tag from a note. The tag itself is kept.
            Args:
                note_id: The note to untag
                tag: Tag name
            """
            with timed_operation("sn_untag_note", note_id=note_id):
                try:
                    note = self.note_service.remove_tag_from_note(note_id, tag)
                    return f"Tags of '{note.title}': {', '.join(note.tag_names) or '(none)'}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_rename_tag")
        def sn_rename_tag(old_name: str, new_name: str) -> str:
            """Rename a tag on every note that carries it.
            Args:
                old_name: Current tag name
                new_name: New tag name (must not already exist)
            """
            with timed_operation("sn_rename_tag"):
                try:
                    tag = self.note_service.rename_tag(old_name, new_name)
                    return f"Tag renamed to '{tag.name}'."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_delete_tag")
        def sn_delete_tag(tag: str, confirm: bool = False) -> str:
            """Delete a tag and remove it from every note.
            Args:
                tag: Tag name
                confirm: Must be True to proceed (safety check)
            """
            with timed_operation("sn_delete_tag") as op:
                try:
                    if not confirm:
                        return (
                            f"Delete tag '{tag}' from all notes?\n\n"
                            "To proceed, call again with confirm=True"
                        )
                    detached = self.note_service.delete_tag(tag)
                    op["detached"] = detached
                    return f"Tag '{tag}' deleted ({detached} notes untagged)."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_cleanup_tags")
        def sn_cleanup_tags() -> str:
            """Delete tags that no note carries."""
            with timed_operation("sn_cleanup_tags"):
                try:
                    count = self.note_service.delete_unused_tags()
                    return f"Deleted {count} unused tags."
                except Exception as e:
                    return self.format_error_response(e)

    def _register_ai_tools(self) -> None:
        @self.mcp.tool(name="sn_analyze")
        def sn_analyze(
            content: str = "", note_id: Optional[str] = None, format: str = "text"
        ) -> str:
            """Suggest a folder, tags and a title for content.

            Nothing is applied; use sn_apply_suggestion to accept.
            Args:
                content: Captured content to analyze (or use note_id)
                note_id: Analyze this note and store the suggestion on it
                format: "text" (default) or "json"
            """
            with timed_operation("sn_analyze", note_id=note_id) as op:
                try:
                    if format not in ("text", "json"):
                        raise ValidationError(
                            "format must be 'text' or 'json'", field="format", value=format
                        )
                    _validate_input_lengths(content=content)
                    suggestion = self.note_service.analyze(content, note_id=note_id)
                    op["heuristic_only"] = suggestion.heuristic_only
                    op["confidence"] = round(suggestion.confidence, 3)
                    if format == "json":
                        return suggestion.model_dump_json(indent=2)
                    return format_suggestion(suggestion)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_apply_suggestion")
        def sn_apply_suggestion(
            note_id: str,
            folder_index: int = 0,
            accept_tags: bool = True,
            suggestion: Optional[str] = None,
        ) -> str:
            """Apply an organization suggestion to a note.
            Args:
                note_id: The note to organize
                folder_index: Which folder candidate to accept (default: best)
                accept_tags: Also add the suggested tags
                suggestion: JSON from sn_analyze(format="json"); defaults to
                    the suggestion stored on the note by sn_analyze(note_id=...)
            """
            with timed_operation("sn_apply_suggestion", note_id=note_id):
                try:
                    parsed = json.loads(suggestion) if suggestion else None
                    note = self.note_service.apply_suggestion(
                        note_id,
                        parsed,
                        folder_index=folder_index,
                        accept_tags=accept_tags,
                    )
                    folder = self.folder_repository.get(note.folder_id)
                    return (
                        f"Note organized: {note.title}\n"
                        f"Folder: {folder.name if folder else '(none)'}\n"
                        f"Tags: {', '.join(note.tag_names) or '(none)'}"
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_embedding_status")
        def sn_embedding_status() -> str:
            """Show embedding cache freshness and operation metrics."""
            with timed_operation("sn_embedding_status"):
                try:
                    status = self.note_service.embedding_status()
                    status["metrics"] = metrics.get_summary()
                    return json.dumps(status, indent=2, default=str)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_invalidate_embeddings")
        def sn_invalidate_embeddings(confirm: bool = False) -> str:
            """Mark every cached embedding stale (e.g. after a model change).

            Embeddings are rebuilt lazily on next use.
            Args:
                confirm: Must be True to proceed (safety check)
            """
            with timed_operation("sn_invalidate_embeddings") as op:
                try:
                    if not confirm:
                        return (
                            "Invalidate all cached embeddings?\n\n"
                            "Every note will be re-embedded on next search or analysis.\n"
                            "To proceed, call again with confirm=True"
                        )
                    count = self.note_service.invalidate_all_embeddings()
                    op["invalidated"] = count
                    return f"Invalidated {count} cached embeddings."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="sn_rebuild_embeddings")
        def sn_rebuild_embeddings() -> str:
            """Re-embed every note whose cached embedding is stale or missing, now.

            Useful right after sn_invalidate_embeddings so the next search
            does not pay for recomputation.
            """
            with timed_operation("sn_rebuild_embeddings") as op:
                try:
                    summary = self.note_service.rebuild_embeddings()
                    op.update(summary)
                    return (
                        f"Rebuilt {summary['rebuilt']} embeddings "
                        f"({summary['conflicts']} superseded by newer edits, "
                        f"{summary['failed']} failed; {summary['total']} notes)."
                    )
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
