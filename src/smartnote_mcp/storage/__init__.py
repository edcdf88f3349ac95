"""Storage layer for the SmartNote MCP server."""

from smartnote_mcp.storage.folder_repository import FolderRepository
from smartnote_mcp.storage.note_repository import NoteRepository
from smartnote_mcp.storage.tag_repository import TagRepository

__all__ = [
    "NoteRepository",
    "FolderRepository",
    "TagRepository",
]
