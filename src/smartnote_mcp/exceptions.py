"""Custom exceptions for the SmartNote MCP server.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002
    NOTE_TITLE_REQUIRED = 1004

    # Folder errors (2xxx)
    FOLDER_NOT_FOUND = 2001
    FOLDER_DEPTH_EXCEEDED = 2002
    FOLDER_CIRCULAR_REFERENCE = 2003
    FOLDER_DUPLICATE_NAME = 2004
    FOLDER_DEFAULT_PROTECTED = 2005
    FOLDER_NOT_EMPTY = 2006

    # Tag errors (3xxx)
    TAG_NOT_FOUND = 3001
    TAG_INVALID = 3002

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    CACHE_WRITE_CONFLICT = 4010

    # Search errors (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_INVALID_QUERY = 5002

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001
    CONFIG_MISSING = 6002

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_INPUT = 7002

    # Embedding errors (8xxx)
    EMBEDDING_UNAVAILABLE = 8001
    EMBEDDING_TIMEOUT = 8002
    EMBEDDING_MALFORMED = 8003
    EMBEDDING_CLIENT_LOAD_FAILED = 8004


class SmartNoteError(Exception):
    """Base exception for all SmartNote errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(SmartNoteError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id}
        )
        self.note_id = note_id


class FolderError(SmartNoteError):
    """Raised for folder-related errors."""

    def __init__(
        self,
        message: str,
        folder_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.FOLDER_NOT_FOUND
    ):
        details = {}
        if folder_id:
            details["folder_id"] = folder_id

        super().__init__(message, code=code, details=details)
        self.folder_id = folder_id


class StructuralLimitViolation(FolderError):
    """Raised when a folder create/move would nest deeper than allowed."""

    def __init__(
        self,
        message: str,
        depth: int,
        max_depth: int,
        folder_id: Optional[str] = None
    ):
        super().__init__(
            message, folder_id=folder_id, code=ErrorCode.FOLDER_DEPTH_EXCEEDED
        )
        self.depth = depth
        self.max_depth = max_depth
        self.details["depth"] = depth
        self.details["max_depth"] = max_depth


class TagError(SmartNoteError):
    """Raised for tag-related errors."""

    def __init__(
        self,
        message: str,
        tag_name: Optional[str] = None,
        code: ErrorCode = ErrorCode.TAG_INVALID
    ):
        details = {}
        if tag_name:
            details["tag_name"] = tag_name[:100]

        super().__init__(message, code=code, details=details)
        self.tag_name = tag_name


class StorageError(SmartNoteError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class CacheWriteConflict(StorageError):
    """A recomputed embedding lost to a record with a newer source timestamp.

    Never surfaced to callers; the embedding cache counts and discards it.
    """

    def __init__(self, note_id: str):
        super().__init__(
            f"Embedding for note '{note_id}' superseded by a newer record",
            operation="store_embedding",
            code=ErrorCode.CACHE_WRITE_CONFLICT,
        )
        self.note_id = note_id
        self.details["note_id"] = note_id


class SearchError(SmartNoteError):
    """Raised for search-related errors."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED
    ):
        details = {}
        if query:
            details["query"] = query[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.query = query


class ConfigurationError(SmartNoteError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class ValidationError(SmartNoteError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class InvalidInputError(ValidationError):
    """Raised for empty or non-text content passed to the engine."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, field=field, code=ErrorCode.INVALID_INPUT)


class ProviderUnavailableError(SmartNoteError):
    """Raised when the embedding backend cannot produce a vector.

    Covers unreachable backends, quota exhaustion, timeouts and malformed
    responses. ``retryable`` tells the embedding service whether another
    attempt may succeed.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.EMBEDDING_UNAVAILABLE,
        operation: Optional[str] = None,
        retryable: bool = False,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {"retryable": retryable}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.retryable = retryable
        self.original_error = original_error
