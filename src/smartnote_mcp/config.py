"""Configuration module for the SmartNote MCP server."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from smartnote_mcp import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls, lives alongside the database
_USER_ENV = Path.home() / ".smartnote" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# 0 = root, 1 = child, 2 = grandchild
MAX_FOLDER_DEPTH = 2


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class SmartNoteConfig(BaseModel):
    """Configuration for the SmartNote server and its AI engine."""

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("SMARTNOTE_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("SMARTNOTE_DATABASE_PATH", "data/db/smartnote.db")
        )
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("SMARTNOTE_SERVER_NAME", "smartnote-mcp"))
    server_version: str = Field(default=__version__)
    # Single-user deployments act on behalf of this owner
    default_owner_id: str = Field(
        default_factory=lambda: os.getenv("SMARTNOTE_OWNER_ID", "local")
    )
    default_folder_name: str = Field(
        default_factory=lambda: os.getenv("SMARTNOTE_DEFAULT_FOLDER", "Inbox")
    )

    # Embedding provider configuration
    embeddings_enabled: bool = Field(
        default_factory=lambda: _env_bool("SMARTNOTE_EMBEDDINGS_ENABLED", "false")
    )
    openai_api_key: Optional[str] = Field(
        default_factory=lambda: os.getenv("OPENAI_API_KEY") or None,
        repr=False,
    )
    embedding_model: str = Field(
        default_factory=lambda: os.getenv(
            "SMARTNOTE_EMBEDDING_MODEL", "text-embedding-3-small"
        )
    )
    embedding_dim: int = Field(
        default_factory=lambda: int(os.getenv("SMARTNOTE_EMBEDDING_DIM", "1536"))
    )
    # ~2k tokens for the OpenAI embedding models
    embedding_max_chars: int = Field(
        default_factory=lambda: int(os.getenv("SMARTNOTE_EMBEDDING_MAX_CHARS", "8000"))
    )
    # Seconds; a timed-out provider call counts as a provider failure
    embedding_timeout: float = Field(
        default_factory=lambda: float(os.getenv("SMARTNOTE_EMBEDDING_TIMEOUT", "30"))
    )
    embedding_max_retries: int = Field(
        default_factory=lambda: int(os.getenv("SMARTNOTE_EMBEDDING_MAX_RETRIES", "3"))
    )
    # Base delay in seconds, doubled after each failed attempt
    embedding_retry_delay: float = Field(
        default_factory=lambda: float(
            os.getenv("SMARTNOTE_EMBEDDING_RETRY_DELAY", "1.0")
        )
    )
    # Parallel provider calls when many notes need (re)embedding at once
    embedding_concurrency: int = Field(
        default_factory=lambda: int(os.getenv("SMARTNOTE_EMBEDDING_CONCURRENCY", "4"))
    )

    # Search ranking: score = semantic_weight * cosine + lexical_weight * bonus
    semantic_weight: float = Field(
        default_factory=lambda: float(os.getenv("SMARTNOTE_SEMANTIC_WEIGHT", "0.7"))
    )
    lexical_weight: float = Field(
        default_factory=lambda: float(os.getenv("SMARTNOTE_LEXICAL_WEIGHT", "0.3"))
    )
    search_max_results: int = Field(
        default_factory=lambda: int(os.getenv("SMARTNOTE_SEARCH_MAX_RESULTS", "20"))
    )
    max_query_length: int = Field(
        default_factory=lambda: int(os.getenv("SMARTNOTE_MAX_QUERY_LENGTH", "500"))
    )

    # Organization suggestions
    folder_match_threshold: float = Field(
        default_factory=lambda: float(
            os.getenv("SMARTNOTE_FOLDER_MATCH_THRESHOLD", "0.75")
        )
    )
    parent_match_threshold: float = Field(
        default_factory=lambda: float(
            os.getenv("SMARTNOTE_PARENT_MATCH_THRESHOLD", "0.6")
        )
    )
    tag_match_threshold: float = Field(
        default_factory=lambda: float(os.getenv("SMARTNOTE_TAG_MATCH_THRESHOLD", "0.5"))
    )
    tag_top_k: int = Field(
        default_factory=lambda: int(os.getenv("SMARTNOTE_TAG_TOP_K", "5"))
    )
    heuristic_confidence_cap: float = Field(
        default_factory=lambda: float(
            os.getenv("SMARTNOTE_HEURISTIC_CONFIDENCE_CAP", "0.6")
        )
    )
    # ~2.5k tokens; longer captures are truncated before analysis
    max_content_length: int = Field(
        default_factory=lambda: int(os.getenv("SMARTNOTE_MAX_CONTENT_LENGTH", "10000"))
    )

    @model_validator(mode="after")
    def _validate_engine_config(self) -> "SmartNoteConfig":
        """Validate ranking weights, thresholds and provider limits."""
        if self.semantic_weight <= self.lexical_weight:
            raise ValueError(
                "semantic_weight must be greater than lexical_weight so lexical "
                "matches boost but never override semantic ranking"
            )
        if self.lexical_weight < 0:
            raise ValueError("lexical_weight must be >= 0")
        for name in (
            "folder_match_threshold",
            "parent_match_threshold",
            "tag_match_threshold",
            "heuristic_confidence_cap",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if self.parent_match_threshold > self.folder_match_threshold:
            raise ValueError(
                "parent_match_threshold must not exceed folder_match_threshold"
            )
        if self.tag_match_threshold > self.folder_match_threshold:
            raise ValueError("tag_match_threshold must not exceed folder_match_threshold")
        if self.tag_top_k < 1:
            raise ValueError("tag_top_k must be >= 1")
        if self.embedding_dim < 1:
            raise ValueError("embedding_dim must be >= 1")
        if self.embedding_concurrency < 1:
            raise ValueError("embedding_concurrency must be >= 1")
        if self.embedding_max_retries < 1:
            raise ValueError("embedding_max_retries must be >= 1")
        if self.embedding_timeout <= 0:
            raise ValueError("embedding_timeout must be > 0")

        if self.embeddings_enabled and not self.openai_api_key:
            logger.warning(
                "Embeddings are enabled but OPENAI_API_KEY is not set; search and "
                "organization will fall back to lexical and heuristic results."
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = SmartNoteConfig()
