"""Embedding cache maintenance.

``smartnote-regen-embeddings`` marks every cached note embedding stale, e.g.
after switching the embedding model. Nothing is recomputed here: each note
is re-embedded lazily the next time search or analysis needs it.
"""
import argparse
import logging
import sys
from pathlib import Path

from smartnote_mcp.config import config
from smartnote_mcp.models.db_models import init_db
from smartnote_mcp.observability import configure_logging
from smartnote_mcp.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


def invalidate_all_embeddings(engine=None) -> int:
    """Invalidate every stored embedding record.

    Idempotent: calling it again reports the same number of records and
    leaves them all stale.

    Returns:
        Number of embedding records marked stale.
    """
    repository = NoteRepository(engine=engine)
    count = repository.invalidate_all_embeddings()
    logger.info(f"Invalidated {count} embeddings")
    return count


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Force regeneration of all note embeddings (lazily, on next use)"
    )
    parser.add_argument(
        "--database-path",
        help="SQLite database file path (defaults to SMARTNOTE_DATABASE_PATH)",
        type=str,
        default=None,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report how many embeddings are stored",
    )
    args = parser.parse_args(argv)

    configure_logging(level=logging.INFO, console=True)
    if args.database_path:
        config.database_path = Path(args.database_path)

    try:
        engine = init_db()
        if args.dry_run:
            stored = NoteRepository(engine=engine).count_embeddings()
            print(f"{stored} stored embeddings would be invalidated")
            return 0
        count = invalidate_all_embeddings(engine)
    except Exception as e:
        logger.error(f"Embedding invalidation failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Invalidated {count} embeddings; they will be rebuilt on next use.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
