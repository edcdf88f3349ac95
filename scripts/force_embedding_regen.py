#!/usr/bin/env python
"""Force every note embedding to be regenerated.

Marks all cached embeddings stale; notes are re-embedded lazily the next
time search or analysis touches them. Run after changing
SMARTNOTE_EMBEDDING_MODEL or SMARTNOTE_EMBEDDING_DIM.

Usage:
    uv run python scripts/force_embedding_regen.py
    uv run python scripts/force_embedding_regen.py --database-path /tmp/smartnote.db --dry-run
"""

import sys

from smartnote_mcp.maintenance import main

if __name__ == "__main__":
    sys.exit(main())
