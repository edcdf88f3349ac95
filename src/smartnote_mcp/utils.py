"""Utility functions for the SmartNote MCP server."""

from typing import Optional

import numpy as np


def cosine_similarity(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> float:
    """Cosine similarity clamped to [0, 1].

    Negative similarity carries no useful signal for ranking or
    classification, so it is treated as unrelated. Missing, mismatched or
    zero vectors score 0.
    """
    if a is None or b is None or a.shape != b.shape:
        return 0.0
    norm = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    similarity = float(np.dot(a, b)) / norm
    return min(1.0, max(0.0, similarity))


def contains_casefold(haystack: Optional[str], needle: str) -> bool:
    """Case-insensitive substring test; an empty needle never matches."""
    if not haystack or not needle:
        return False
    return needle.casefold() in haystack.casefold()
