"""Organization analyzer: folder and tag suggestions for captured content.

Suggestions come from a layered fallback chain of pure functions:

    embedding layer  -> similarity against folder/tag centroids + signals
    heuristic layer  -> structural signals only (confidence capped)
    empty layer      -> a valid suggestion with no candidates

Centroids are plain mappings (folder id -> vector, tag id -> vector)
rebuilt from membership mappings for every analysis. Nothing here writes
to storage; suggestions are applied only when a caller accepts them.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from smartnote_mcp.config import MAX_FOLDER_DEPTH, SmartNoteConfig, config as default_config
from smartnote_mcp.exceptions import InvalidInputError, ProviderUnavailableError
from smartnote_mcp.models.schema import (
    Folder,
    FolderSuggestion,
    OrganizationSuggestion,
    Tag,
    TagSuggestion,
)
from smartnote_mcp.observability import timed_operation
from smartnote_mcp.services.content_normalizer import (
    normalize,
    prepare_embedding_text,
    truncate_content,
)
from smartnote_mcp.services.signals import (
    TITLE_MAX_LENGTH,
    StructuralSignals,
    detect_signals,
    suggest_title,
)
from smartnote_mcp.utils import cosine_similarity

logger = logging.getLogger(__name__)

MATH_FOLDER_LABEL = "Mathematics"
MATH_TAG = "math"

# Base confidence of each structural signal on its own
DECLARED_LANGUAGE_CONFIDENCE = 0.6
SNIFFED_LANGUAGE_CONFIDENCE = 0.5
MATH_CONFIDENCE = 0.5
HEADING_CONFIDENCE = 0.35
DEFAULT_FOLDER_CONFIDENCE = 0.2
LITERAL_TAG_CONFIDENCE = 0.4


@dataclass
class CentroidIndex:
    """Mean embedding per folder and per tag (only for non-empty groups)."""

    folders: Dict[str, np.ndarray] = field(default_factory=dict)
    tags: Dict[int, np.ndarray] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.folders and not self.tags


def build_centroids(
    membership: Mapping[Hashable, Sequence[str]],
    vectors: Mapping[str, Optional[np.ndarray]],
) -> Dict[Hashable, np.ndarray]:
    """Running mean of member vectors per group; groups with none are skipped."""
    centroids = {}
    for group_id, note_ids in membership.items():
        mean: Optional[np.ndarray] = None
        count = 0
        for note_id in note_ids:
            vector = vectors.get(note_id)
            if vector is None:
                continue
            count += 1
            if mean is None:
                mean = vector.astype(np.float64)
            else:
                mean += (vector - mean) / count
        if mean is not None:
            centroids[group_id] = mean.astype(np.float32)
    return centroids


@dataclass
class AnalysisContext:
    """Everything a layer needs; built once per analyze() call."""

    normalized: str
    signals: StructuralSignals
    title: Optional[str]
    was_truncated: bool
    folders: List[Folder]
    tags: List[Tag]
    centroids: CentroidIndex
    vector: Optional[np.ndarray] = None

    @property
    def folders_by_id(self) -> Dict[str, Folder]:
        return {f.id: f for f in self.folders}

    @property
    def default_folder(self) -> Optional[Folder]:
        return next((f for f in self.folders if f.is_default), None)


def _proposal_label(signals: StructuralSignals):
    """Folder label and its confidence derived from signals, or (None, 0)."""
    if signals.language_label:
        confidence = (
            DECLARED_LANGUAGE_CONFIDENCE
            if signals.declared_language
            else SNIFFED_LANGUAGE_CONFIDENCE
        )
        return signals.language_label, confidence, f"detected {signals.language_label} code"
    if signals.has_math:
        return MATH_FOLDER_LABEL, MATH_CONFIDENCE, "detected math notation"
    if signals.first_heading:
        return signals.first_heading[:TITLE_MAX_LENGTH], HEADING_CONFIDENCE, "first heading"
    return None, 0.0, ""


def _clamp_parent(parent: Optional[Folder], folders_by_id: Dict[str, Folder]):
    """Walk up from parent until a child of it fits within the depth limit."""
    clamped = False
    while parent is not None and parent.depth + 1 > MAX_FOLDER_DEPTH:
        parent = folders_by_id.get(parent.parent_id) if parent.parent_id else None
        clamped = True
    return parent, clamped


def _find_sibling(folders: Iterable[Folder], parent_id: Optional[str], name: str) -> Optional[Folder]:
    wanted = name.casefold()
    for folder in folders:
        if folder.parent_id == parent_id and folder.name.casefold() == wanted:
            return folder
    return None


def _propose_folder(
    ctx: AnalysisContext,
    label: str,
    confidence: float,
    explanation: str,
    parent: Optional[Folder],
) -> FolderSuggestion:
    """New folder under parent (clamped), or the same-named sibling."""
    parent, clamped = _clamp_parent(parent, ctx.folders_by_id)
    parent_id = parent.id if parent else None
    existing = _find_sibling(ctx.folders, parent_id, label)
    if existing is not None:
        return FolderSuggestion(
            folder_id=existing.id,
            name=existing.name,
            parent_id=existing.parent_id,
            depth=existing.depth,
            is_new=False,
            confidence=confidence,
            explanation=f"{explanation}; matches existing folder '{existing.name}'",
            clamped=clamped,
        )
    if parent is not None:
        explanation = f"{explanation}; under '{parent.name}'"
    return FolderSuggestion(
        folder_id=None,
        name=label,
        parent_id=parent_id,
        depth=parent.depth + 1 if parent else 0,
        is_new=True,
        confidence=confidence,
        explanation=explanation,
        clamped=clamped,
    )


def _existing_folder(folder: Folder, confidence: float, explanation: str) -> FolderSuggestion:
    return FolderSuggestion(
        folder_id=folder.id,
        name=folder.name,
        parent_id=folder.parent_id,
        depth=folder.depth,
        is_new=False,
        confidence=confidence,
        explanation=explanation,
    )


def _signal_tags(signals: StructuralSignals, cap: float = 1.0) -> List[TagSuggestion]:
    tags = []
    if signals.language:
        confidence = 0.9 if signals.declared_language else 0.8
        tags.append(TagSuggestion(
            name=signals.language,
            is_new=True,
            confidence=min(cap, confidence),
            explanation=f"detected {signals.language_label} code",
        ))
    if signals.has_math:
        tags.append(TagSuggestion(
            name=MATH_TAG,
            is_new=True,
            confidence=min(cap, 0.8),
            explanation="detected math notation",
        ))
    return tags


def _literal_tags(ctx: AnalysisContext, cap: float) -> List[TagSuggestion]:
    """Existing tags whose name appears in the text as a word or phrase."""
    text = ctx.normalized.casefold()
    found = []
    for tag in ctx.tags:
        phrase = re.escape(tag.name).replace(r"\-", r"[\s-]")
        if re.search(rf"(?<!\w){phrase}(?!\w)", text):
            found.append(TagSuggestion(
                name=tag.name,
                tag_id=tag.id,
                is_new=False,
                confidence=min(cap, LITERAL_TAG_CONFIDENCE),
                explanation="tag name appears in the text",
            ))
    return found


def _merge_tags(ctx: AnalysisContext, candidates: Iterable[TagSuggestion]) -> List[TagSuggestion]:
    """Deduplicate by name (keeping the highest confidence), link existing tags."""
    existing = {t.name: t for t in ctx.tags}
    best: Dict[str, TagSuggestion] = {}
    for candidate in candidates:
        current = best.get(candidate.name)
        if current is None or candidate.confidence > current.confidence:
            best[candidate.name] = candidate
    merged = []
    for name, suggestion in best.items():
        tag = existing.get(name)
        if tag is not None:
            suggestion = suggestion.model_copy(update={"tag_id": tag.id, "is_new": False})
        merged.append(suggestion)
    return sorted(merged, key=lambda t: (-t.confidence, t.name))


def _sort_folders(folders: List[FolderSuggestion]) -> List[FolderSuggestion]:
    unique: Dict[tuple, FolderSuggestion] = {}
    for folder in folders:
        key = (folder.folder_id,) if folder.folder_id else (None, folder.parent_id, folder.name.casefold())
        if key not in unique or folder.confidence > unique[key].confidence:
            unique[key] = folder
    return sorted(unique.values(), key=lambda f: (-f.confidence, f.name.casefold()))


def embedding_layer(ctx: AnalysisContext, settings: SmartNoteConfig) -> Optional[OrganizationSuggestion]:
    """Similarity against centroids, refined by structural signals."""
    if ctx.vector is None:
        return None

    folders_by_id = ctx.folders_by_id
    scored = sorted(
        (
            (cosine_similarity(ctx.vector, centroid), folders_by_id[folder_id])
            for folder_id, centroid in ctx.centroids.folders.items()
            if folder_id in folders_by_id
        ),
        key=lambda pair: (-pair[0], pair[1].name.casefold()),
    )

    folder_candidates: List[FolderSuggestion] = []
    best_similarity, best_folder = scored[0] if scored else (0.0, None)

    if best_folder is not None and best_similarity >= settings.folder_match_threshold:
        for similarity, folder in scored:
            if similarity < settings.parent_match_threshold:
                break
            folder_candidates.append(
                _existing_folder(folder, similarity, f"similar to notes in '{folder.name}'")
            )
    else:
        label, signal_confidence, explanation = _proposal_label(ctx.signals)
        parent = best_folder if best_similarity >= settings.parent_match_threshold else None
        if label:
            confidence = max(signal_confidence, best_similarity if parent else 0.0)
            folder_candidates.append(_propose_folder(ctx, label, confidence, explanation, parent))
        elif parent is not None:
            folder_candidates.append(
                _existing_folder(parent, best_similarity, f"loosely similar to '{parent.name}'")
            )
        elif ctx.default_folder is not None:
            folder_candidates.append(
                _existing_folder(ctx.default_folder, DEFAULT_FOLDER_CONFIDENCE, "no clear topic")
            )

    tag_scores = sorted(
        (
            (cosine_similarity(ctx.vector, centroid), tag)
            for tag in ctx.tags
            if tag.id is not None
            for centroid in [ctx.centroids.tags.get(tag.id)]
            if centroid is not None
        ),
        key=lambda pair: (-pair[0], pair[1].name),
    )
    similar_tags = [
        TagSuggestion(
            name=tag.name,
            tag_id=tag.id,
            is_new=False,
            confidence=similarity,
            explanation="similar to notes with this tag",
        )
        for similarity, tag in tag_scores[: settings.tag_top_k]
        if similarity >= settings.tag_match_threshold
    ]

    return OrganizationSuggestion(
        title=ctx.title,
        folders=_sort_folders(folder_candidates),
        tags=_merge_tags(ctx, [*_signal_tags(ctx.signals), *similar_tags]),
        heuristic_only=False,
        was_truncated=ctx.was_truncated,
        signals=ctx.signals.to_dict(),
    )


def heuristic_layer(ctx: AnalysisContext, settings: SmartNoteConfig) -> Optional[OrganizationSuggestion]:
    """Signals only; every confidence is capped by heuristic_confidence_cap."""
    cap = settings.heuristic_confidence_cap
    folder_candidates: List[FolderSuggestion] = []

    label, signal_confidence, explanation = _proposal_label(ctx.signals)
    if label:
        same_name = sorted(
            (f for f in ctx.folders if f.name.casefold() == label.casefold()),
            key=lambda f: (f.depth, f.id),
        )
        if same_name:
            folder_candidates.append(_existing_folder(
                same_name[0], min(cap, signal_confidence), f"{explanation}; folder name matches"
            ))
        else:
            folder_candidates.append(
                _propose_folder(ctx, label, min(cap, signal_confidence), explanation, None)
            )
    elif ctx.default_folder is not None:
        folder_candidates.append(_existing_folder(
            ctx.default_folder, min(cap, DEFAULT_FOLDER_CONFIDENCE), "no clear topic"
        ))

    tags = _merge_tags(ctx, [*_signal_tags(ctx.signals, cap), *_literal_tags(ctx, cap)])
    if not folder_candidates and not tags:
        return None
    return OrganizationSuggestion(
        title=ctx.title,
        folders=_sort_folders(folder_candidates),
        tags=tags,
        heuristic_only=True,
        was_truncated=ctx.was_truncated,
        signals=ctx.signals.to_dict(),
    )


def empty_layer(ctx: AnalysisContext, settings: SmartNoteConfig) -> OrganizationSuggestion:
    return OrganizationSuggestion(
        title=ctx.title,
        heuristic_only=ctx.vector is None,
        was_truncated=ctx.was_truncated,
        signals=ctx.signals.to_dict(),
    )


Layer = Callable[[AnalysisContext, SmartNoteConfig], Optional[OrganizationSuggestion]]

LAYERS: Sequence[Layer] = (embedding_layer, heuristic_layer, empty_layer)


class OrganizationAnalyzer:
    """Proposes a folder and tags for unstructured content.

    Args:
        embedding_service: EmbeddingService, or None for heuristic-only mode.
        settings: Configuration; defaults to the global config.
    """

    def __init__(self, embedding_service=None, settings: Optional[SmartNoteConfig] = None):
        self.embedding_service = embedding_service
        self.settings = settings or default_config

    def _embed_candidate(self, title: str, content: str) -> Optional[np.ndarray]:
        if self.embedding_service is None:
            return None
        # Same text shape as stored note vectors, so centroids compare like-for-like
        text = prepare_embedding_text(title, content, self.settings.embedding_max_chars)
        try:
            return self.embedding_service.embed(text)
        except ProviderUnavailableError as e:
            logger.warning(f"Embedding unavailable, using heuristic suggestions: {e.message}")
            return None

    def analyze(
        self,
        raw: str,
        folders: Sequence[Folder],
        tags: Sequence[Tag],
        centroids: Optional[CentroidIndex] = None,
        title: str = "",
    ) -> OrganizationSuggestion:
        """Suggest a folder and tags for raw content.

        ``title`` is the note's title when an existing note is analyzed;
        it takes part in both the heuristics and the embedding.

        Raises:
            InvalidInputError: If raw is not a string or has no text.
        """
        if not isinstance(raw, str):
            raise InvalidInputError("Content to analyze must be non-empty text", field="content")
        title = (title or "").strip()
        text = f"{title}\n\n{raw}" if title else raw
        if not text.strip():
            raise InvalidInputError("Content to analyze must be non-empty text", field="content")

        with timed_operation("analyze", chars=len(text)) as op:
            truncation = truncate_content(text, self.settings.max_content_length)
            normalized = normalize(truncation.content)
            if not normalized:
                raise InvalidInputError("Content has no text after formatting is removed", field="content")

            signals = detect_signals(truncation.content, normalized)
            ctx = AnalysisContext(
                normalized=normalized,
                signals=signals,
                title=suggest_title(normalized, signals),
                was_truncated=truncation.was_truncated,
                folders=list(folders),
                tags=list(tags),
                centroids=centroids or CentroidIndex(),
                vector=self._embed_candidate(title, raw[: self.settings.max_content_length]),
            )

            for layer in LAYERS:
                suggestion = layer(ctx, self.settings)
                if suggestion is not None:
                    op["heuristic_only"] = suggestion.heuristic_only
                    op["folders"] = len(suggestion.folders)
                    op["tags"] = len(suggestion.tags)
                    return suggestion
