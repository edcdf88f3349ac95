"""Structural signal detection for captured note content.

Cheap, deterministic heuristics that work without any embedding backend:
code fences and their declared language, keyword-based language
sniffing, markdown/HTML headings and math delimiters.
"""

import html
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Tuple

from smartnote_mcp.services.content_normalizer import normalize

TITLE_MAX_LENGTH = 60

# Canonical language id -> display label used for folder proposals
LANGUAGE_LABELS: Dict[str, str] = {
    "python": "Python",
    "javascript": "JavaScript",
    "typescript": "TypeScript",
    "java": "Java",
    "c": "C",
    "cpp": "C++",
    "go": "Go",
    "rust": "Rust",
    "sql": "SQL",
    "bash": "Bash",
    "html": "HTML",
    "css": "CSS",
}

_LANGUAGE_ALIASES = {
    "py": "python",
    "python3": "python",
    "js": "javascript",
    "jsx": "javascript",
    "node": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "c++": "cpp",
    "cc": "cpp",
    "cxx": "cpp",
    "h": "c",
    "golang": "go",
    "rs": "rust",
    "sh": "bash",
    "shell": "bash",
    "zsh": "bash",
    "console": "bash",
    "postgres": "sql",
    "postgresql": "sql",
    "mysql": "sql",
    "sqlite": "sql",
    "htm": "html",
    "xml": "html",
    "scss": "css",
}

_M = re.MULTILINE
_I = re.IGNORECASE

# (pattern, weight) per language; a language needs MIN_SNIFF_SCORE to count
_LANGUAGE_PATTERNS: List[Tuple[str, List[Tuple[Pattern[str], int]]]] = [
    ("python", [
        (re.compile(r"^\s*def\s+\w+\s*\([^)]*\)\s*(->\s*[^:\n]+)?:", _M), 3),
        (re.compile(r"^\s*class\s+\w+\s*(\([^)]*\))?\s*:", _M), 3),
        (re.compile(r"\belif\b"), 3),
        (re.compile(r"\bself\.\w+"), 2),
        (re.compile(r"__\w+__"), 2),
        (re.compile(r"^\s*from\s+[\w.]+\s+import\s+\w+", _M), 2),
        (re.compile(r"\bprint\("), 1),
    ]),
    ("typescript", [
        (re.compile(r"\binterface\s+\w+\s*\{"), 3),
        (re.compile(r"[\w)]\s*:\s*(string|number|boolean|void|unknown|any)\b"), 3),
        (re.compile(r"^\s*(export\s+)?type\s+\w+\s*=", _M), 2),
        (re.compile(r"\b(const|let)\s+\w+\s*:\s*\w+"), 2),
    ]),
    ("javascript", [
        (re.compile(r"console\.log\("), 3),
        (re.compile(r"\bfunction\s*\w*\s*\("), 2),
        (re.compile(r"\b(const|let|var)\s+\w+\s*="), 2),
        (re.compile(r"\brequire\(|\bmodule\.exports\b"), 2),
        (re.compile(r"\b(document|window)\.\w+"), 2),
        (re.compile(r"=>"), 1),
    ]),
    ("java", [
        (re.compile(r"\bpublic\s+(static\s+)?(final\s+)?(class|void|int|String)\b"), 3),
        (re.compile(r"System\.out\.print"), 3),
        (re.compile(r"@Override\b"), 3),
        (re.compile(r"\bprivate\s+\w+(<[^>]*>)?\s+\w+\s*;"), 2),
    ]),
    ("cpp", [
        (re.compile(r"#include\s*<(iostream|vector|string|map|memory|algorithm)>"), 4),
        (re.compile(r"\bstd::\w+"), 3),
        (re.compile(r"\bcout\s*<<"), 3),
        (re.compile(r"\btemplate\s*<"), 3),
    ]),
    ("c", [
        (re.compile(r"#include\s*<\w+\.h>"), 3),
        (re.compile(r"\bprintf\s*\("), 2),
        (re.compile(r"\bmalloc\s*\("), 2),
        (re.compile(r"\bint\s+main\s*\("), 2),
    ]),
    ("go", [
        (re.compile(r"\bfunc\s+(\([^)]*\)\s*)?\w+\s*\("), 3),
        (re.compile(r"\bfmt\.\w+"), 3),
        (re.compile(r"^\s*package\s+\w+\s*$", _M), 2),
        (re.compile(r"\w\s*:=\s*"), 2),
    ]),
    ("rust", [
        (re.compile(r"\bfn\s+\w+\s*(<[^>]*>)?\s*\("), 3),
        (re.compile(r"\blet\s+mut\b"), 3),
        (re.compile(r"\w+!\("), 2),
        (re.compile(r"\bimpl\b"), 2),
    ]),
    ("sql", [
        (re.compile(r"\bSELECT\b[\s\S]+?\bFROM\b"), 3),
        (re.compile(r"\b(insert\s+into|create\s+table|delete\s+from)\b", _I), 3),
        (re.compile(r"\bUPDATE\s+\w+\s+SET\b", _I), 3),
        (re.compile(r"\b(WHERE|JOIN|GROUP BY|ORDER BY)\b"), 1),
    ]),
    ("bash", [
        (re.compile(r"^#!\s*/(usr/)?bin/(env\s+)?(ba)?sh", _M), 4),
        (re.compile(
            r"^\s*\$?\s*(sudo|apt-get|apt|brew|npm|pip|cd|ls|echo|export|chmod|mkdir|grep|curl)\s",
            _M,
        ), 2),
        (re.compile(r"^\s*(fi|done|esac)\s*$", _M), 2),
        (re.compile(r"\$\{\w+\}"), 1),
    ]),
    ("html", [
        (re.compile(r"<!DOCTYPE\s+html>", _I), 4),
        (re.compile(r"<(html|head|body|div|span|ul|li|table|form|input)\b[^>]*>", _I), 2),
        (re.compile(r"</(html|head|body|div|span|ul|li|table|form)>", _I), 1),
    ]),
    ("css", [
        (re.compile(r"[.#]?[\w-]+\s*\{[^{}]*[\w-]+\s*:\s*[^;{}]+;[^{}]*\}"), 3),
        (re.compile(r"@media\b"), 3),
        (re.compile(r"\b(color|margin|padding|display|font-size)\s*:"), 1),
    ]),
]

MIN_SNIFF_SCORE = 3

_FENCE = re.compile(
    r"^```(?P<lang>[\w+#.-]*)[ \t]*\n(?P<body>.*?)\n?^```[ \t]*$", re.MULTILINE | re.DOTALL
)
_MD_HEADING = re.compile(r"^#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)
_HTML_HEADING = re.compile(r"<h[1-6]\b[^>]*>(.*?)</h[1-6]\s*>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_MATH_PATTERNS = [
    re.compile(r"\$\$.+?\$\$", re.DOTALL),
    re.compile(r"\\\(.+?\\\)", re.DOTALL),
    re.compile(r"\\\[.+?\\\]", re.DOTALL),
    # Inline $...$ that does not look like currency ("$5 and $10")
    re.compile(r"(?<![\$\\])\$(?=\S)[^$\n]+?(?<=\S)\$(?!\d)"),
]
_MATH_NODE = re.compile(r"""data-type\s*=\s*["'](inline|block)-math["']""", re.IGNORECASE)


def canonical_language(name: Optional[str]) -> Optional[str]:
    """Map a fence/class language name to a canonical language id, if known."""
    if not name:
        return None
    key = name.strip().lower()
    key = _LANGUAGE_ALIASES.get(key, key)
    return key if key in LANGUAGE_LABELS else None


def sniff_language(text: str) -> Optional[str]:
    """Guess the programming language of a snippet by keyword scoring.

    Returns None unless some language reaches MIN_SNIFF_SCORE. Ties go to
    the language listed first.
    """
    best, best_score = None, 0
    for language, patterns in _LANGUAGE_PATTERNS:
        score = sum(weight for pattern, weight in patterns if pattern.search(text))
        if score > best_score:
            best, best_score = language, score
    return best if best_score >= MIN_SNIFF_SCORE else None


@dataclass
class StructuralSignals:
    """Structural features detected in captured content."""

    has_code: bool = False
    declared_language: Optional[str] = None
    sniffed_language: Optional[str] = None
    headings: List[str] = field(default_factory=list)
    has_math: bool = False

    @property
    def language(self) -> Optional[str]:
        """Declared fence language wins over the sniffed one."""
        return self.declared_language or self.sniffed_language

    @property
    def language_label(self) -> Optional[str]:
        return LANGUAGE_LABELS.get(self.language) if self.language else None

    @property
    def first_heading(self) -> Optional[str]:
        return self.headings[0] if self.headings else None

    @property
    def is_empty(self) -> bool:
        return not (self.has_code or self.language or self.headings or self.has_math)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_code": self.has_code,
            "language": self.language,
            "declared_language": self.declared_language,
            "sniffed_language": self.sniffed_language,
            "headings": list(self.headings),
            "has_math": self.has_math,
        }


def _strip_fences(text: str) -> str:
    return _FENCE.sub("", text)


def detect_signals(raw: str, normalized: Optional[str] = None) -> StructuralSignals:
    """Detect structural signals in raw content.

    Args:
        raw: Raw note content (HTML, markdown or plain text).
        normalized: ``normalize(raw)`` if the caller already has it.
    """
    if normalized is None:
        normalized = normalize(raw)

    fences = list(_FENCE.finditer(normalized))
    declared = None
    for fence in fences:
        declared = canonical_language(fence.group("lang"))
        if declared:
            break

    code_text = "\n".join(f.group("body") for f in fences) if fences else normalized
    sniffed = sniff_language(code_text)

    prose = _strip_fences(normalized)
    headings = [
        html.unescape(_TAG.sub("", h)).strip() for h in _HTML_HEADING.findall(raw or "")
    ]
    headings.extend(h.strip() for h in _MD_HEADING.findall(prose))
    headings = [h for h in dict.fromkeys(headings) if h]

    has_math = bool(_MATH_NODE.search(raw or "")) or any(
        p.search(prose) for p in _MATH_PATTERNS
    )

    return StructuralSignals(
        has_code=bool(fences) or sniffed is not None,
        declared_language=declared,
        sniffed_language=sniffed,
        headings=headings,
        has_math=has_math,
    )


def suggest_title(normalized: str, signals: StructuralSignals) -> Optional[str]:
    """First heading, else the first prose line, at most TITLE_MAX_LENGTH chars."""
    candidate = signals.first_heading
    if not candidate:
        for line in _strip_fences(normalized).splitlines():
            line = line.strip().lstrip("#").strip()
            if line:
                candidate = line
                break
    if not candidate and normalized:
        # Code-only content: use the first code line
        for line in normalized.splitlines():
            if line.strip() and not line.startswith("```"):
                candidate = line.strip()
                break
    if not candidate:
        return None
    if len(candidate) <= TITLE_MAX_LENGTH:
        return candidate
    cut = candidate[:TITLE_MAX_LENGTH]
    space = cut.rfind(" ")
    if space > TITLE_MAX_LENGTH // 2:
        cut = cut[:space]
    return cut.rstrip(" .,:;-")
