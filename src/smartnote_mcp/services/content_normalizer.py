"""Content normalization: raw rich note content to plain text.

Notes arrive as editor HTML or markdown. Everything downstream (embedding,
lexical matching, structural signal detection) works on the plain text
produced here.

Rules:
    - script/style elements are removed with their bodies
    - block-level tags become line breaks, other tags are dropped
    - HTML entities are decoded
    - whitespace is collapsed within each line; blank lines are dropped
    - fenced code bodies are preserved verbatim (indentation matters to
      the language heuristics)
    - ``<pre><code class="language-x">`` blocks become ``x`` fences
    - editor math nodes become ``$...$`` / ``$$...$$``

``normalize`` is idempotent: normalize(normalize(x)) == normalize(x).
Escaped markup is decoded one level per pass until nothing changes, so
``&amp;lt;b&amp;gt;`` ends up removed like ``<b>``.

Limits:
    - outside a fence anything shaped like a tag is markup, so prose such
      as ``List<String>`` loses ``<String>``; put code in a fence
    - HTML transforms (script/style removal, ``<pre>`` conversion, math
      nodes) only apply to prose, never to fence bodies
"""

import html
import re
from typing import Iterator, NamedTuple, Optional, Tuple

_SCRIPT_STYLE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_PRE_CODE = re.compile(
    r"<pre\b[^>]*>\s*(?:<code\b(?P<attrs>[^>]*)>)?(?P<body>.*?)(?:</code>\s*)?</pre\s*>",
    re.IGNORECASE | re.DOTALL,
)
_LANGUAGE_CLASS = re.compile(r"""class\s*=\s*["'][^"']*\blang(?:uage)?-([\w+#-]+)""", re.IGNORECASE)
_MATH_NODE = re.compile(
    r"""<(?P<tag>\w+)\b[^>]*\bdata-type\s*=\s*["'](?P<kind>inline|block)-math["'][^>]*>""",
    re.IGNORECASE,
)
_DATA_LATEX = re.compile(r"""\bdata-latex\s*=\s*(["'])(?P<latex>.*?)\1""", re.IGNORECASE | re.DOTALL)
_BLOCK_TAG = re.compile(
    r"</?(?:div|p|br|h[1-6]|li|ul|ol|tr|table|blockquote|pre|section|article|hr)\b[^>]*>",
    re.IGNORECASE,
)
_ANY_TAG = re.compile(r"</?[a-zA-Z][^>]*>|<!--.*?-->", re.DOTALL)
_FENCE = re.compile(
    r"^```(?P<lang>[\w+#.-]*)[ \t]*\n(?P<body>.*?)\n?^```[ \t]*$",
    re.MULTILINE | re.DOTALL,
)
_INLINE_WS = re.compile(r"[ \t\f\v\u00a0]+")


class TruncationResult(NamedTuple):
    content: str
    was_truncated: bool
    original_length: int


def _html_code_to_fence(match: "re.Match[str]") -> str:
    attrs = match.group("attrs") or ""
    lang_match = _LANGUAGE_CLASS.search(attrs) or _LANGUAGE_CLASS.search(match.group(0)[:200])
    language = lang_match.group(1).lower() if lang_match else ""
    body = html.unescape(_ANY_TAG.sub("", match.group("body"))).strip("\n")
    return f"\n```{language}\n{body}\n```\n"


def _math_node_to_delimiters(text: str) -> str:
    def replace(match: "re.Match[str]") -> str:
        latex_match = _DATA_LATEX.search(match.group(0))
        if not latex_match:
            return match.group(0)
        latex = html.unescape(latex_match.group("latex"))
        if match.group("kind").lower() == "block":
            return f"\n$${latex}$$\n<{match.group('tag')}>"
        return f"${latex}$<{match.group('tag')}>"

    return _MATH_NODE.sub(replace, text)


def _normalize_prose(text: str) -> str:
    """Normalize a segment that contains no code fence."""
    text = _BLOCK_TAG.sub("\n", text)
    text = _ANY_TAG.sub("", text)
    text = html.unescape(text)
    lines = (_INLINE_WS.sub(" ", line).strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def _split_fences(text: str) -> Iterator[Tuple[Optional["re.Match[str]"], str]]:
    """Yield (fence match, "") for fences and (None, segment) for prose."""
    position = 0
    for fence in _FENCE.finditer(text):
        if fence.start() > position:
            yield None, text[position:fence.start()]
        yield fence, ""
        position = fence.end()
    if position < len(text):
        yield None, text[position:]


def _format_fence(fence: "re.Match[str]") -> str:
    body = fence.group("body").rstrip("\n")
    return f"```{fence.group('lang').lower()}\n{body}\n```"


def _convert_html(segment: str) -> str:
    segment = _SCRIPT_STYLE.sub("", segment)
    segment = _PRE_CODE.sub(_html_code_to_fence, segment)
    return _math_node_to_delimiters(segment)


def _single_pass(raw: str) -> str:
    text = raw.replace("\r\n", "\n").replace("\r", "\n")

    parts = []
    for fence, segment in _split_fences(text):
        if fence is not None:
            parts.append(_format_fence(fence))
            continue
        # <pre><code> blocks become fences of their own
        for inner_fence, prose_segment in _split_fences(_convert_html(segment)):
            if inner_fence is not None:
                parts.append(_format_fence(inner_fence))
                continue
            prose = _normalize_prose(prose_segment)
            if prose:
                parts.append(prose)
    return "\n".join(parts).strip()


def normalize(raw: str) -> str:
    """Strip formatting from raw note content.

    Args:
        raw: Editor HTML, markdown or plain text.

    Returns:
        Plain text; "" for empty input.
    """
    if not raw:
        return ""
    current = raw
    # A pass that changes the text removes markup or one escaping level,
    # so a fixpoint is reached well within len(raw) passes
    for _ in range(len(raw) + 1):
        following = _single_pass(current)
        if following == current:
            break
        current = following
    return current


def truncate_content(content: str, limit: int) -> TruncationResult:
    """Cut content down to ``limit`` characters, reporting whether it was cut."""
    if len(content) <= limit:
        return TruncationResult(content, False, len(content))
    return TruncationResult(content[:limit], True, len(content))


def prepare_embedding_text(title: str, content: str, max_chars: int) -> str:
    """Combine a note's title and normalized body into embedding input."""
    body = normalize(content)
    title = (title or "").strip()
    if title and body:
        combined = f"{title}\n\n{body}"
    else:
        combined = title or body
    return combined[:max_chars]
