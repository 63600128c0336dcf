# bounded_rag/streaming/latex.py
"""
Math-notation protection for raw JSON string content.

Answer text arrives still JSON-escaped, and LaTeX commands are
backslash-heavy (``\\\\nu``, ``\\\\frac``), so a naive unescape would turn
``\\\\nu`` into a newline followed by ``u``. The pipeline therefore:

1. extracts math spans into ``{{LATEX_n}}`` placeholders,
2. decodes every JSON escape in the remaining prose,
3. rehydrates the placeholders with their originals, undoing only doubled
   backslashes, ``\\n`` and ``\\"`` so commands such as ``\\frac`` survive.
"""

from __future__ import annotations

import re

PLACEHOLDER_TEMPLATE = "{{{{LATEX_{index}}}}}"

# Display math before inline math so ``$$`` is never split into two ``$``.
# Bracket delimiters are matched in their escaped wire form (``\\[``, ``\\(``).
LATEX_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\$\$([\s\S]+?)\$\$"),
    re.compile(r"\\\\\[([\s\S]+?)\\\\\]"),
    re.compile(r"\$([^\$]+?)\$"),
    re.compile(r"\\\\\(([\s\S]+?)\\\\\)"),
)

_SENTINEL = "\x00"

_JSON_ESCAPES = {'"': '"', "\\": "\\", "/": "/", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t"}
_JSON_ESCAPE = re.compile(
    r"\\(u[dD][89abAB][0-9a-fA-F]{2}\\u[dD][c-fC-F][0-9a-fA-F]{2}|u[0-9a-fA-F]{4}|[\"\\/bfnrt])"
)


def placeholder(index: int) -> str:
    return PLACEHOLDER_TEMPLATE.format(index=index)


def extract_latex(content: str) -> tuple[str, list[str]]:
    """
    Replace math spans with placeholders.

    Returns:
        The content with placeholders and the extracted spans, still escaped,
        indexed by placeholder number.
    """
    extracted: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        extracted.append(match.group(0))
        return placeholder(len(extracted) - 1)

    for pattern in LATEX_PATTERNS:
        content = pattern.sub(_replace, content)
    return content, extracted


def unescape_json_string(text: str) -> str:
    """
    Undo the JSON escapes that matter for display.

    Doubled backslashes are parked on a sentinel first so ``\\\\n`` stays a
    literal backslash + ``n`` and nothing is unescaped twice.
    """
    return (
        text.replace("\\\\", _SENTINEL)
        .replace("\\n", "\n")
        .replace('\\"', '"')
        .replace(_SENTINEL, "\\")
    )


def _decode_escape(match: re.Match[str]) -> str:
    token = match.group(1)
    if token[0] != "u":
        return _JSON_ESCAPES[token]
    if len(token) > 5:  # surrogate pair
        high, low = int(token[1:5], 16), int(token[7:], 16)
        return chr(0x10000 + ((high - 0xD800) << 10) + (low - 0xDC00))
    return chr(int(token[1:], 16))


def decode_json_escapes(text: str) -> str:
    """Decode every JSON string escape (``\\t``, ``\\/``, ``\\uXXXX`` included) in one pass."""
    return _JSON_ESCAPE.sub(_decode_escape, text)


def rehydrate_latex(content: str, extracted: list[str]) -> str:
    for index, original in enumerate(extracted):
        content = content.replace(placeholder(index), unescape_json_string(original))
    return content


def protect_answer_text(raw: str) -> str:
    """Raw (escaped) answer text -> display text with math intact."""
    content, extracted = extract_latex(raw)
    return rehydrate_latex(decode_json_escapes(content), extracted)
