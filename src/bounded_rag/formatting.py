# bounded_rag/formatting.py
"""
Prompt text assembly.

Every call site that renders chunks, citations or conversation turns goes
through these pure functions, so the text the trimmer measures is the text
the engine receives.

Chunk format::

    [Section: Methods > Data Collection > P 3 > Sentences]
    chunk content...

    ---

    [Section: Results]
    chunk content...
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from bounded_rag.models import ChatMessage, ContentChunk, ConversationState, MessageRole, SourceInfo

CHUNK_SEPARATOR = "\n\n---\n\n"
SUMMARY_PREFIX = "\n\nPrevious conversation summary: "
TRUNCATION_MARKER = "..."

_CITATION_SUFFIX = re.compile(r"\s*>\s*P\s+\d+(\s*>\s*Sentences)?$")


def format_chunk_label(chunk: ContentChunk) -> str:
    """Hierarchical citation label for a chunk."""
    label = f"[Section: {chunk.hierarchy}"
    if chunk.paragraph_index is not None:
        label += f" > P {chunk.paragraph_index + 1}"
        if chunk.sentence_group_index is not None:
            label += " > Sentences"
    return label + "]"


def format_chunk(chunk: ContentChunk, max_chunk_chars: int | None = None) -> str:
    content = chunk.content
    if max_chunk_chars and len(content) > max_chunk_chars:
        content = content[:max_chunk_chars].rstrip() + TRUNCATION_MARKER
    return f"{format_chunk_label(chunk)}\n{content}"


def format_context(
    chunks: Sequence[ContentChunk],
    max_chars: int | None = None,
    max_chunk_chars: int | None = None,
) -> str:
    """
    Render chunks as one context block.

    Args:
        chunks: Chunks in the order they should appear
        max_chars: Stop before the block would exceed this length
        max_chunk_chars: Truncate each chunk's content to this length
    """
    parts: list[str] = []
    length = 0
    for chunk in chunks:
        rendered = format_chunk(chunk, max_chunk_chars)
        added = len(rendered) + (len(CHUNK_SEPARATOR) if parts else 0)
        if max_chars is not None and length + added > max_chars:
            break
        parts.append(rendered)
        length += added
    return CHUNK_SEPARATOR.join(parts)


def source_key(chunk: ContentChunk) -> str:
    """Citation text without paragraph detail; key of the source info map."""
    return f"Section: {chunk.hierarchy}"


def normalize_citation(citation: str) -> str:
    """Strip a trailing ``> P n`` / ``> Sentences`` from a model citation."""
    return _CITATION_SUFFIX.sub("", citation.strip().strip("[]"))


def build_source_info_map(chunks: Iterable[ContentChunk]) -> dict[str, SourceInfo]:
    """Map section-level citation text to locator metadata, first chunk wins."""
    source_map: dict[str, SourceInfo] = {}
    for chunk in chunks:
        key = source_key(chunk)
        if chunk.section and key not in source_map:
            source_map[key] = SourceInfo(
                text=key,
                css_selector=chunk.css_selector,
                element_id=chunk.element_id,
                x_path=chunk.x_path,
                section_heading=chunk.section,
                start_char=chunk.start_char,
                end_char=chunk.end_char,
            )
    return source_map


def map_sources_to_info(sources: Iterable[str], source_map: dict[str, SourceInfo]) -> list[SourceInfo]:
    """Locator metadata for each citation the model produced, skipping unknowns."""
    found: list[SourceInfo] = []
    for citation in sources:
        info = source_map.get(normalize_citation(citation))
        if info is not None:
            found.append(info)
    return found


def build_prompt_with_context(context: str, question: str) -> str:
    return f"Context from the document:\n{context}\n\nUser question: {question}"


def build_qa_prompt(context: str, question: str) -> str:
    """One-shot question prompt; the answer schema carries the citations."""
    return (
        "Based on the following excerpts from a document, answer this question:\n\n"
        f"Question: {question}\n\n"
        f"Document context:\n{context}\n\n"
        "Provide a clear, accurate answer based on the information above, "
        "using markdown where it helps readability."
    )


def build_summary_system_prompt(system_prompt: str, summary: str | None) -> str:
    """System prompt with the conversation summary embedded (one system turn only)."""
    if summary:
        return f"{system_prompt}{SUMMARY_PREFIX}{summary}"
    return system_prompt


def build_initial_prompts(
    system_prompt: str,
    state: ConversationState,
    recent_messages: Sequence[ChatMessage] | None = None,
) -> list[dict[str, str]]:
    """Opening turns for a (re)built session: system(+summary), then recent messages."""
    messages = state.recent_messages if recent_messages is None else recent_messages
    turns = [{"role": MessageRole.SYSTEM.value, "content": build_summary_system_prompt(system_prompt, state.summary)}]
    turns.extend(message.to_turn() for message in messages)
    return turns


def format_transcript(messages: Iterable[ChatMessage]) -> str:
    """Plain-text transcript handed to the summarizer."""
    lines = []
    for message in messages:
        speaker = "User" if message.role == MessageRole.USER else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    return "\n\n".join(lines)
