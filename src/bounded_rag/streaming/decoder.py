# bounded_rag/streaming/decoder.py
"""
Streaming Structured-Output Decoder.

Reveals the ``answer`` field of a ``{"answer": ..., "sources": [...]}``
object while the engine is still generating it. Only this shape is
supported; the object is parsed in full once the stream ends.

    decoder = StreamingAnswerDecoder()
    async for fragment in session.prompt_streaming(prompt):
        delta = decoder.feed(fragment)
        if delta:
            await transport.send(StreamChunkEvent(context_id=..., text=delta))
    result = decoder.finish()
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from bounded_rag.exceptions import SchemaOrderError
from bounded_rag.models import DecodedAnswer
from bounded_rag.streaming.latex import decode_json_escapes, extract_latex, rehydrate_latex

logger = logging.getLogger(__name__)

# Literal text that ends the answer string and opens the sources field
CLOSING_PATTERN = '", "sources'
LOOKAHEAD_SIZE = len(CLOSING_PATTERN)

_ANSWER_START = re.compile(r'"answer"\s*:\s*"')

# Escape cut off at the end of the visible text: a lone backslash, a short
# \uXXXX, or a high surrogate still waiting for its low half
_PARTIAL_ESCAPE = re.compile(
    r"(?<!\\)(?:\\\\)*"
    r"(\\(?:u[dD][89abAB][0-9a-fA-F]{2}(?:\\(?:u[0-9a-fA-F]{0,3})?)?|u[0-9a-fA-F]{0,3})?)$"
)

CHAT_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "answer": {
            "type": "string",
            "description": "Markdown answer; all math in LaTeX",
        },
        "sources": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Section citations supporting the answer",
        },
    },
    "required": ["answer", "sources"],
}


def assert_answer_precedes_sources(schema: dict[str, Any]) -> None:
    """
    Raise SchemaOrderError unless ``answer`` is declared before ``sources``.

    Early display relies on the engine emitting the answer first; with the
    fields swapped the stream would still parse at the end but show nothing
    until then.
    """
    properties = list(schema.get("properties", {}))
    if "answer" not in properties or "sources" not in properties:
        raise SchemaOrderError(f"Response schema must declare 'answer' and 'sources', got {properties}")
    if properties.index("answer") > properties.index("sources"):
        raise SchemaOrderError("Response schema declares 'sources' before 'answer'; early streaming would be disabled")


class DecoderState(BaseModel):
    """Transient per-response state."""

    accumulated_raw: str = ""
    last_emitted_length: int = 0
    latex_placeholders: list[str] = Field(default_factory=list)
    display_suppressed: bool = False
    answer: str = Field(default="", description="Display text emitted so far")


def _withhold_partial_escape(text: str) -> str:
    """Drop an unfinished trailing escape; it may complete in the next fragment."""
    match = _PARTIAL_ESCAPE.search(text)
    if match is None:
        return text
    return text[: match.start(1)]


class StreamingAnswerDecoder:
    """One decoder per response. Never shares state across streams."""

    def __init__(self) -> None:
        self.state = DecoderState()

    @property
    def streamed_answer(self) -> str:
        return self.state.answer

    def _answer_body(self) -> str | None:
        match = _ANSWER_START.search(self.state.accumulated_raw)
        if match is None:
            return None
        return self.state.accumulated_raw[match.end():]

    def _protect(self, raw: str) -> str:
        content, extracted = extract_latex(raw)
        self.state.latex_placeholders = extracted
        return rehydrate_latex(decode_json_escapes(content), extracted)

    def _emit(self, display: str) -> str:
        delta = display[self.state.last_emitted_length:]
        if delta:
            self.state.last_emitted_length = len(display)
            self.state.answer = display
        return delta

    def feed(self, fragment: str) -> str:
        """Consume a fragment and return the newly displayable text, possibly empty."""
        self.state.accumulated_raw += fragment
        if self.state.display_suppressed:
            return ""

        current = self._answer_body()
        if current is None:
            return ""

        marker = current.find(CLOSING_PATTERN)
        if marker != -1:
            display = self._protect(current[:marker])
            self.state.display_suppressed = True
            self.state.answer = display
            logger.debug(f"Answer field complete ({len(display)} chars), suppressing further display")
            return self._emit(display)

        if len(current) <= LOOKAHEAD_SIZE:
            return ""

        visible = _withhold_partial_escape(current[:-LOOKAHEAD_SIZE])
        return self._emit(self._protect(visible))

    def finish(self) -> DecodedAnswer:
        """Parse the complete object. Falls back to the streamed text on a malformed tail."""
        raw = self.state.accumulated_raw
        try:
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
        except ValueError as e:
            logger.error(f"Failed to parse final response ({e}), keeping streamed answer")
            return DecodedAnswer(answer=self.state.answer.strip(), sources=[], parsed=False)

        sources = [str(source) for source in parsed.get("sources") or []]
        if self.state.display_suppressed:
            answer = self.state.answer
        else:
            # Marker never seen: the parsed field is authoritative
            answer = str(parsed.get("answer") or "")
        logger.debug(f"Decoded answer ({len(answer)} chars) with {len(sources)} source(s)")
        return DecodedAnswer(answer=answer.strip(), sources=sources, parsed=True)
