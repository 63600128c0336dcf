# bounded_rag/engine.py
"""
Protocols for the collaborators bounded_rag drives but does not own.

- LanguageModelFactory / GenerationSession: the text-generation engine
- SummarizerFactory / Summarizer: the summarization engine
- ChunkStore: document storage and semantic retrieval
- Transport: delivery of display events to the caller
- ConversationStore: persistence of history and ConversationState

Any object with matching methods satisfies a protocol; nothing needs to
inherit from these classes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from bounded_rag.config import DEFAULT_TEMPERATURE, DEFAULT_TOP_K
from bounded_rag.models import ChatMessage, ContentChunk, ConversationState, StreamChunkEvent, StreamEndEvent

# =============================================================================
# Options
# =============================================================================


class SessionOptions(BaseModel):
    """Options for creating a generation session."""

    system_prompt: str | None = Field(default=None, description="Converted to the first initial prompt")
    initial_prompts: list[dict[str, str]] = Field(default_factory=list, description="Role-tagged opening turns")
    temperature: float = DEFAULT_TEMPERATURE
    top_k: int = DEFAULT_TOP_K
    expected_input_types: list[str] = Field(default_factory=lambda: ["text"], description="Accepted modalities")
    expected_input_languages: list[str] = Field(default_factory=lambda: ["en", "es", "ja"])
    output_language: str = "en"

    def resolved_initial_prompts(self) -> list[dict[str, str]]:
        """Initial prompts with ``system_prompt`` folded in as the leading system turn."""
        if self.system_prompt and not self.initial_prompts:
            return [{"role": "system", "content": self.system_prompt}]
        return list(self.initial_prompts)


class SummarizerOptions(BaseModel):
    """Options for creating a summarizer."""

    type: str = "tldr"
    format: str = "plain-text"
    length: str = "medium"
    shared_context: str | None = None


# =============================================================================
# Generation engine
# =============================================================================


@runtime_checkable
class GenerationSession(Protocol):
    """A stateful session with a fixed input quota."""

    @property
    def input_usage(self) -> int: ...

    @property
    def input_quota(self) -> int: ...

    async def prompt(self, text: str, *, response_constraint: dict[str, Any] | None = None) -> str: ...

    def prompt_streaming(
        self, text: str, *, response_constraint: dict[str, Any] | None = None
    ) -> AsyncIterator[str]:
        """Yield text fragments as the engine produces them."""
        ...

    async def measure_input_usage(self, text: str) -> int: ...

    async def append(self, items: list[dict[str, Any]]) -> None:
        """Append multimodal turns without prompting."""
        ...

    async def destroy(self) -> None: ...


@runtime_checkable
class LanguageModelFactory(Protocol):
    async def create(self, options: SessionOptions) -> GenerationSession:
        """Create a session. Raises when the engine is unavailable."""
        ...


# =============================================================================
# Summarization engine
# =============================================================================


@runtime_checkable
class Summarizer(Protocol):
    async def summarize(self, text: str) -> str: ...

    async def destroy(self) -> None: ...


@runtime_checkable
class SummarizerFactory(Protocol):
    async def create(self, options: SummarizerOptions) -> Summarizer | None: ...


# =============================================================================
# Storage and transport
# =============================================================================


@runtime_checkable
class ChunkStore(Protocol):
    async def get_relevant_chunks(self, doc_id: str, query: str, limit: int) -> list[ContentChunk]:
        """Relevance-ordered chunks, most relevant first."""
        ...

    async def average_chunk_size(self, doc_id: str) -> int | None:
        """Average chunk length in characters, if known."""
        ...


@runtime_checkable
class Transport(Protocol):
    async def send(self, event: StreamChunkEvent | StreamEndEvent) -> None: ...


@runtime_checkable
class ConversationStore(Protocol):
    async def save_state(self, doc_id: str, state: ConversationState) -> None: ...

    async def save_history(self, doc_id: str, history: list[ChatMessage], state: ConversationState) -> None: ...
