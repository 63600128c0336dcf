# bounded_rag/models/events.py
"""
Tagged payloads crossing the library boundary.

Transport events are a discriminated union on ``type`` so a consumer can
validate anything it receives with ``TransportEventAdapter``.
"""

from __future__ import annotations

import hashlib
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from bounded_rag.models.budget import BudgetStatus
from bounded_rag.models.chunk import SourceInfo
from bounded_rag.models.conversation import ConversationState
from bounded_rag.models.enums import TurnOutcome


class StreamChunkEvent(BaseModel):
    """Incremental display text."""

    type: Literal["chunk"] = "chunk"
    context_id: str
    text: str


class StreamEndEvent(BaseModel):
    """Final answer with citations and locator metadata."""

    type: Literal["end"] = "end"
    context_id: str
    full_message: str
    sources: list[str] = Field(default_factory=list)
    source_info: list[SourceInfo] = Field(default_factory=list)
    outcome: TurnOutcome = TurnOutcome.COMPLETED


TransportEvent = Annotated[StreamChunkEvent | StreamEndEvent, Field(discriminator="type")]
TransportEventAdapter: TypeAdapter[StreamChunkEvent | StreamEndEvent] = TypeAdapter(TransportEvent)


class ChatRequest(BaseModel):
    """A chat turn as received from the caller."""

    type: Literal["chat"] = "chat"
    doc_id: str = Field(..., min_length=1)
    doc_title: str = ""
    question: str = Field(..., min_length=1)
    proceed_best_effort: bool = Field(default=True, description="Answer even when the evidence floor is unmet")

    @property
    def context_id(self) -> str:
        return f"chat-{self.doc_id}"


class ImageChatRequest(ChatRequest):
    """A chat turn about one image of a document; each image keeps its own conversation."""

    type: Literal["image_chat"] = "image_chat"
    image_url: str = Field(..., min_length=1)

    @property
    def context_id(self) -> str:
        digest = hashlib.sha1(self.image_url.encode("utf-8")).hexdigest()[:12]
        return f"image-chat-{self.doc_id}-img_{digest}"


class QuestionRequest(BaseModel):
    """A one-shot question; no conversation is kept."""

    type: Literal["qa"] = "qa"
    doc_id: str = Field(..., min_length=1)
    question: str = Field(..., min_length=1)

    @property
    def context_id(self) -> str:
        return f"qa-{self.doc_id}"


class DecodedAnswer(BaseModel):
    """End-of-stream result of the structured-output decoder."""

    answer: str = ""
    sources: list[str] = Field(default_factory=list)
    parsed: bool = Field(default=False, description="False when the final object failed to parse")


class TurnResult(BaseModel):
    outcome: TurnOutcome
    answer: str = ""
    sources: list[str] = Field(default_factory=list)
    source_info: list[SourceInfo] = Field(default_factory=list)
    chunks_used: int = 0
    error: str | None = None
    conversation_state: ConversationState | None = Field(default=None, description="State after this turn")
    budget_status: BudgetStatus | None = Field(default=None, description="Evidence budget, when retrieval ran")
