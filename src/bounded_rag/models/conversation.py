# bounded_rag/models/conversation.py
"""Chat messages and the rolling summary + recent-window state."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bounded_rag.config import MAX_RECENT_MESSAGES
from bounded_rag.models.chunk import SourceInfo
from bounded_rag.models.enums import MessageRole


class ChatMessage(BaseModel):
    """One turn of the conversation. Append-only."""

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    sources: list[str] | None = None
    source_info: list[SourceInfo] | None = None

    def to_turn(self) -> dict[str, str]:
        """Role-tagged turn in the shape the engine expects."""
        return {"role": self.role.value, "content": self.content}


class ConversationState(BaseModel):
    """
    Compacted conversation: a summary of absorbed turns plus a bounded
    window of recent messages.

    Only ConversationStateManager produces new states; persistence is
    delegated to an external store via ``to_storage``.
    """

    summary: str | None = None
    recent_messages: list[ChatMessage] = Field(default_factory=list)
    last_summarized_index: int = Field(default=-1, ge=-1, description="Last history index absorbed into summary")
    summary_count: int = Field(default=0, ge=0, description="Summarization rounds since last merge")

    @field_validator("recent_messages")
    @classmethod
    def _bounded_window(cls, value: list[ChatMessage]) -> list[ChatMessage]:
        if len(value) > MAX_RECENT_MESSAGES:
            raise ValueError(f"recent_messages holds at most {MAX_RECENT_MESSAGES} messages, got {len(value)}")
        return value

    @classmethod
    def initial(cls) -> ConversationState:
        return cls()

    @property
    def has_summary(self) -> bool:
        return bool(self.summary)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_storage(cls, data: dict[str, Any] | None) -> ConversationState:
        if not data:
            return cls.initial()
        return cls.model_validate(data)
