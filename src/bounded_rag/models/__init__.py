# bounded_rag/models/__init__.py
"""
Data model for bounded_rag.

All public names are re-exported here so callers can write
``from bounded_rag.models import ContentChunk``.
"""

from bounded_rag.models.budget import (  # noqa: F401
    BudgetStatus,
    PromptFit,
    SessionUsage,
    TokenBudget,
    TokenMeasurement,
    TrimResult,
)
from bounded_rag.models.chunk import ContentChunk, SourceInfo  # noqa: F401
from bounded_rag.models.conversation import ChatMessage, ConversationState  # noqa: F401
from bounded_rag.models.enums import MessageRole, TurnOutcome, UseCase  # noqa: F401
from bounded_rag.models.events import (  # noqa: F401
    ChatRequest,
    DecodedAnswer,
    ImageChatRequest,
    QuestionRequest,
    StreamChunkEvent,
    StreamEndEvent,
    TransportEvent,
    TransportEventAdapter,
    TurnResult,
)

__all__ = [
    # Budget
    "BudgetStatus",
    "PromptFit",
    "SessionUsage",
    "TokenBudget",
    "TokenMeasurement",
    "TrimResult",
    # Content
    "ContentChunk",
    "SourceInfo",
    # Conversation
    "ChatMessage",
    "ConversationState",
    # Enums
    "MessageRole",
    "TurnOutcome",
    "UseCase",
    # Boundary
    "ChatRequest",
    "DecodedAnswer",
    "ImageChatRequest",
    "QuestionRequest",
    "StreamChunkEvent",
    "StreamEndEvent",
    "TransportEvent",
    "TransportEventAdapter",
    "TurnResult",
]
