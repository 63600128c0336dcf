# bounded_rag/models/enums.py
"""Enums shared across bounded_rag."""

from enum import Enum


class UseCase(str, Enum):
    """Kind of request a retrieval budget is computed for."""

    CHAT = "chat"  # Interactive, multi-turn; overhead measured from the conversation
    QA = "qa"  # One-shot question answering
    ANALYSIS = "analysis"
    DEFINITION = "definition"


class MessageRole(str, Enum):
    """Roles of the turns handed to the generation engine."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class TurnOutcome(str, Enum):
    """How a chat turn ended."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"  # Superseded by a newer request; never retried
    TIMED_OUT = "timed_out"
    REFUSED = "refused"  # Budget floor unmet and caller chose not to proceed
    FAILED = "failed"
