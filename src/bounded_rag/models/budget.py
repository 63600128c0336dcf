# bounded_rag/models/budget.py
"""Token budget, measurement and trimming results."""

from __future__ import annotations

from pydantic import BaseModel, Field

from bounded_rag.models.chunk import ContentChunk


class TokenBudget(BaseModel):
    """The engine's input quota plus the margin applied against estimation error."""

    quota_tokens: int = Field(..., gt=0, description="Maximum input tokens a session accepts")
    safety_margin_ratio: float = Field(default=1.0, gt=0, le=1.0)
    detected: bool = Field(default=True, description="False when the fallback constant is in use")

    @property
    def usable_tokens(self) -> int:
        return int(self.quota_tokens * self.safety_margin_ratio)


class TokenMeasurement(BaseModel):
    """Token count for a piece of text."""

    tokens: int = Field(..., ge=0)
    degraded: bool = Field(default=False, description="True when the chars/4 heuristic was used")


class PromptFit(BaseModel):
    """Whether a prompt fits the space left in a live session."""

    fits: bool
    actual_usage: int
    quota: int
    available: int
    degraded: bool = False


class BudgetStatus(BaseModel):
    """Outcome of trimming a chunk list against the budget."""

    available_tokens: int = Field(..., description="Quota minus prompt overhead and response reserve")
    conservative_tokens: int = Field(..., description="available_tokens after the safety margin")
    used_tokens: int = 0
    overhead_tokens: int = 0
    overhead_measured: bool = False
    min_floor_met: bool = False
    tight: bool = False
    history_messages: int | None = Field(default=None, description="Recent-message window used, if any")

    @property
    def needs_summarization(self) -> bool:
        """Signal to compact history before the next turn."""
        return self.tight or not self.min_floor_met


class TrimResult(BaseModel):
    selected_chunks: list[ContentChunk] = Field(default_factory=list)
    status: BudgetStatus


class SessionUsage(BaseModel):
    """Observed usage of a live generation session."""

    input_usage: int = 0
    input_quota: int = 0

    @property
    def usage_ratio(self) -> float:
        if self.input_quota <= 0:
            return 0.0
        return self.input_usage / self.input_quota

    @property
    def usage_percentage(self) -> float:
        return self.usage_ratio * 100
