# bounded_rag/budget/sizer.py
"""
Adaptive Retrieval Sizer.

Decides how many chunks to request from the document store. The count is
deliberately oversampled so the trimmer can drop low-relevance chunks
without a second retrieval round-trip.
"""

from __future__ import annotations

import logging
import math

from pydantic import BaseModel, Field

from bounded_rag.budget.detector import BudgetDetector
from bounded_rag.config import (
    CHARS_PER_TOKEN,
    DEFAULT_AVG_CHUNK_CHARS,
    MAX_OPTIMAL_CHUNKS,
    MIN_OPTIMAL_CHUNKS,
    MIN_RETRIEVAL_QUOTA,
    RESPONSE_RESERVE_TOKENS,
)
from bounded_rag.models import UseCase

logger = logging.getLogger(__name__)


def _default_overheads() -> dict[UseCase, int]:
    return {
        UseCase.CHAT: 800,  # system + summary + recent messages + formatting
        UseCase.QA: 350,
        UseCase.ANALYSIS: 300,
        UseCase.DEFINITION: 250,
    }


class SizerConfig(BaseModel):
    """Static prompt-size estimates and oversampling policy."""

    overhead_estimates: dict[UseCase, int] = Field(
        default_factory=_default_overheads, description="Estimated prompt tokens per use case"
    )
    response_reserve_tokens: int = Field(default=RESPONSE_RESERVE_TOKENS)
    large_chunk_chars: int = Field(default=1000, description="Above this average size, oversample conservatively")
    small_chunk_chars: int = Field(default=500, description="Below this average size, allow the largest cap")
    conservative_multiplier: int = 3
    aggressive_multiplier: int = 4
    small_cap: int = 40
    medium_cap: int = 30
    large_cap: int = 20

    def overhead_for(self, use_case: UseCase) -> int:
        return self.overhead_estimates[use_case]


class RetrievalSizer:
    """Computes retrieval counts from the detected quota."""

    def __init__(self, detector: BudgetDetector, config: SizerConfig | None = None) -> None:
        self.detector = detector
        self.config = config or SizerConfig()

    async def optimal_chunk_count(
        self,
        use_case: UseCase,
        avg_chunk_size_chars: int | None = None,
    ) -> int:
        """Chunks that fit after overhead and response reserve, clamped to [2, 8]."""
        quota = await self.detector.detect()
        avg_chars = avg_chunk_size_chars or DEFAULT_AVG_CHUNK_CHARS
        avg_tokens = max(1, math.ceil(avg_chars / CHARS_PER_TOKEN))

        available = quota - self.config.overhead_for(use_case) - self.config.response_reserve_tokens
        optimal = available // avg_tokens
        clamped = max(MIN_OPTIMAL_CHUNKS, min(MAX_OPTIMAL_CHUNKS, optimal))

        logger.debug(
            f"Optimal chunks for {use_case.value}: {clamped} "
            f"(avg={avg_chars} chars, quota={quota}, available={available})"
        )
        return clamped

    async def adaptive_chunk_limit(
        self,
        avg_chunk_size_chars: int | None,
        use_case: UseCase,
    ) -> int:
        """Oversampled retrieval count, capped by a size-tiered ceiling."""
        avg_chars = avg_chunk_size_chars or DEFAULT_AVG_CHUNK_CHARS
        optimal = await self.optimal_chunk_count(use_case, avg_chars)

        if avg_chars > self.config.large_chunk_chars:
            multiplier = self.config.conservative_multiplier
        else:
            multiplier = self.config.aggressive_multiplier

        if avg_chars < self.config.small_chunk_chars:
            cap = self.config.small_cap
        elif avg_chars < self.config.large_chunk_chars:
            cap = self.config.medium_cap
        else:
            cap = self.config.large_cap

        limit = min(optimal * multiplier, cap)
        logger.debug(
            f"Adaptive limit: avg={avg_chars}, multiplier={multiplier}x, limit={limit} (optimal={optimal}, cap={cap})"
        )
        return limit

    async def all_optimal_counts(self) -> dict[UseCase, int]:
        return {use_case: await self.optimal_chunk_count(use_case) for use_case in UseCase}

    async def should_use_retrieval(self) -> bool:
        """Below this quota a prompt cannot hold even a couple of small chunks."""
        return await self.detector.detect() >= MIN_RETRIEVAL_QUOTA
