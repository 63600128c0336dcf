# bounded_rag/budget/trimmer.py
"""
Budget Trimmer.

Selects the longest relevance-ordered prefix of retrieved chunks that fits
the budget left after prompt overhead and the response reserve.

Budget arithmetic::

    available    = quota - overhead - response_reserve
    conservative = available * safety_margin       (0.75 measured / 0.65 estimated)

Chunks are accepted toward a fixed minimum evidence floor with up to 20%
overflow of the conservative budget; past the floor the budget is strict.
The floor also counts as met when every retrieved chunk was selected. Evidence
and history compete for the same quota, so the progressive fallback shrinks
the recent-message window (6 -> 3 -> 1 -> 0) before giving up on the floor.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence

from pydantic import BaseModel, Field

from bounded_rag.budget.detector import BudgetDetector, estimate_tokens
from bounded_rag.budget.sizer import SizerConfig
from bounded_rag.config import (
    CHUNK_LABEL_OVERHEAD_TOKENS,
    CHUNK_SEPARATOR_OVERHEAD_TOKENS,
    ESTIMATED_OVERHEAD_SAFETY_MARGIN,
    FLOOR_OVERFLOW_RATIO,
    FORMATTING_OVERHEAD_TOKENS,
    KNOWN_OVERHEAD_SAFETY_MARGIN,
    MIN_CONTEXT_TOKENS,
    TIGHT_BUDGET_RATIO,
)
from bounded_rag.formatting import build_summary_system_prompt
from bounded_rag.models import BudgetStatus, ChatMessage, ContentChunk, ConversationState, TrimResult, UseCase

logger = logging.getLogger(__name__)

# Recent-message windows tried in order by the progressive fallback
FALLBACK_HISTORY_WINDOWS: tuple[int, ...] = (6, 3, 1, 0)


class TrimmerConfig(BaseModel):
    """Tunable trimming policy. The two margins are empirical, keep them named."""

    known_overhead_margin: float = Field(
        default=KNOWN_OVERHEAD_SAFETY_MARGIN, gt=0, le=1, description="Margin when overhead is measured"
    )
    estimated_overhead_margin: float = Field(
        default=ESTIMATED_OVERHEAD_SAFETY_MARGIN, gt=0, le=1, description="Margin for static overhead estimates"
    )
    min_context_tokens: int = Field(default=MIN_CONTEXT_TOKENS, ge=0, description="Evidence floor")
    floor_overflow_ratio: float = Field(default=FLOOR_OVERFLOW_RATIO, ge=1)
    tight_ratio: float = Field(default=TIGHT_BUDGET_RATIO, gt=0, le=1)
    label_overhead_tokens: int = CHUNK_LABEL_OVERHEAD_TOKENS
    separator_overhead_tokens: int = CHUNK_SEPARATOR_OVERHEAD_TOKENS
    formatting_overhead_tokens: int = FORMATTING_OVERHEAD_TOKENS
    history_windows: tuple[int, ...] = FALLBACK_HISTORY_WINDOWS


class BudgetTrimmer:
    """Cuts oversampled retrieval results down to what the budget admits."""

    def __init__(
        self,
        detector: BudgetDetector,
        config: TrimmerConfig | None = None,
        sizer_config: SizerConfig | None = None,
    ) -> None:
        self.detector = detector
        self.config = config or TrimmerConfig()
        self.sizer_config = sizer_config or SizerConfig()

    def chunk_cost(self, chunk: ContentChunk, position: int) -> int:
        """Tokens a chunk costs including its label and, after the first, a separator."""
        separator = self.config.separator_overhead_tokens if position > 0 else 0
        return chunk.token_count + self.config.label_overhead_tokens + separator

    def measure_overhead(
        self,
        system_prompt: str,
        conversation_state: ConversationState,
        recent_messages: Sequence[ChatMessage],
        question: str,
    ) -> int:
        """Actual prompt overhead of a conversation turn."""
        system = build_summary_system_prompt(system_prompt, conversation_state.summary)
        history = "\n".join(message.content for message in recent_messages)
        return (
            estimate_tokens(system)
            + estimate_tokens(history)
            + estimate_tokens(question)
            + self.config.formatting_overhead_tokens
        )

    async def trim(
        self,
        ordered_chunks: Sequence[ContentChunk],
        use_case: UseCase,
        conversation_state: ConversationState | None = None,
        *,
        system_prompt: str = "",
        question: str = "",
        recent_messages: Sequence[ChatMessage] | None = None,
    ) -> TrimResult:
        """
        Select the maximal prefix of ``ordered_chunks`` that fits.

        Args:
            ordered_chunks: Chunks sorted by relevance, most relevant first
            use_case: Selects the static overhead estimate when no conversation is given
            conversation_state: When given, overhead is measured from it
            system_prompt: System prompt text included in the measured overhead
            question: The user question included in the measured overhead
            recent_messages: History window to measure (defaults to the state's window)

        Returns:
            TrimResult with the selected prefix and the budget status
        """
        quota = await self.detector.detect()

        history_messages: int | None = None
        if conversation_state is not None:
            window = conversation_state.recent_messages if recent_messages is None else recent_messages
            history_messages = len(window)
            overhead = self.measure_overhead(system_prompt, conversation_state, window, question)
            margin = self.config.known_overhead_margin
            measured = True
        else:
            overhead = self.sizer_config.overhead_for(use_case)
            margin = self.config.estimated_overhead_margin
            measured = False

        available = quota - overhead - self.sizer_config.response_reserve_tokens
        conservative = math.floor(max(available, 0) * margin)
        floor = self.config.min_context_tokens
        overflow_limit = conservative * self.config.floor_overflow_ratio

        selected: list[ContentChunk] = []
        used = 0
        for chunk in ordered_chunks:
            cost = self.chunk_cost(chunk, len(selected))
            if used < floor:
                if used + cost >= overflow_limit:
                    logger.debug(f"Floor chunk does not fit: need {used + cost}, limit {overflow_limit:.0f}")
                    break
            elif used + cost > conservative:
                break
            selected.append(chunk)
            used += cost

        # All retrieved evidence fits; a smaller history window adds nothing
        exhausted = len(selected) == len(ordered_chunks)
        min_floor_met = bool(selected) and (used >= floor or exhausted)
        tight = conservative > 0 and used >= conservative * self.config.tight_ratio

        status = BudgetStatus(
            available_tokens=available,
            conservative_tokens=conservative,
            used_tokens=used,
            overhead_tokens=overhead,
            overhead_measured=measured,
            min_floor_met=min_floor_met,
            tight=tight,
            history_messages=history_messages,
        )

        logger.debug(
            f"Trimmed {len(ordered_chunks)} -> {len(selected)} chunks "
            f"({used}/{conservative} conservative, {available} available, overhead={overhead}, "
            f"floor_met={min_floor_met}, tight={tight})"
        )
        if not min_floor_met:
            logger.warning(f"Evidence floor unmet: {used} tokens selected, floor {floor}")

        return TrimResult(selected_chunks=selected, status=status)

    async def trim_with_progressive_fallback(
        self,
        ordered_chunks: Sequence[ContentChunk],
        use_case: UseCase,
        conversation_state: ConversationState,
        history: Sequence[ChatMessage] | None = None,
        *,
        system_prompt: str = "",
        question: str = "",
    ) -> TrimResult:
        """
        Trim, shrinking the history window until the evidence floor is met.

        The summary is kept at every step. Returns the first configuration
        meeting the floor, or the last (0-message) attempt as best effort.
        """
        source = list(history) if history is not None else list(conversation_state.recent_messages)

        result: TrimResult | None = None
        for window in self.config.history_windows:
            recent = source[-window:] if window > 0 else []
            result = await self.trim(
                ordered_chunks,
                use_case,
                conversation_state,
                system_prompt=system_prompt,
                question=question,
                recent_messages=recent,
            )
            if result.status.min_floor_met:
                if window != self.config.history_windows[0]:
                    logger.info(f"Evidence floor met after shrinking history to {window} message(s)")
                return result

        assert result is not None
        logger.warning("Evidence floor unmet even without recent history, returning best effort")
        return result
