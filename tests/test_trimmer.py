# tests/test_trimmer.py
"""
Tests for BudgetTrimmer.

Covers:
- prefix selection and the conservative budget
- the minimum-evidence floor and its 20% overflow allowance
- measured vs estimated overhead margins
- progressive history fallback (6 -> 3 -> 1 -> 0)
"""

import math

import pytest

from bounded_rag.budget import BudgetDetector, BudgetTrimmer, TrimmerConfig
from bounded_rag.models import ConversationState, UseCase
from fakes import FakeLanguageModelFactory, make_chunk, make_history


def _selected_cost(trimmer: BudgetTrimmer, chunks) -> int:
    return sum(trimmer.chunk_cost(chunk, position) for position, chunk in enumerate(chunks))


# ===========================================================================
# Plain trimming
# ===========================================================================


class TestTrim:
    async def test_selection_is_a_prefix(self, trimmer):
        chunks = [make_chunk(i) for i in range(30)]
        result = await trimmer.trim(chunks, UseCase.QA)
        selected = result.selected_chunks
        assert selected == chunks[: len(selected)]

    async def test_cost_stays_within_conservative_budget(self, trimmer):
        chunks = [make_chunk(i) for i in range(30)]
        result = await trimmer.trim(chunks, UseCase.QA)

        # (4096 - 350 - 500) * 0.65
        assert result.status.conservative_tokens == math.floor(3246 * 0.65)
        assert result.status.used_tokens == _selected_cost(trimmer, result.selected_chunks)
        assert result.status.used_tokens <= result.status.conservative_tokens
        assert len(result.selected_chunks) == 18

    async def test_tight_budget_signals_summarization(self, trimmer):
        result = await trimmer.trim([make_chunk(i) for i in range(30)], UseCase.QA)
        assert result.status.tight
        assert result.status.needs_summarization

    async def test_roomy_budget_is_not_tight(self, trimmer):
        result = await trimmer.trim([make_chunk(i) for i in range(10)], UseCase.QA)
        assert len(result.selected_chunks) == 10
        assert result.status.min_floor_met
        assert not result.status.tight
        assert not result.status.needs_summarization

    async def test_floor_allows_twenty_percent_overflow(self, trimmer):
        big = make_chunk(0, token_count=2300)
        result = await trimmer.trim([big, make_chunk(1)], UseCase.QA)

        assert result.selected_chunks == [big]
        assert result.status.used_tokens > result.status.conservative_tokens
        assert result.status.used_tokens < result.status.conservative_tokens * 1.2
        assert result.status.min_floor_met

    async def test_chunk_beyond_overflow_is_rejected(self, trimmer):
        result = await trimmer.trim([make_chunk(0, token_count=2600)], UseCase.QA)
        assert result.selected_chunks == []
        assert not result.status.min_floor_met
        assert result.status.needs_summarization

    async def test_floor_is_not_scaled_down_to_small_budgets(self):
        trimmer = BudgetTrimmer(BudgetDetector(FakeLanguageModelFactory(input_quota=2600)))
        result = await trimmer.trim([make_chunk(i) for i in range(20)], UseCase.QA)

        # (2600 - 350 - 500) * 0.65 = 1137
        assert result.status.conservative_tokens < trimmer.config.min_context_tokens * 1.2
        assert result.status.used_tokens >= trimmer.config.min_context_tokens
        assert result.status.min_floor_met

    async def test_floor_unmet_below_min_context_tokens(self):
        trimmer = BudgetTrimmer(BudgetDetector(FakeLanguageModelFactory(input_quota=2000)))
        result = await trimmer.trim([make_chunk(i) for i in range(20)], UseCase.QA)

        assert result.selected_chunks
        assert result.status.used_tokens < trimmer.config.min_context_tokens
        assert not result.status.min_floor_met

    async def test_all_retrieved_chunks_count_as_floor_met(self):
        trimmer = BudgetTrimmer(BudgetDetector(FakeLanguageModelFactory(input_quota=2000)))
        result = await trimmer.trim([make_chunk(i) for i in range(3)], UseCase.QA)

        assert len(result.selected_chunks) == 3
        assert result.status.used_tokens < trimmer.config.min_context_tokens
        assert result.status.min_floor_met

    async def test_empty_input(self, trimmer):
        result = await trimmer.trim([], UseCase.CHAT)
        assert result.selected_chunks == []
        assert not result.status.min_floor_met

    async def test_static_overhead_uses_estimated_margin(self, trimmer):
        result = await trimmer.trim([make_chunk(0)], UseCase.DEFINITION)
        assert result.status.overhead_tokens == 250
        assert not result.status.overhead_measured
        assert result.status.conservative_tokens == math.floor((4096 - 250 - 500) * 0.65)

    async def test_margins_are_tunable(self, detector):
        trimmer = BudgetTrimmer(detector, TrimmerConfig(estimated_overhead_margin=0.5))
        result = await trimmer.trim([make_chunk(0)], UseCase.QA)
        assert result.status.conservative_tokens == math.floor(3246 * 0.5)

    async def test_negative_budget_selects_nothing(self):
        trimmer = BudgetTrimmer(BudgetDetector(FakeLanguageModelFactory(input_quota=1024)))
        result = await trimmer.trim([make_chunk(i) for i in range(4)], UseCase.CHAT)
        assert result.status.available_tokens < 0
        assert result.status.conservative_tokens == 0
        assert result.selected_chunks == []


class TestMeasuredOverhead:
    async def test_conversation_overhead_is_measured(self, trimmer):
        state = ConversationState(summary="Earlier we discussed the methods.", recent_messages=make_history(4))
        result = await trimmer.trim(
            [make_chunk(i) for i in range(3)],
            UseCase.CHAT,
            state,
            system_prompt="You answer questions about the paper.",
            question="What is the sample size?",
        )

        expected = trimmer.measure_overhead(
            "You answer questions about the paper.", state, state.recent_messages, "What is the sample size?"
        )
        assert result.status.overhead_measured
        assert result.status.overhead_tokens == expected
        assert result.status.history_messages == 4
        assert result.status.conservative_tokens == math.floor((4096 - expected - 500) * 0.75)

    def test_summary_counts_toward_overhead(self, trimmer):
        without = trimmer.measure_overhead("system", ConversationState(), [], "q")
        with_summary = trimmer.measure_overhead("system", ConversationState(summary="x" * 400), [], "q")
        assert with_summary > without


# ===========================================================================
# Progressive fallback
# ===========================================================================


class TestProgressiveFallback:
    @pytest.fixture
    def small_trimmer(self):
        return BudgetTrimmer(BudgetDetector(FakeLanguageModelFactory(input_quota=2600)))

    def _trimmer(self, quota: int) -> BudgetTrimmer:
        return BudgetTrimmer(BudgetDetector(FakeLanguageModelFactory(input_quota=quota)))

    async def test_shrinks_history_until_floor_met(self):
        history = make_history(6, content_chars=2000)
        chunks = [make_chunk(i) for i in range(20)]

        result = await self._trimmer(3600).trim_with_progressive_fallback(
            chunks, UseCase.CHAT, ConversationState(), history, question="What?"
        )

        assert result.status.min_floor_met
        assert result.status.history_messages == 3
        assert result.status.used_tokens >= 1000
        assert result.selected_chunks == chunks[: len(result.selected_chunks)]

    async def test_window_below_thousand_tokens_keeps_shrinking(self):
        history = make_history(6, content_chars=2000)
        chunks = [make_chunk(i) for i in range(20)]
        trimmer = self._trimmer(3200)

        three = await trimmer.trim(
            chunks, UseCase.CHAT, ConversationState(), question="What?", recent_messages=history[-3:]
        )
        result = await trimmer.trim_with_progressive_fallback(
            chunks, UseCase.CHAT, ConversationState(), history, question="What?"
        )

        assert three.status.conservative_tokens < 1000
        assert not three.status.min_floor_met
        assert result.status.min_floor_met
        assert result.status.history_messages == 1

    async def test_exhausted_evidence_stops_shrinking(self):
        history = make_history(6, content_chars=2000)
        chunks = [make_chunk(i) for i in range(5)]

        result = await self._trimmer(3200).trim_with_progressive_fallback(
            chunks, UseCase.CHAT, ConversationState(), history, question="What?"
        )

        assert result.status.history_messages == 3
        assert result.selected_chunks == chunks
        assert result.status.min_floor_met

    async def test_full_window_kept_when_it_fits(self, trimmer):
        history = make_history(6)
        result = await trimmer.trim_with_progressive_fallback(
            [make_chunk(i) for i in range(4)], UseCase.CHAT, ConversationState(), history
        )
        assert result.status.history_messages == 6

    async def test_returns_last_attempt_when_floor_never_met(self, small_trimmer):
        history = make_history(6, content_chars=2000)
        huge = [make_chunk(0, token_count=5000)]

        result = await small_trimmer.trim_with_progressive_fallback(
            huge, UseCase.CHAT, ConversationState(summary="kept"), history
        )

        assert not result.status.min_floor_met
        assert result.status.history_messages == 0
        assert result.selected_chunks == []

    async def test_defaults_to_state_window(self, trimmer):
        state = ConversationState(recent_messages=make_history(2))
        result = await trimmer.trim_with_progressive_fallback([make_chunk(0)], UseCase.CHAT, state)
        assert result.status.history_messages == 2
