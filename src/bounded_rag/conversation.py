# bounded_rag/conversation.py
"""
Conversation State Manager.

Keeps a conversation inside a fixed input quota by folding older turns
into a rolling summary while the last six messages stay verbatim.

Lifecycle per conversation (cyclic across turns)::

    no-history -> live-session -> pending-summarization -> summarized

Two triggers exist:

- pre-summarization, before a session is built from stored history, when
  the estimated size of (recent window + summary) reaches 85% of quota;
- post-turn, when the live session reports 80% of its quota used; the
  session is then rebased onto a fresh one via SessionLifecycleManager.clone.

Summaries are bounded: once two rounds have been appended, the next round
re-summarizes old + new as one pass and the round counter restarts at 1.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pydantic import BaseModel, Field

from bounded_rag.budget.detector import BudgetDetector, estimate_tokens
from bounded_rag.config import (
    MAX_RECENT_MESSAGES,
    POST_TURN_THRESHOLD,
    PRE_SUMMARIZATION_THRESHOLD,
    RESUMMARIZE_AFTER,
    SESSION_REBASE_THRESHOLD,
)
from bounded_rag.engine import ConversationStore, SummarizerFactory, SummarizerOptions
from bounded_rag.formatting import format_transcript
from bounded_rag.models import ChatMessage, ConversationState, MessageRole, SessionUsage
from bounded_rag.session_manager import SessionLifecycleManager

logger = logging.getLogger(__name__)


class ConversationConfig(BaseModel):
    """Summarization triggers and window size."""

    max_recent_messages: int = Field(default=MAX_RECENT_MESSAGES, ge=0, le=MAX_RECENT_MESSAGES)
    pre_summarization_threshold: float = Field(
        default=PRE_SUMMARIZATION_THRESHOLD, gt=0, le=1, description="Fraction of quota (estimated)"
    )
    post_turn_threshold: float = Field(
        default=POST_TURN_THRESHOLD, gt=0, le=1, description="Fraction of quota (session-reported)"
    )
    resummarize_after: int = Field(default=RESUMMARIZE_AFTER, ge=1, description="Rounds before a merge pass")
    shared_context_template: str = "Research paper discussion: {title}"


class ConversationStateManager:
    """
    Produces new ConversationState values; never mutates one in place.

    Args:
        detector: Source of the input quota for the pre-summarization trigger
        summarizer_factory: Creates a summarizer per summarization pass
        session_manager: Needed for the post-turn trigger and rebasing
        store: Optional persistence for updated states
    """

    def __init__(
        self,
        detector: BudgetDetector,
        summarizer_factory: SummarizerFactory | None,
        session_manager: SessionLifecycleManager | None = None,
        store: ConversationStore | None = None,
        config: ConversationConfig | None = None,
    ) -> None:
        self.detector = detector
        self.summarizer_factory = summarizer_factory
        self.session_manager = session_manager
        self.store = store
        self.config = config or ConversationConfig()

    # ------------------------------------------------------------------ #
    # Summarization
    # ------------------------------------------------------------------ #

    async def summarize_conversation(
        self, messages: Sequence[ChatMessage], doc_title: str | None = None
    ) -> str | None:
        """Summarize messages with a throwaway summarizer. Any failure yields None."""
        if not messages:
            return None
        if self.summarizer_factory is None:
            logger.warning("No summarizer configured, skipping summarization")
            return None

        options = SummarizerOptions(
            shared_context=self.config.shared_context_template.format(title=doc_title) if doc_title else None
        )
        try:
            summarizer = await self.summarizer_factory.create(options)
        except Exception as e:
            logger.error(f"Failed to create summarizer: {e}")
            return None
        if summarizer is None:
            logger.warning("Summarizer unavailable")
            return None

        try:
            summary = await summarizer.summarize(format_transcript(messages))
            logger.debug(f"Summarized {len(messages)} messages into {len(summary or '')} chars")
            return summary or None
        except Exception as e:
            logger.error(f"Error summarizing conversation: {e}")
            return None
        finally:
            try:
                await summarizer.destroy()
            except Exception as e:
                logger.debug(f"Error destroying summarizer: {e}")

    async def _merge_summary(
        self, state: ConversationState, new_summary: str, doc_title: str | None
    ) -> tuple[str, int]:
        """Combine a new summary with the existing one. Returns (summary, summary_count)."""
        if state.summary and state.summary_count >= self.config.resummarize_after:
            logger.debug(f"Re-summarizing combined summaries (count {state.summary_count})")
            combined = ChatMessage(role=MessageRole.ASSISTANT, content=f"{state.summary}\n\n{new_summary}")
            merged = await self.summarize_conversation([combined], doc_title)
            return merged or new_summary, 1
        if state.summary:
            return f"{state.summary}\n\n{new_summary}", state.summary_count + 1
        return new_summary, 1

    def unabsorbed_messages(self, history: Sequence[ChatMessage], state: ConversationState) -> list[ChatMessage]:
        """Messages older than the recent window that no summary covers yet."""
        window = self.config.max_recent_messages
        end = len(history) - window
        return list(history[state.last_summarized_index + 1 : max(end, 0)])

    async def _absorb(
        self, history: Sequence[ChatMessage], state: ConversationState, doc_title: str | None
    ) -> ConversationState | None:
        to_summarize = self.unabsorbed_messages(history, state)
        if not to_summarize:
            logger.debug("No messages to summarize")
            return None

        logger.debug(f"Summarizing {len(to_summarize)} messages")
        new_summary = await self.summarize_conversation(to_summarize, doc_title)
        if not new_summary:
            logger.warning("Summarization failed, keeping prior conversation state")
            return None

        summary, summary_count = await self._merge_summary(state, new_summary, doc_title)
        window = self.config.max_recent_messages
        new_state = ConversationState(
            summary=summary,
            recent_messages=list(history[-window:]) if window else [],
            last_summarized_index=max(state.last_summarized_index, len(history) - window - 1),
            summary_count=summary_count,
        )
        logger.info(
            f"Conversation summarized (rounds={summary_count}, "
            f"last_summarized_index={new_state.last_summarized_index})"
        )
        return new_state

    # ------------------------------------------------------------------ #
    # Triggers
    # ------------------------------------------------------------------ #

    def estimate_state_tokens(self, history: Sequence[ChatMessage], state: ConversationState) -> int:
        recent = history[-self.config.max_recent_messages :] if self.config.max_recent_messages else []
        return estimate_tokens("\n".join(message.content for message in recent)) + estimate_tokens(
            state.summary or ""
        )

    async def perform_pre_summarization(
        self,
        history: Sequence[ChatMessage],
        state: ConversationState,
        doc_title: str | None = None,
        doc_id: str | None = None,
    ) -> ConversationState:
        """
        Summarize stored history before it is loaded into a session.

        Returns the prior state unchanged when below threshold, when nothing
        is left to absorb, or when summarization fails.
        """
        if not history:
            return state

        quota = await self.detector.detect()
        estimated = self.estimate_state_tokens(history, state)
        threshold = quota * self.config.pre_summarization_threshold
        logger.debug(f"Pre-summarization estimate: {estimated} tokens, threshold {threshold:.0f} of {quota}")
        if estimated < threshold:
            return state

        new_state = await self._absorb(history, state, doc_title)
        if new_state is None:
            return state

        if self.store is not None and doc_id is not None:
            await self.store.save_state(doc_id, new_state)
        return new_state

    async def summarize_after_turn(
        self,
        context_id: str,
        history: Sequence[ChatMessage],
        state: ConversationState,
        doc_title: str | None,
        system_prompt: str,
        doc_id: str | None = None,
        *,
        force: bool = False,
    ) -> ConversationState | None:
        """
        Post-turn trigger: summarize and rebase when the live session is 80% full.

        ``history`` must already include the turn just completed. With
        ``force`` the usage threshold is skipped, e.g. after a turn whose
        evidence filled the budget. History and the new state are persisted
        before the rebase; a failed rebase is logged and leaves the context
        without a session, to be rebuilt from history on the next turn.
        Returns the new state, or None when nothing happened.
        """
        usage = self.session_usage(context_id)
        if usage is None:
            return None

        logger.debug(
            f"Session {context_id} usage: {usage.usage_percentage:.1f}% ({usage.input_usage}/{usage.input_quota})"
        )
        if force:
            logger.info(f"Session {context_id} budget is tight, summarizing ahead of the next turn")
        elif usage.usage_ratio < self.config.post_turn_threshold:
            return None
        else:
            logger.info(f"Session {context_id} at {usage.usage_percentage:.1f}% of quota, summarizing")

        new_state = await self._absorb(history, state, doc_title)
        if new_state is None:
            return None

        if self.store is not None and doc_id is not None:
            await self.store.save_history(doc_id, list(history), new_state)

        if self.session_manager is not None:
            try:
                await self.session_manager.clone(context_id, new_state, system_prompt)
            except Exception as e:
                logger.error(f"Rebase after summarization failed for {context_id}: {e}")
        return new_state

    # ------------------------------------------------------------------ #
    # Usage
    # ------------------------------------------------------------------ #

    def session_usage(self, context_id: str) -> SessionUsage | None:
        if self.session_manager is None:
            return None
        return self.session_manager.usage(context_id)

    def needs_summarization(self, context_id: str, threshold: float = SESSION_REBASE_THRESHOLD) -> bool:
        usage = self.session_usage(context_id)
        return usage is not None and usage.usage_ratio >= threshold
