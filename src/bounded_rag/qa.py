# bounded_rag/qa.py
"""
One-shot question answering.

No conversation is kept. Each question gets its own session, which is
destroyed once the answer is decoded::

    retrieve   (static overhead estimate at the 65% margin)
    validate   (drop chunks until the prompt fits, bounded attempts)
    prompt     (PromptExecutor: wall-clock timeout, retries)
    decode     (answer text and citations from the structured response)

A newer question for the same document cancels the one in flight, as
with chat turns.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import BaseModel, Field

from bounded_rag.budget import BudgetDetector
from bounded_rag.engine import SessionOptions
from bounded_rag.exceptions import NoRelevantContentError, PromptTimeoutError, RequestCancelledError
from bounded_rag.executor import PromptExecutor
from bounded_rag.formatting import build_qa_prompt, format_context, map_sources_to_info, source_key
from bounded_rag.models import ContentChunk, QuestionRequest, TurnOutcome, TurnResult, UseCase
from bounded_rag.retrieval import ChatRetrievalService
from bounded_rag.session_manager import SessionLifecycleManager
from bounded_rag.streaming import CHAT_RESPONSE_SCHEMA, StreamingAnswerDecoder, assert_answer_precedes_sources

logger = logging.getLogger(__name__)


class QAConfig(BaseModel):
    """Validation bounds and fallback messages for one-shot questions."""

    max_validation_attempts: int = Field(default=3, ge=1)
    chunks_dropped_per_retry: int = Field(default=2, ge=1)
    chunks_kept_on_last_attempt: int = Field(
        default=2, ge=1, description="First chunks used when no attempt fits"
    )

    no_content_message: str = "No relevant content found to answer this question."
    timeout_message: str = "The model took too long to respond. Please try again."
    error_message: str = "Sorry, something went wrong while answering your question."


class QuestionAnsweringService:
    """
    Answers standalone questions about a document.

    Args:
        session_manager: Owner of the per-context generation sessions
        retrieval: Budgeted evidence retrieval
        detector: Prompt-size validation against the live session
        executor: Timed prompt execution; built on ``session_manager`` when omitted
        session_options: Template for the sessions this service creates
    """

    def __init__(
        self,
        session_manager: SessionLifecycleManager,
        retrieval: ChatRetrievalService,
        detector: BudgetDetector,
        executor: PromptExecutor | None = None,
        config: QAConfig | None = None,
        session_options: SessionOptions | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> None:
        self.session_manager = session_manager
        self.retrieval = retrieval
        self.detector = detector
        self.executor = executor or PromptExecutor(session_manager)
        self.config = config or QAConfig()
        self.session_options = session_options or SessionOptions()
        self.response_schema = response_schema or CHAT_RESPONSE_SCHEMA
        assert_answer_precedes_sources(self.response_schema)

    async def handle_request(self, request: QuestionRequest, system_prompt: str = "") -> TurnResult:
        return await self.answer_question(request.doc_id, request.question, request.context_id, system_prompt)

    async def answer_question(
        self,
        doc_id: str,
        question: str,
        context_id: str | None = None,
        system_prompt: str = "",
    ) -> TurnResult:
        """Answer one question. Failures are reported on the result, never raised."""
        context_id = context_id or f"qa-{doc_id}"
        try:
            return await self.session_manager.run_request(
                context_id, lambda: self._answer(doc_id, question, context_id, system_prompt)
            )
        except RequestCancelledError:
            logger.info(f"Question for {context_id} was superseded")
            return TurnResult(outcome=TurnOutcome.CANCELLED)
        except NoRelevantContentError as e:
            return TurnResult(outcome=TurnOutcome.FAILED, answer=self.config.no_content_message, error=str(e))
        except PromptTimeoutError as e:
            logger.warning(f"Question for {context_id} timed out: {e}")
            return TurnResult(outcome=TurnOutcome.TIMED_OUT, answer=self.config.timeout_message, error=str(e))
        except Exception as e:
            logger.error(f"Question for {context_id} failed: {e}", exc_info=True)
            return TurnResult(outcome=TurnOutcome.FAILED, answer=self.config.error_message, error=str(e))

    async def _answer(self, doc_id: str, question: str, context_id: str, system_prompt: str) -> TurnResult:
        try:
            retrieved = await self.retrieval.get_relevant_chunks(doc_id, question, UseCase.QA)
            status = retrieved.status
            if not status.min_floor_met:
                logger.warning(
                    f"Evidence floor unmet for {context_id} ({status.used_tokens}/{status.available_tokens} tokens), "
                    "answering best effort"
                )

            options = self.session_options.model_copy(update={"system_prompt": system_prompt or None})
            session = await self.session_manager.get_or_create(context_id, options)
            chunks = await self._fit_chunks(session, retrieved.chunks, question)

            raw = await self.executor.execute_with_timeout(
                context_id,
                build_qa_prompt(format_context(chunks), question),
                options=options,
                response_constraint=self.response_schema,
            )
            decoder = StreamingAnswerDecoder()
            decoder.feed(raw)
            decoded = decoder.finish()

            answer = decoded.answer or raw.strip()
            sources = decoded.sources or list(dict.fromkeys(source_key(chunk) for chunk in chunks))
            source_info = map_sources_to_info(sources, retrieved.source_map)
            logger.info(f"Answered question for {context_id} from {len(chunks)} chunk(s)")
            return TurnResult(
                outcome=TurnOutcome.COMPLETED,
                answer=answer,
                sources=sources,
                source_info=source_info,
                chunks_used=len(chunks),
                budget_status=status,
            )
        finally:
            await self._release_session(context_id)

    async def _fit_chunks(self, session: Any, chunks: list[ContentChunk], question: str) -> list[ContentChunk]:
        """Drop trailing chunks until the prompt fits; the last attempt keeps only the first few."""
        for attempt in range(1, self.config.max_validation_attempts + 1):
            fit = await self.detector.validate_prompt_size(session, build_qa_prompt(format_context(chunks), question))
            if fit.fits:
                return chunks
            logger.warning(
                f"Prompt too large ({fit.actual_usage} > {fit.available}) on attempt "
                f"{attempt}/{self.config.max_validation_attempts}"
            )
            if attempt < self.config.max_validation_attempts:
                chunks = chunks[: max(1, len(chunks) - self.config.chunks_dropped_per_retry)]

        logger.error("Max validation attempts reached, using the first chunks only")
        return chunks[: self.config.chunks_kept_on_last_attempt]

    async def _release_session(self, context_id: str) -> None:
        """Destroy the session unless a newer question for the context now owns it."""
        owner = self.session_manager.registry.request(context_id)
        if owner is not None and owner is not asyncio.current_task():
            return
        await self.session_manager.destroy(context_id)
