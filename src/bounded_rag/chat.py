# bounded_rag/chat.py
"""
Chat turn orchestration.

One turn, start to finish::

    prepare session  (pre-summarize stored history, rebase when >70% used)
    retrieve         (oversample, trim to budget, document order, shrink history window)
    validate prompt  (measure against the live session, drop chunks until it fits)
    stream           (first-fragment timeout, quota-exceeded retries)
    end event        (answer, citations, locator metadata)
    bookkeeping      (post-turn summarization when quota or evidence budget is tight,
                      persistence; never fails the turn)

Each turn runs through SessionLifecycleManager.run_request, so a new turn
for the same context cancels the one still in flight.

Image turns follow the same stages; the image and the prompt reach the
session as one multimodal user turn via ``append`` before streaming.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

from pydantic import BaseModel, Field

from bounded_rag.budget import BudgetDetector
from bounded_rag.config import (
    CHAT_TIMEOUT_SECONDS,
    MAX_CHAT_ATTEMPTS,
    MAX_QUOTA_RETRIES,
    MAX_RECENT_MESSAGES,
    RETRY_DELAY_SECONDS,
    SESSION_REBASE_THRESHOLD,
)
from bounded_rag.conversation import ConversationStateManager
from bounded_rag.engine import ConversationStore, SessionOptions, Transport
from bounded_rag.exceptions import (
    ContextTooLargeError,
    NoRelevantContentError,
    PromptTimeoutError,
    RequestCancelledError,
)
from bounded_rag.executor import is_quota_exceeded_error
from bounded_rag.formatting import build_prompt_with_context, format_context, map_sources_to_info
from bounded_rag.models import (
    BudgetStatus,
    ChatMessage,
    ChatRequest,
    ContentChunk,
    ConversationState,
    DecodedAnswer,
    ImageChatRequest,
    MessageRole,
    SourceInfo,
    StreamChunkEvent,
    StreamEndEvent,
    TurnOutcome,
    TurnResult,
    UseCase,
)
from bounded_rag.retrieval import ChatRetrievalService
from bounded_rag.session_manager import SessionLifecycleManager
from bounded_rag.streaming import CHAT_RESPONSE_SCHEMA, StreamingAnswerDecoder, assert_answer_precedes_sources

logger = logging.getLogger(__name__)


class ChatConfig(BaseModel):
    """Retry bounds and user-facing fallback messages for chat turns."""

    first_fragment_timeout_seconds: float = Field(default=CHAT_TIMEOUT_SECONDS, gt=0)
    max_chat_attempts: int = Field(default=MAX_CHAT_ATTEMPTS, ge=1)
    max_quota_retries: int = Field(default=MAX_QUOTA_RETRIES, ge=0)
    max_validation_attempts: int = Field(default=10, ge=1)
    chunks_dropped_per_retry: int = Field(default=2, ge=1)
    rebase_threshold: float = Field(default=SESSION_REBASE_THRESHOLD, gt=0, le=1)
    min_history_for_summarization: int = Field(
        default=3, description="History longer than this is summarized before chunks are dropped"
    )
    retry_delay_seconds: float = Field(default=RETRY_DELAY_SECONDS, ge=0)

    refusal_message: str = (
        "Not enough of the document fits in the available context to answer reliably. "
        "Try a more specific question."
    )
    no_content_message: str = "No relevant content found to answer this question."
    context_too_large_message: str = (
        "Unable to process your question due to context size limitations. Please try a shorter question."
    )
    timeout_message: str = "The model took too long to respond. Please try again."
    error_message: str = "Sorry, something went wrong while answering your question."


class _FirstFragmentTimeout(Exception):
    pass


class TurnContext(BaseModel):
    """Working state of one chat turn."""

    doc_id: str
    doc_title: str = ""
    context_id: str
    question: str
    system_prompt: str
    history: list[ChatMessage] = Field(default_factory=list)
    state: ConversationState = Field(default_factory=ConversationState.initial)
    session: Any = None
    chunks: list[ContentChunk] = Field(default_factory=list)
    prompt: str = ""
    source_map: dict[str, SourceInfo] = Field(default_factory=dict)
    history_window: int = Field(default=MAX_RECENT_MESSAGES, description="Recent messages the session opens with")
    history_summarized: bool = False
    streamed: bool = Field(default=False, description="Chunk events already sent")
    budget_status: BudgetStatus | None = None
    image: Any = Field(default=None, description="Image the question is about, if any")


async def _next_fragment(iterator: AsyncIterator[str]) -> str | None:
    return await anext(iterator, None)


class ChatTurnProcessor:
    """
    Answers chat questions about one document per context.

    Args:
        session_manager: Owner of the per-context generation sessions
        conversation: Summarization triggers and state transitions
        retrieval: Budgeted evidence retrieval
        detector: Prompt-size validation against the live session
        transport: Receives chunk and end events
        store: Optional persistence of history and state after each turn
        session_options: Template for sessions this processor creates
    """

    def __init__(
        self,
        session_manager: SessionLifecycleManager,
        conversation: ConversationStateManager,
        retrieval: ChatRetrievalService,
        detector: BudgetDetector,
        transport: Transport,
        store: ConversationStore | None = None,
        config: ChatConfig | None = None,
        session_options: SessionOptions | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> None:
        self.session_manager = session_manager
        self.conversation = conversation
        self.retrieval = retrieval
        self.detector = detector
        self.transport = transport
        self.store = store
        self.config = config or ChatConfig()
        self.session_options = session_options or SessionOptions()
        self.response_schema = response_schema or CHAT_RESPONSE_SCHEMA
        assert_answer_precedes_sources(self.response_schema)

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #

    async def handle_request(
        self,
        request: ChatRequest,
        history: Sequence[ChatMessage],
        state: ConversationState,
        system_prompt: str,
    ) -> TurnResult:
        return await self.process_turn(
            request.doc_id,
            request.doc_title,
            request.context_id,
            request.question,
            history,
            state,
            system_prompt,
            proceed_best_effort=request.proceed_best_effort,
        )

    async def handle_image_request(
        self,
        request: ImageChatRequest,
        image: Any,
        history: Sequence[ChatMessage],
        state: ConversationState,
        system_prompt: str,
    ) -> TurnResult:
        """Answer a question about one image, with that image's own history and state."""
        return await self.process_turn(
            request.doc_id,
            request.doc_title,
            request.context_id,
            request.question,
            history,
            state,
            system_prompt,
            proceed_best_effort=request.proceed_best_effort,
            image=image,
        )

    async def process_turn(
        self,
        doc_id: str,
        doc_title: str,
        context_id: str,
        question: str,
        history: Sequence[ChatMessage],
        state: ConversationState,
        system_prompt: str,
        *,
        proceed_best_effort: bool = True,
        image: Any = None,
    ) -> TurnResult:
        """
        Run one chat turn. Never raises for engine or retrieval failures;
        the outcome is reported on the returned TurnResult and the end event.
        """
        turn = TurnContext(
            doc_id=doc_id,
            doc_title=doc_title,
            context_id=context_id,
            question=question,
            system_prompt=system_prompt,
            history=list(history),
            state=state,
            image=image,
        )
        try:
            return await self.session_manager.run_request(
                context_id, lambda: self._run_turn(turn, proceed_best_effort)
            )
        except RequestCancelledError:
            logger.info(f"Chat turn for {context_id} was superseded")
            return TurnResult(outcome=TurnOutcome.CANCELLED, conversation_state=turn.state)
        except Exception as e:
            logger.error(f"Chat turn for {context_id} failed: {e}", exc_info=True)
            return await self._end(turn, self.config.error_message, TurnOutcome.FAILED, error=str(e))

    # ------------------------------------------------------------------ #
    # Turn stages
    # ------------------------------------------------------------------ #

    async def _run_turn(self, turn: TurnContext, proceed_best_effort: bool) -> TurnResult:
        await self._prepare_session(turn)

        try:
            retrieved = await self.retrieval.get_relevant_chunks(
                turn.doc_id,
                turn.question,
                UseCase.CHAT,
                turn.state,
                turn.history,
                turn.system_prompt,
            )
        except NoRelevantContentError as e:
            return await self._end(turn, self.config.no_content_message, TurnOutcome.FAILED, error=str(e))

        if not retrieved.status.min_floor_met:
            if not proceed_best_effort:
                logger.warning(f"Refusing turn for {turn.context_id}: evidence floor unmet")
                return await self._end(turn, self.config.refusal_message, TurnOutcome.REFUSED)
            logger.warning(f"Evidence floor unmet for {turn.context_id}, answering best effort")

        turn.budget_status = retrieved.status
        await self._apply_history_window(turn, retrieved.status)
        turn.chunks = retrieved.chunks
        turn.source_map = retrieved.source_map

        try:
            await self._validate_prompt(turn)
            decoded = await self._stream_with_retries(turn)
        except ContextTooLargeError as e:
            return await self._end(turn, self.config.context_too_large_message, TurnOutcome.FAILED, error=str(e))
        except PromptTimeoutError as e:
            return await self._end(turn, self.config.timeout_message, TurnOutcome.TIMED_OUT, error=str(e))

        source_info = map_sources_to_info(decoded.sources, turn.source_map)
        logger.debug(f"Mapped {len(source_info)} of {len(decoded.sources)} sources to locators")
        await self._send(
            StreamEndEvent(
                context_id=turn.context_id,
                full_message=decoded.answer,
                sources=decoded.sources,
                source_info=source_info,
            )
        )

        new_state = await self._post_turn(turn, decoded, source_info)
        return TurnResult(
            outcome=TurnOutcome.COMPLETED,
            answer=decoded.answer,
            sources=decoded.sources,
            source_info=source_info,
            chunks_used=len(turn.chunks),
            conversation_state=new_state,
            budget_status=turn.budget_status,
        )

    async def _rebase(self, turn: TurnContext) -> None:
        recent = turn.history[-turn.history_window :] if turn.history_window else []
        turn.session = await self.session_manager.clone(
            turn.context_id, turn.state, turn.system_prompt, self._options_for(turn), recent_messages=recent
        )

    def _options_for(self, turn: TurnContext) -> SessionOptions:
        if turn.image is None:
            return self.session_options
        return self.session_options.model_copy(update={"expected_input_types": ["image", "text"]})

    async def _apply_history_window(self, turn: TurnContext, status: BudgetStatus) -> None:
        """Rebase onto the smaller history window the evidence budget was computed for."""
        window = status.history_messages
        if window is None or window >= min(len(turn.history), turn.history_window):
            return
        logger.info(f"Shrinking history of {turn.context_id} to {window} message(s) to make room for evidence")
        turn.history_window = window
        await self._rebase(turn)

    async def _prepare_session(self, turn: TurnContext) -> None:
        """Reuse, rebase or create the context's session."""
        usage = self.session_manager.usage(turn.context_id)

        if usage is not None:
            logger.debug(
                f"Existing session {turn.context_id}: {usage.input_usage}/{usage.input_quota} "
                f"({usage.usage_percentage:.1f}%)"
            )
            if usage.usage_ratio > self.config.rebase_threshold and turn.history:
                logger.info(f"Session {turn.context_id} above {self.config.rebase_threshold:.0%}, rebasing")
                turn.state = await self.conversation.perform_pre_summarization(
                    turn.history, turn.state, turn.doc_title, turn.doc_id
                )
                await self._rebase(turn)
                return
            turn.session = self.session_manager.get_session(turn.context_id)
            if turn.session is not None:
                return

        if turn.history:
            turn.state = await self.conversation.perform_pre_summarization(
                turn.history, turn.state, turn.doc_title, turn.doc_id
            )
            await self._rebase(turn)
            return

        logger.debug(f"Creating fresh session for {turn.context_id}")
        turn.session = await self.session_manager.get_or_create(
            turn.context_id, self._options_for(turn).model_copy(update={"system_prompt": turn.system_prompt})
        )

    async def _validate_prompt(self, turn: TurnContext) -> None:
        """
        Shrink the prompt until the live session can take it.

        First summarizes history (once, when there is enough of it), then
        drops the last chunks, always keeping at least one.

        Raises:
            ContextTooLargeError: even a single chunk does not fit
        """
        chunks = list(turn.chunks)

        for attempt in range(1, self.config.max_validation_attempts + 1):
            prompt = build_prompt_with_context(format_context(chunks), turn.question)
            fit = await self.detector.validate_prompt_size(turn.session, prompt)
            if fit.fits:
                logger.debug(f"Prompt fits on attempt {attempt} ({fit.actual_usage} tokens, {len(chunks)} chunks)")
                turn.prompt = prompt
                turn.chunks = chunks
                return

            logger.warning(
                f"Prompt too large ({fit.actual_usage} > {fit.available}) on attempt "
                f"{attempt}/{self.config.max_validation_attempts}"
            )
            if (
                attempt == 1
                and not turn.history_summarized
                and len(turn.history) > self.config.min_history_for_summarization
            ):
                turn.history_summarized = True
                turn.state = await self.conversation.perform_pre_summarization(
                    turn.history, turn.state, turn.doc_title, turn.doc_id
                )
                await self._rebase(turn)
                continue

            if len(chunks) <= 1:
                break
            chunks = chunks[: max(1, len(chunks) - self.config.chunks_dropped_per_retry)]

        raise ContextTooLargeError(f"Prompt for {turn.context_id} does not fit even with {len(chunks)} chunk(s)")

    async def _stream_with_retries(self, turn: TurnContext) -> DecodedAnswer:
        timeouts = 0
        quota_retries = 0

        while True:
            try:
                return await self._stream_answer(turn)
            except _FirstFragmentTimeout:
                timeouts += 1
                logger.warning(
                    f"No response within {self.config.first_fragment_timeout_seconds}s "
                    f"(attempt {timeouts}/{self.config.max_chat_attempts})"
                )
                if timeouts >= self.config.max_chat_attempts:
                    raise PromptTimeoutError(
                        turn.context_id, timeouts, self.config.first_fragment_timeout_seconds
                    ) from None
                await self._rebase(turn)
                await asyncio.sleep(self.config.retry_delay_seconds)
            except Exception as e:
                if not is_quota_exceeded_error(e) or quota_retries >= self.config.max_quota_retries:
                    raise
                if turn.streamed:
                    logger.error(f"Quota exceeded for {turn.context_id} after the answer started streaming")
                    raise
                quota_retries += 1
                logger.warning(
                    f"Quota exceeded (retry {quota_retries}/{self.config.max_quota_retries}), reducing context"
                )
                turn.chunks = turn.chunks[: max(1, len(turn.chunks) - self.config.chunks_dropped_per_retry)]
                await self._validate_prompt(turn)

    async def _stream_answer(self, turn: TurnContext) -> DecodedAnswer:
        decoder = StreamingAnswerDecoder()
        if turn.image is not None:
            content = [{"type": "image", "value": turn.image}, {"type": "text", "value": turn.prompt}]
            await turn.session.append([{"role": MessageRole.USER.value, "content": content}])
            stream = turn.session.prompt_streaming("", response_constraint=self.response_schema)
        else:
            stream = turn.session.prompt_streaming(turn.prompt, response_constraint=self.response_schema)
        iterator = aiter(stream)
        try:
            try:
                fragment = await asyncio.wait_for(
                    _next_fragment(iterator), timeout=self.config.first_fragment_timeout_seconds
                )
            except TimeoutError:
                raise _FirstFragmentTimeout() from None

            while fragment is not None:
                delta = decoder.feed(fragment)
                if delta:
                    turn.streamed = True
                    await self._send(StreamChunkEvent(context_id=turn.context_id, text=delta))
                fragment = await _next_fragment(iterator)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        logger.debug(f"Response streamed for {turn.context_id}")
        return decoder.finish()

    async def _post_turn(
        self, turn: TurnContext, decoded: DecodedAnswer, source_info: list[SourceInfo]
    ) -> ConversationState:
        """
        Append the turn and run the post-turn trigger. Failures are logged only.

        A tight or floor-unmet evidence budget summarizes regardless of session
        usage, so the next turn has room for its evidence.
        """
        history = [
            *turn.history,
            ChatMessage(role=MessageRole.USER, content=turn.question),
            ChatMessage(
                role=MessageRole.ASSISTANT,
                content=decoded.answer,
                sources=decoded.sources,
                source_info=source_info,
            ),
        ]
        try:
            force = turn.budget_status is not None and turn.budget_status.needs_summarization
            new_state = await self.conversation.summarize_after_turn(
                turn.context_id, history, turn.state, turn.doc_title, turn.system_prompt, turn.doc_id, force=force
            )
            if new_state is not None:
                return new_state
            if self.store is not None:
                await self.store.save_history(turn.doc_id, history, turn.state)
        except Exception as e:
            logger.error(f"Post-turn processing error (non-critical): {e}")
        return turn.state

    # ------------------------------------------------------------------ #
    # Transport
    # ------------------------------------------------------------------ #

    async def _send(self, event: StreamChunkEvent | StreamEndEvent) -> None:
        try:
            await self.transport.send(event)
        except Exception as e:
            logger.error(f"Error sending {event.type} event for {event.context_id}: {e}")

    async def _end(
        self, turn: TurnContext, message: str, outcome: TurnOutcome, error: str | None = None
    ) -> TurnResult:
        await self._send(StreamEndEvent(context_id=turn.context_id, full_message=message, outcome=outcome))
        return TurnResult(
            outcome=outcome,
            answer=message,
            error=error,
            conversation_state=turn.state,
            budget_status=turn.budget_status,
        )
