# tests/test_chat.py
"""
End-to-end tests for ChatTurnProcessor against the in-memory fakes.

The quota is detected before each test so the detector's quota session
never consumes a session queued on the factory.
"""

import asyncio

import pytest

from bounded_rag.chat import ChatConfig, ChatTurnProcessor, TurnContext
from bounded_rag.exceptions import SchemaOrderError
from bounded_rag.models import ChatRequest, ConversationState, ImageChatRequest, MessageRole, TurnOutcome
from bounded_rag.retrieval import ChatRetrievalService
from bounded_rag.streaming import CHAT_RESPONSE_SCHEMA
from fakes import answer_json, make_chunk, make_history

DOC_ID = "doc-1"
CONTEXT_ID = "chat-doc-1"
QUESTION = "How many participants?"
SYSTEM_PROMPT = "You answer questions about the paper."
ANSWER = "The sample had 40 participants."
SOURCES = ["Section: Section 1 > P 1"]


def _split(text: str, size: int) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


@pytest.fixture
async def processor(
    factory, detector, sizer, trimmer, session_manager, conversation_manager, conversation_store, transport, chunk_store
):
    await detector.detect()
    factory.session_kwargs["fragments"] = _split(answer_json(ANSWER, SOURCES), 7)
    chunk_store.chunks = [make_chunk(i) for i in range(5)]
    retrieval = ChatRetrievalService(chunk_store, sizer, trimmer)
    config = ChatConfig(first_fragment_timeout_seconds=0.05, retry_delay_seconds=0)
    return ChatTurnProcessor(
        session_manager, conversation_manager, retrieval, detector, transport, conversation_store, config
    )


async def _turn(processor, history=None, state=None, **kwargs):
    return await processor.process_turn(
        DOC_ID,
        "Paper",
        CONTEXT_ID,
        QUESTION,
        history or [],
        state or ConversationState.initial(),
        SYSTEM_PROMPT,
        **kwargs,
    )


# ===========================================================================
# Happy path
# ===========================================================================


class TestCompletedTurn:
    async def test_streams_answer_and_maps_sources(self, processor, transport, session_manager):
        result = await _turn(processor)

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.answer == ANSWER
        assert result.sources == SOURCES
        assert [info.section_heading for info in result.source_info] == ["Section 1"]
        assert result.chunks_used == 5

        assert "".join(transport.chunk_texts) == ANSWER
        end = transport.end_events[-1]
        assert end.full_message == ANSWER
        assert end.outcome == TurnOutcome.COMPLETED
        assert end.source_info == result.source_info

        session = session_manager.get_session(CONTEXT_ID)
        assert session.constraints[-1] == CHAT_RESPONSE_SCHEMA
        assert session.prompts[-1].endswith(f"User question: {QUESTION}")
        assert session.options.initial_prompts == [{"role": "system", "content": SYSTEM_PROMPT}]

    async def test_history_is_persisted(self, processor, conversation_store):
        result = await _turn(processor)

        history = conversation_store.histories[DOC_ID]
        assert [message.role for message in history] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert history[0].content == QUESTION
        assert history[1].content == ANSWER
        assert history[1].sources == SOURCES
        assert result.conversation_state == ConversationState.initial()

    async def test_handle_request(self, processor, transport):
        request = ChatRequest(doc_id=DOC_ID, doc_title="Paper", question=QUESTION)
        result = await processor.handle_request(request, [], ConversationState.initial(), SYSTEM_PROMPT)

        assert result.outcome == TurnOutcome.COMPLETED
        assert transport.end_events[-1].context_id == CONTEXT_ID

    async def test_existing_session_is_reused(self, processor, session_manager):
        await _turn(processor)
        first = session_manager.get_session(CONTEXT_ID)
        await _turn(processor)
        assert session_manager.get_session(CONTEXT_ID) is first
        assert len(first.prompts) == 2


# ===========================================================================
# Refusal and retrieval failures
# ===========================================================================


class TestRetrievalOutcomes:
    async def test_refused_when_floor_unmet(self, processor, chunk_store, transport):
        chunk_store.chunks = [make_chunk(0, token_count=5000)]

        result = await _turn(processor, proceed_best_effort=False)

        assert result.outcome == TurnOutcome.REFUSED
        assert result.answer == processor.config.refusal_message
        assert transport.end_events[-1].outcome == TurnOutcome.REFUSED
        assert transport.chunk_texts == []

    async def test_no_relevant_content(self, processor, chunk_store, transport):
        chunk_store.chunks = []

        result = await _turn(processor)

        assert result.outcome == TurnOutcome.FAILED
        assert result.answer == processor.config.no_content_message
        assert transport.end_events[-1].full_message == processor.config.no_content_message


# ===========================================================================
# Prompt validation
# ===========================================================================


class TestValidation:
    async def test_drops_chunks_until_prompt_fits(self, processor, factory):
        factory.session_kwargs["tokens_per_char"] = 2.0

        result = await _turn(processor)

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.chunks_used == 3

    async def test_history_summarized_once_per_turn(self, processor, factory, session_manager):
        factory.session_kwargs["tokens_per_char"] = 2.0
        chunks = [make_chunk(i) for i in range(5)]
        turn = TurnContext(
            doc_id=DOC_ID,
            context_id=CONTEXT_ID,
            question=QUESTION,
            system_prompt=SYSTEM_PROMPT,
            history=make_history(8),
            session=await session_manager.get_or_create(CONTEXT_ID),
            chunks=chunks,
        )
        before = len(factory.created)

        await processor._validate_prompt(turn)
        turn.chunks = chunks
        await processor._validate_prompt(turn)

        assert turn.history_summarized
        assert len(turn.chunks) == 3
        assert len(factory.created) == before + 1

    async def test_context_too_large(self, processor, factory, transport):
        factory.session_kwargs["tokens_per_char"] = 100

        result = await _turn(processor)

        assert result.outcome == TurnOutcome.FAILED
        assert result.answer == processor.config.context_too_large_message
        assert transport.chunk_texts == []


# ===========================================================================
# Streaming failures
# ===========================================================================


class TestStreamingRetries:
    async def test_first_fragment_timeout_then_success(self, processor, factory):
        factory.queue_session(first_fragment_delay=1)

        result = await _turn(processor)

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.answer == ANSWER
        stalled = factory.created[1]
        assert stalled.destroyed

    async def test_all_attempts_time_out(self, processor, factory, transport):
        factory.session_kwargs["first_fragment_delay"] = 1

        result = await _turn(processor)

        assert result.outcome == TurnOutcome.TIMED_OUT
        assert result.answer == processor.config.timeout_message
        assert transport.end_events[-1].outcome == TurnOutcome.TIMED_OUT
        # quota session + one session per attempt
        assert len(factory.created) == 1 + processor.config.max_chat_attempts

    async def test_quota_error_reduces_context(self, processor, factory):
        factory.session_kwargs["stream_error"] = RuntimeError("QuotaExceededError: The input is too large.")

        result = await _turn(processor)

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.chunks_used == 3

    async def test_quota_error_after_streaming_is_not_retried(self, processor, factory, transport, session_manager):
        factory.session_kwargs["stream_error"] = RuntimeError("QuotaExceededError: The input is too large.")
        factory.session_kwargs["stream_error_after"] = 4

        result = await _turn(processor)

        streamed = "".join(transport.chunk_texts)
        assert streamed
        assert ANSWER.startswith(streamed)
        assert result.outcome == TurnOutcome.FAILED
        assert transport.end_events[-1].full_message == processor.config.error_message
        assert len(session_manager.get_session(CONTEXT_ID).prompts) == 1

    async def test_other_stream_error_fails_turn(self, processor, factory, transport):
        factory.session_kwargs["stream_error"] = RuntimeError("network down")

        result = await _turn(processor)

        assert result.outcome == TurnOutcome.FAILED
        assert result.error == "network down"
        assert transport.end_events[-1].full_message == processor.config.error_message


# ===========================================================================
# Cancellation
# ===========================================================================


class TestCancellation:
    async def test_new_turn_cancels_in_flight_turn(self, processor, session_manager, transport):
        processor.config = processor.config.model_copy(update={"first_fragment_timeout_seconds": 30})
        session = await session_manager.get_or_create(CONTEXT_ID)
        session.first_fragment_delay = 10

        first = asyncio.create_task(_turn(processor))
        while not session.prompts:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)

        session.first_fragment_delay = 0
        second = await _turn(processor)
        first_result = await first

        assert first_result.outcome == TurnOutcome.CANCELLED
        assert second.outcome == TurnOutcome.COMPLETED
        assert len(transport.end_events) == 1
        assert transport.end_events[0].full_message == ANSWER


# ===========================================================================
# Session preparation
# ===========================================================================


class TestSessionPreparation:
    async def test_rebases_session_above_seventy_percent(self, processor, session_manager):
        old = await session_manager.get_or_create(CONTEXT_ID)
        old.input_usage = 3000
        history = make_history(4)

        result = await _turn(processor, history=history)

        assert result.outcome == TurnOutcome.COMPLETED
        assert old.destroyed
        new = session_manager.get_session(CONTEXT_ID)
        assert new is not old
        prompts = new.options.initial_prompts
        assert prompts[0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert prompts[1:] == [message.to_turn() for message in history]

    async def test_history_window_shrinks_for_evidence(self, processor, session_manager, factory):
        history = make_history(6, content_chars=2400)

        result = await _turn(processor, history=history)

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.budget_status.history_messages == 3
        session = session_manager.get_session(CONTEXT_ID)
        prompts = session.options.initial_prompts
        assert len(prompts) - 1 <= result.budget_status.history_messages
        assert prompts[1:] == [message.to_turn() for message in history[-3:]]
        assert factory.created[1].destroyed

    async def test_stored_history_builds_session(self, processor, session_manager, conversation_store):
        history = make_history(2)

        await _turn(processor, history=history)

        session = session_manager.get_session(CONTEXT_ID)
        assert len(session.options.initial_prompts) == 3
        assert len(conversation_store.histories[DOC_ID]) == 4


# ===========================================================================
# Isolation of bookkeeping failures
# ===========================================================================


class TestBudgetFollowUp:
    async def test_tight_budget_summarizes_after_turn(
        self, processor, chunk_store, summarizer_factory, session_manager
    ):
        chunk_store.chunks = [make_chunk(i, token_count=300) for i in range(12)]
        history = make_history(8)

        result = await _turn(processor, history=history)

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.budget_status.tight
        assert summarizer_factory.calls == 1
        assert result.conversation_state.summary == "Summary 1"
        assert session_manager.get_session(CONTEXT_ID).options.initial_prompts[0]["content"].endswith("Summary 1")

    async def test_roomy_budget_skips_summarization(self, processor, summarizer_factory):
        result = await _turn(processor, history=make_history(8))

        assert not result.budget_status.needs_summarization
        assert summarizer_factory.calls == 0

    async def test_history_persisted_when_rebase_fails(self, processor, factory, transport, conversation_store):
        send = transport.send

        async def exhaust_session(event):
            await send(event)
            if event.type == "end":
                processor.session_manager.get_session(CONTEXT_ID).input_usage = 3900
                factory.fail = True

        transport.send = exhaust_session
        history = make_history(8)

        result = await _turn(processor, history=history)

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.conversation_state.summary == "Summary 1"
        stored = conversation_store.histories[DOC_ID]
        assert len(stored) == 10
        assert stored[-1].content == ANSWER
        assert conversation_store.states[DOC_ID] == result.conversation_state


class TestImageTurns:
    IMAGE_REQUEST = ImageChatRequest(
        doc_id=DOC_ID, doc_title="Paper", question=QUESTION, image_url="https://example.org/figure-1.png"
    )

    async def test_image_and_prompt_appended_as_one_turn(self, processor, session_manager, transport):
        request = self.IMAGE_REQUEST

        result = await processor.handle_image_request(
            request, b"png-bytes", [], ConversationState.initial(), SYSTEM_PROMPT
        )

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.answer == ANSWER
        session = session_manager.get_session(request.context_id)
        assert session.options.expected_input_types == ["image", "text"]
        assert session.prompts == [""]
        (turn,) = session.appended
        assert turn["role"] == "user"
        image_part, text_part = turn["content"]
        assert image_part == {"type": "image", "value": b"png-bytes"}
        assert text_part["type"] == "text"
        assert QUESTION in text_part["value"]
        assert transport.end_events[-1].context_id == request.context_id
        assert not session_manager.has_session(CONTEXT_ID)

    async def test_image_history_rebuilds_multimodal_session(self, processor, session_manager):
        request = self.IMAGE_REQUEST
        history = make_history(4)

        result = await processor.handle_image_request(
            request, b"png-bytes", history, ConversationState.initial(), SYSTEM_PROMPT
        )

        assert result.outcome == TurnOutcome.COMPLETED
        options = session_manager.get_session(request.context_id).options
        assert options.expected_input_types == ["image", "text"]
        assert options.initial_prompts[1:] == [message.to_turn() for message in history]

    async def test_text_turns_stay_text_only(self, processor, session_manager):
        await _turn(processor)

        session = session_manager.get_session(CONTEXT_ID)
        assert session.options.expected_input_types == ["text"]
        assert session.appended == []


class TestIsolation:
    async def test_post_turn_failure_keeps_answer(self, processor, conversation_store):
        async def broken_save(doc_id, history, state):
            raise RuntimeError("disk full")

        conversation_store.save_history = broken_save

        result = await _turn(processor)

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.answer == ANSWER

    async def test_transport_failure_keeps_answer(self, processor, transport):
        transport.fail = True

        result = await _turn(processor)

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.answer == ANSWER
        assert transport.events == []


class TestSchema:
    def test_reversed_schema_rejected(self, session_manager, conversation_manager, detector, transport):
        schema = {"type": "object", "properties": {"sources": {"type": "array"}, "answer": {"type": "string"}}}
        with pytest.raises(SchemaOrderError):
            ChatTurnProcessor(session_manager, conversation_manager, None, detector, transport, response_schema=schema)
