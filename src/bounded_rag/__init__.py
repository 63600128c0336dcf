# bounded_rag/__init__.py
"""
bounded_rag - retrieval-augmented chat under a small, fixed input quota.

Quick start::

    from bounded_rag import (
        BudgetDetector, BudgetTrimmer, ChatRetrievalService, ChatTurnProcessor,
        ConversationStateManager, QuestionAnsweringService, RetrievalSizer,
        SessionLifecycleManager,
    )

    detector = BudgetDetector(language_model_factory)
    sessions = SessionLifecycleManager(language_model_factory)
    conversation = ConversationStateManager(detector, summarizer_factory, sessions, store)
    retrieval = ChatRetrievalService(chunk_store, RetrievalSizer(detector), BudgetTrimmer(detector))
    chat = ChatTurnProcessor(sessions, conversation, retrieval, detector, transport, store)

    result = await chat.process_turn(doc_id, title, f"chat-{doc_id}", question, history, state, system_prompt)

    qa = QuestionAnsweringService(sessions, retrieval, detector)
    answer = await qa.answer_question(doc_id, question)
"""

from bounded_rag.budget import (
    BudgetDetector,
    BudgetTrimmer,
    RetrievalSizer,
    SizerConfig,
    TrimmerConfig,
    estimate_tokens,
)
from bounded_rag.chat import ChatConfig, ChatTurnProcessor
from bounded_rag.conversation import ConversationConfig, ConversationStateManager
from bounded_rag.engine import (
    ChunkStore,
    ConversationStore,
    GenerationSession,
    LanguageModelFactory,
    SessionOptions,
    Summarizer,
    SummarizerFactory,
    SummarizerOptions,
    Transport,
)
from bounded_rag.exceptions import (
    BoundedRagError,
    ContextTooLargeError,
    EngineUnavailableError,
    NoRelevantContentError,
    PromptTimeoutError,
    RequestCancelledError,
    SchemaOrderError,
    SessionNotFoundError,
)
from bounded_rag.executor import PromptExecutor, TimeoutConfig, is_quota_exceeded_error
from bounded_rag.models import (
    BudgetStatus,
    ChatMessage,
    ChatRequest,
    ContentChunk,
    ConversationState,
    ImageChatRequest,
    MessageRole,
    QuestionRequest,
    SourceInfo,
    StreamChunkEvent,
    StreamEndEvent,
    TokenBudget,
    TurnOutcome,
    TurnResult,
    UseCase,
)
from bounded_rag.qa import QAConfig, QuestionAnsweringService
from bounded_rag.retrieval import ChatRetrievalService, RetrievalContext
from bounded_rag.session_manager import SessionLifecycleManager, SessionRegistry
from bounded_rag.streaming import CHAT_RESPONSE_SCHEMA, StreamingAnswerDecoder, assert_answer_precedes_sources

__version__ = "0.1.0"

__all__ = [
    # Budget
    "BudgetDetector",
    "BudgetTrimmer",
    "RetrievalSizer",
    "SizerConfig",
    "TrimmerConfig",
    "estimate_tokens",
    # Orchestration
    "ChatConfig",
    "ChatTurnProcessor",
    "ChatRetrievalService",
    "RetrievalContext",
    "ConversationConfig",
    "ConversationStateManager",
    "SessionLifecycleManager",
    "SessionRegistry",
    "PromptExecutor",
    "TimeoutConfig",
    "is_quota_exceeded_error",
    "QAConfig",
    "QuestionAnsweringService",
    # Streaming
    "CHAT_RESPONSE_SCHEMA",
    "StreamingAnswerDecoder",
    "assert_answer_precedes_sources",
    # Collaborators
    "ChunkStore",
    "ConversationStore",
    "GenerationSession",
    "LanguageModelFactory",
    "SessionOptions",
    "Summarizer",
    "SummarizerFactory",
    "SummarizerOptions",
    "Transport",
    # Models
    "BudgetStatus",
    "ChatMessage",
    "ChatRequest",
    "ContentChunk",
    "ConversationState",
    "ImageChatRequest",
    "MessageRole",
    "QuestionRequest",
    "SourceInfo",
    "StreamChunkEvent",
    "StreamEndEvent",
    "TokenBudget",
    "TurnOutcome",
    "TurnResult",
    "UseCase",
    # Errors
    "BoundedRagError",
    "ContextTooLargeError",
    "EngineUnavailableError",
    "NoRelevantContentError",
    "PromptTimeoutError",
    "RequestCancelledError",
    "SchemaOrderError",
    "SessionNotFoundError",
]
