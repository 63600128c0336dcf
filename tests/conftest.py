# tests/conftest.py
"""
Shared pytest fixtures and configuration for bounded_rag tests.

The fakes themselves live in tests/fakes.py so test modules can import
them directly.
"""

import logging

import pytest

from bounded_rag.budget import BudgetDetector, BudgetTrimmer, RetrievalSizer
from bounded_rag.conversation import ConversationStateManager
from bounded_rag.session_manager import SessionLifecycleManager
from fakes import (
    FakeChunkStore,
    FakeLanguageModelFactory,
    FakeSummarizerFactory,
    InMemoryConversationStore,
    RecordingTransport,
)

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logging.getLogger("bounded_rag").setLevel(logging.DEBUG)


@pytest.fixture
def factory():
    """Engine factory whose sessions advertise a 4096-token quota."""
    return FakeLanguageModelFactory(input_quota=4096)


@pytest.fixture
def detector(factory):
    return BudgetDetector(factory)


@pytest.fixture
def sizer(detector):
    return RetrievalSizer(detector)


@pytest.fixture
def trimmer(detector):
    return BudgetTrimmer(detector)


@pytest.fixture
def session_manager(factory):
    return SessionLifecycleManager(factory)


@pytest.fixture
def summarizer_factory():
    return FakeSummarizerFactory()


@pytest.fixture
def conversation_store():
    return InMemoryConversationStore()


@pytest.fixture
def conversation_manager(detector, summarizer_factory, session_manager, conversation_store):
    return ConversationStateManager(detector, summarizer_factory, session_manager, conversation_store)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def chunk_store():
    return FakeChunkStore()
