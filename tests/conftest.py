import os

# Settings and the engine are built at import time.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REALTIME_BACKEND", "memory")

from unittest.mock import AsyncMock, Mock  # noqa: E402

import pytest  # noqa: E402

from factories import TENANT_ID, TOKEN, context  # noqa: E402
from mchatly.services.knowledge_service import KnowledgeMatch  # noqa: E402
from mchatly.services.llm import LLMResponse  # noqa: E402
from mchatly.services.realtime import InMemoryTransport  # noqa: E402
from mchatly.services.records import ChatbotRecord  # noqa: E402
from mchatly.services.store import InMemoryMessageStore  # noqa: E402


@pytest.fixture
def store():
    store = InMemoryMessageStore()
    store.add_chatbot(
        ChatbotRecord(
            id=TENANT_ID,
            token=TOKEN,
            name="Acme",
            instruction_text="Be friendly and concise.",
        )
    )
    return store


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def matcher():
    """Knowledge matcher returning one context snippet by default."""
    matcher = Mock()
    matcher.match = AsyncMock(
        return_value=KnowledgeMatch(
            best_faq=None,
            context_snippets=["We ship worldwide."],
            candidates=[context("We ship worldwide.", 0.8)],
        )
    )
    return matcher


@pytest.fixture
def llm():
    llm = Mock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="  Happy to help!  ", model="test-model"))
    return llm


@pytest.fixture
def push_sender():
    sender = Mock()
    sender.send = AsyncMock(return_value=None)
    return sender


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("QDRANT_API_KEY", "test-key")
