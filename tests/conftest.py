"""Shared fixtures for context engine tests."""

import pytest
from loguru import logger

from context_engine.models import ConversationMessage, MessageRole, PipelineContext, RetrievalChunk
from context_engine.utils import reset_config


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    """Isolate every test from RAG_* / LOG_* variables in the environment."""
    for var in ("LOG_LEVEL", "LOG_JSON", "RAG_MAX_CONTEXT_LENGTH", "RAG_MIN_SIMILARITY", "RAG_SORT_BY_SIMILARITY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("context_engine.utils.load_dotenv", lambda *args, **kwargs: False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def log_records():
    """Capture loguru records emitted during a test."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


@pytest.fixture
def make_chunk():
    def _make(content: str, similarity: float, **extra) -> RetrievalChunk:
        return RetrievalChunk(content=content, similarity=similarity, **extra)
    return _make


@pytest.fixture
def conversation():
    return PipelineContext(
        messages=[
            ConversationMessage(id="m1", role=MessageRole.SYSTEM, content="You are a support agent."),
            ConversationMessage(id="m2", role=MessageRole.USER, content="How do I connect Snowflake?"),
            ConversationMessage(id="m3", role=MessageRole.ASSISTANT, content="Which edition do you use?"),
            ConversationMessage(id="m4", role=MessageRole.USER, content="Enterprise edition."),
        ],
        metadata={"session_id": "s-1"}
    )
