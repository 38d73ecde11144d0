"""
Pytest configuration and shared fixtures for consensus backend tests.

This module provides:
- In-memory aiosqlite database and async session fixtures
- Seeding helpers for topics, documents, evaluations and summaries
- Fake OpenAI-compatible clients that record every call
"""

import json
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from consensus_backend.models import Base, Document, Evaluation, Summary, Topic
from consensus_backend.services.llm_config import AiCredentials
from consensus_backend.services.similarity_cache import InMemoryTTLCache
from consensus_backend.services.similarity_service import SimilarityService

BASE_TIME = datetime(2026, 1, 1, 9, 0, 0)

GOOD_SCORES = {"结构": 8, "逻辑": 8, "观点": 8, "证据": 8, "引用": 8, "_reasoning": {"观点": "clear"}}


# ============================================================================
# Database
# ============================================================================

@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    """Fresh async session on an isolated in-memory database."""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed_topic(db_session):
    """
    Insert a topic and its documents.

    Each document is a dict with ``id``, ``author`` and optional
    ``parent``, ``scores`` (None for no evaluation) and ``claims``.
    Documents are created one minute apart in list order.
    """
    async def _seed(topic_id, documents, discipline=None):
        db_session.add(Topic(id=topic_id, title=f"Topic {topic_id}", discipline=discipline))
        for index, doc in enumerate(documents):
            created_at = BASE_TIME + timedelta(minutes=index)
            db_session.add(
                Document(
                    id=doc["id"],
                    topic_id=topic_id,
                    parent_id=doc.get("parent"),
                    author_id=doc["author"],
                    created_at=created_at,
                )
            )
            scores = doc.get("scores", GOOD_SCORES)
            if scores is not None:
                db_session.add(Evaluation(document_id=doc["id"], scores=scores, created_at=created_at))
            if "claims" in doc:
                db_session.add(Summary(document_id=doc["id"], claims=doc["claims"], created_at=created_at))
        await db_session.commit()

    return _seed


# ============================================================================
# Fake AI clients
# ============================================================================

class FakeAiClient:
    """Records calls; replies come from the configured payloads."""

    def __init__(self, chat_reply="", embedding=None, embedding_error=None):
        self.chat_reply = chat_reply
        self.embedding = embedding
        self.embedding_error = embedding_error
        self.chat_calls = []
        self.embedding_calls = []

    async def chat(self, messages, model=None, max_tokens=2000, temperature=0.3):
        self.chat_calls.append(messages)
        reply = self.chat_reply
        return reply(messages) if callable(reply) else reply

    async def embeddings(self, inputs, model=None):
        self.embedding_calls.append(list(inputs))
        if self.embedding_error is not None:
            raise self.embedding_error
        if self.embedding is None:
            return [[1.0, 0.0] for _ in inputs]
        return self.embedding(inputs) if callable(self.embedding) else self.embedding

    @property
    def total_calls(self):
        return len(self.chat_calls) + len(self.embedding_calls)


@pytest.fixture
def fake_credentials():
    return AiCredentials(provider="openai", api_key="sk-test", model="test-model")


@pytest.fixture
def credentials_loader(fake_credentials):
    async def _load():
        return fake_credentials

    return _load


@pytest.fixture
def fake_ai():
    return FakeAiClient()


@pytest.fixture
def similarity_service(fake_ai, credentials_loader):
    return SimilarityService(
        cache=InMemoryTTLCache(),
        credentials_loader=credentials_loader,
        client_factory=lambda credentials: fake_ai,
    )


def extraction_reply(consensus=None, disagreements=None):
    return json.dumps(
        {"consensus": consensus or [], "disagreements": disagreements or []},
        ensure_ascii=False,
    )


@pytest.fixture
def make_extraction_reply():
    return extraction_reply
