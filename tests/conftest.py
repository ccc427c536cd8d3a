import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")
os.environ.setdefault("LLM_PROVIDER", "none")
os.environ.setdefault("MEMORYWEAVE_TENANCY_MODE", "required")

import re
from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from memoryweave.db import DB, create_db_engine
from memoryweave.errors import EmbeddingProviderError, LanguageModelError
from memoryweave.models import Base, utcnow
from memoryweave.records import MemoryRecord
from memoryweave.services import memory_service


class FakeEmbedder:
    """Bag-of-words vectors: each distinct token gets its own dimension."""

    def __init__(self, dim: int = 512):
        self.dim = dim
        self.fail = False
        self.calls = []
        self._vocab = {}

    def embed(self, text):
        self.calls.append(text)
        if self.fail:
            raise EmbeddingProviderError("embedding provider unavailable: test")
        vector = [0.0] * self.dim
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            index = self._vocab.setdefault(token, len(self._vocab)) % self.dim
            vector[index] += 1.0
        return vector


class ScriptedLLM:
    """Returns queued responses in order; queued exceptions are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def complete(self, prompt, system=None, max_tokens=None, temperature=None):
        self.calls.append(
            {"prompt": prompt, "system": system, "max_tokens": max_tokens, "temperature": temperature}
        )
        if not self.responses:
            raise LanguageModelError("language model unavailable: no scripted response")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def server_db(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'memoryweave-test.db'}")
    Base.metadata.create_all(engine)
    session_factory = sessionmaker(bind=engine)
    previous = (DB.engine, DB.SessionLocal)
    DB.engine = engine
    DB.SessionLocal = session_factory
    try:
        yield session_factory
    finally:
        DB.engine, DB.SessionLocal = previous
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    session = server_db()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant():
    return "tenant-acme"


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def engine(server_db, embedder, llm):
    built = memory_service.build_engine(embedder, llm, session_factory=server_db)
    memory_service.set_engine(built)
    try:
        yield built
    finally:
        memory_service.set_engine(None)


def make_record(
    memory_id,
    content,
    memory_type="observation",
    importance_score=0.5,
    metadata=None,
    embedding=None,
    age_days=0.0,
    tenant_id="tenant-acme",
):
    created = utcnow() - timedelta(days=age_days)
    return MemoryRecord(
        id=memory_id,
        tenant_id=tenant_id,
        content=content,
        memory_type=memory_type,
        importance_score=importance_score,
        metadata=dict(metadata or {}),
        embedding=tuple(embedding) if embedding is not None else None,
        created_at=created,
        updated_at=created,
    )
