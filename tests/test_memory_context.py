import os

os.environ.setdefault("DB_BACKEND", "sqlite")

from datetime import timedelta

import pytest

from memoryweave.errors import ContextNotFoundError, ValidationIssue
from memoryweave.models import MemoryAccess, MemoryContext, utcnow
from memoryweave.services.context_window import ContextWindowBuilder, ContextWindowConfig, EMPTY_CONTEXT_TEXT
from memoryweave.services.memory_context import ContextRequest, MemoryContextProvider
from memoryweave.services.memory_search import HybridSearchConfig


@pytest.fixture
def provider(engine, server_db):
    builder = ContextWindowBuilder(ContextWindowConfig(min_importance_threshold=0.0, use_compression=False))
    return MemoryContextProvider(
        engine.store,
        engine.search,
        engine.scorer,
        builder,
        session_factory=server_db,
        search_config=HybridSearchConfig(min_score=0.2),
    )


@pytest.fixture
def billing_memories(engine, tenant):
    return {
        "decision": engine.store.create(
            "Billing moves to annual invoices for enterprise accounts",
            "decision",
            tenant,
            metadata={"team": "finance"},
        ),
        "feedback": engine.store.create(
            "Enterprise accounts asked for annual invoices in billing",
            "feedback",
            tenant,
            metadata={"team": "support"},
        ),
        "other": engine.store.create("Office plants need watering on Mondays", "observation", tenant),
    }


def test_get_context_selects_persists_and_logs_access(provider, billing_memories, tenant, db_session):
    result = provider.get_context(ContextRequest(query="annual billing invoices enterprise", tenant_id=tenant))

    ids = set(result.window.memory_ids)
    assert ids == {billing_memories["decision"].id, billing_memories["feedback"].id}
    assert result.error is None
    assert result.context_id is not None
    assert result.expires_at > utcnow() + timedelta(days=29)

    row = db_session.query(MemoryContext).filter(MemoryContext.id == result.context_id).one()
    assert row.memory_count == 2
    assert row.token_count == result.window.total_tokens
    assert [item.memory_id for item in row.items] == result.window.memory_ids

    accesses = db_session.query(MemoryAccess).filter(MemoryAccess.context == "context_window").all()
    assert {a.memory_id for a in accesses} == ids


def test_type_and_metadata_filters(provider, billing_memories, tenant):
    query = "annual billing invoices enterprise"
    included = provider.get_context(ContextRequest(query=query, tenant_id=tenant, include_types=("decision",)))
    assert included.window.memory_ids == [billing_memories["decision"].id]

    excluded = provider.get_context(ContextRequest(query=query, tenant_id=tenant, exclude_types=("decision",)))
    assert excluded.window.memory_ids == [billing_memories["feedback"].id]

    by_team = provider.get_context(
        ContextRequest(query=query, tenant_id=tenant, metadata_filters={"team": "support"})
    )
    assert by_team.window.memory_ids == [billing_memories["feedback"].id]


def test_request_overrides_budget(provider, billing_memories, tenant):
    result = provider.get_context(
        ContextRequest(query="annual billing invoices enterprise", tenant_id=tenant, max_memories=1)
    )
    assert result.window.memory_count == 1
    assert result.window.truncated is True


def test_persisted_context_is_reused(provider, billing_memories, tenant):
    first = provider.get_context(ContextRequest(query="annual billing invoices enterprise", tenant_id=tenant))
    again = provider.get_context(
        ContextRequest(query="something else entirely", tenant_id=tenant, context_id=first.context_id)
    )
    assert again.reused is True
    assert again.context_id == first.context_id
    assert again.window.memory_ids == first.window.memory_ids
    assert again.window.query == "annual billing invoices enterprise"


def test_failure_returns_empty_context(engine, server_db, tenant):
    class BrokenSearch:
        def search(self, *args, **kwargs):
            raise RuntimeError("index offline")

    provider = MemoryContextProvider(
        engine.store, BrokenSearch(), engine.scorer, engine.builder, session_factory=server_db
    )
    result = provider.get_context(ContextRequest(query="anything at all", tenant_id=tenant))
    assert result.window.memories == ()
    assert result.error == "RuntimeError"
    assert provider.format_context_for_prompt(result) == EMPTY_CONTEXT_TEXT


def test_invalid_request_still_raises(provider, tenant):
    with pytest.raises(ValidationIssue):
        provider.get_context(ContextRequest(query="", tenant_id=tenant))
    with pytest.raises(ValidationIssue):
        provider.get_context(ContextRequest(query="ok", tenant_id=tenant, include_types=("nonsense",)))


def test_feedback_updates_context_and_member_importance(provider, billing_memories, tenant, db_session):
    result = provider.get_context(ContextRequest(query="annual billing invoices enterprise", tenant_id=tenant))

    updated = provider.update_context_with_feedback(
        result.context_id, tenant, relevance_score=0.4, usefulness_score=0.9, feedback="spot on"
    )

    assert set(updated) == set(result.window.memory_ids)
    row = db_session.query(MemoryContext).filter(MemoryContext.id == result.context_id).one()
    assert row.usefulness_score == 0.9
    assert row.feedback == "spot on"
    decision = provider.store.get(billing_memories["decision"].id, tenant)
    assert decision.importance_score == pytest.approx(updated[decision.id])

    with pytest.raises(ContextNotFoundError):
        provider.update_context_with_feedback("missing", tenant, relevance_score=0.5)


def test_feedback_without_scores_leaves_importance(provider, billing_memories, tenant):
    result = provider.get_context(ContextRequest(query="annual billing invoices enterprise", tenant_id=tenant))
    assert provider.update_context_with_feedback(result.context_id, tenant, feedback="noted") == {}


def test_purge_expired_contexts(provider, billing_memories, tenant):
    result = provider.get_context(ContextRequest(query="annual billing invoices enterprise", tenant_id=tenant))
    assert provider.purge_expired_contexts(tenant) == 0
    assert provider.purge_expired_contexts(tenant, now=utcnow() + timedelta(days=31)) == 1
    assert provider.load_context(result.context_id, tenant) is None


def test_grouped_prompt_format(provider, billing_memories, tenant):
    result = provider.get_context(ContextRequest(query="annual billing invoices enterprise", tenant_id=tenant))
    text = provider.format_context_for_prompt(result, grouped=True)
    assert text.startswith("### Relevant Context\n\n")
    assert "## Decision\n" in text
    assert "## Feedback\n" in text
    assert "- Billing moves to annual invoices for enterprise accounts" in text


def test_contact_preference_scenario(engine, server_db, tenant):
    primary = engine.store.create(
        "Customer prefers email contact", "preference", tenant, metadata={"importance": 0.9}
    )
    secondary = engine.store.create("This customer prefers email over phone calls", "preference", tenant)
    maintenance = engine.store.create("Server maintenance window is Sunday at 2am", "observation", tenant)
    search_config = HybridSearchConfig(min_score=0.0)
    query = "how should I contact this customer?"

    ranked = engine.search.search(query, tenant, search_config=search_config)
    ids = [item.memory.id for item in ranked]
    assert set(ids[:2]) == {primary.id, secondary.id}
    assert maintenance.id not in ids[:2]

    provider = MemoryContextProvider(
        engine.store,
        engine.search,
        engine.scorer,
        ContextWindowBuilder(ContextWindowConfig(min_importance_threshold=0.0)),
        session_factory=server_db,
        search_config=search_config,
    )
    result = provider.get_context(
        ContextRequest(query=query, tenant_id=tenant, max_tokens=50, max_memories=1)
    )
    assert result.error is None
    assert result.window.memory_ids == [primary.id]
    assert result.window.total_tokens <= 50
