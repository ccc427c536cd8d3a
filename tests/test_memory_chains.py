import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import json

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_record
from memoryweave.errors import EmbeddingProviderError, LanguageModelError, ValidationIssue
from memoryweave.records import ChainMetadata, RankedMemory
from memoryweave.services.memory_chains import (
    MemoryChainReasoner,
    build_chain_prompt,
    parse_json_array,
)


class FixedSearch:
    def __init__(self, ranked):
        self.ranked = list(ranked)
        self.queries = []

    def search(self, query, tenant_id, user_id=None, search_config=None, now=None):
        self.queries.append(query)
        return list(self.ranked)


def _ranked(memory, relevance):
    return RankedMemory(
        memory=memory,
        vector_score=relevance,
        keyword_score=relevance,
        temporal_score=1.0,
        relevance=relevance,
    )


@pytest.fixture
def trail(engine, tenant):
    contents = (
        "checkout conversion dropped 12 percent after the march release",
        "support tickets mention the new address form timing out",
        "team decided to roll back the address form to the previous version",
    )
    types = ("observation", "feedback", "decision")
    return [engine.store.create(text, kind, tenant) for text, kind in zip(contents, types)]


def _reasoner(engine, llm, ranked, **kwargs):
    return MemoryChainReasoner(engine.store, engine.graph, FixedSearch(ranked), llm, **kwargs)


def test_parse_json_array_accepts_fenced_answers():
    assert parse_json_array('```json\n[{"a": 1}]\n```') == [{"a": 1}]
    assert parse_json_array("[]") == []
    with pytest.raises(ValueError):
        parse_json_array('{"a": 1}')


def test_chain_prompt_names_query_and_limits():
    prompt = build_chain_prompt("why did checkout drop", [{"id": "m1"}], 3, 5)
    assert 'related to the query: "why did checkout drop"' in prompt
    assert "Create up to 3 memory chains" in prompt
    assert "Include between 2 and 5 memories" in prompt


def test_accepted_chain_is_stored_as_graph(engine, llm, tenant, trail):
    ranked = [_ranked(memory, 0.9) for memory in trail]
    llm.queue(
        json.dumps(
            [
                {
                    "name": "Address form regression",
                    "memory_ids": [trail[0].id, trail[1].id, trail[2].id],
                    "reasoning": "Conversion fell, users reported the form, the team rolled back.",
                    "confidence": 0.85,
                }
            ]
        )
    )
    reasoner = _reasoner(engine, llm, ranked)

    chains = reasoner.create_memory_chains("why did checkout drop", tenant)

    assert len(chains) == 1
    chain = chains[0]
    assert chain.memory_ids == [m.id for m in trail]
    assert chain.insight_id is not None

    follows = engine.graph.relationships_for([m.id for m in trail], tenant, ["follows"])
    assert {(e.source_id, e.target_id) for e in follows} == {
        (trail[0].id, trail[1].id),
        (trail[1].id, trail[2].id),
    }
    assert all(e.strength == pytest.approx(0.85) for e in follows)
    assert all(e.metadata == {"chain_id": chain.chain_id} for e in follows)

    insight = engine.store.get(chain.insight_id, tenant)
    assert insight.memory_type == "insight"
    assert insight.content == (
        "Address form regression\n\nConversion fell, users reported the form, the team rolled back."
    )
    metadata = insight.typed_metadata
    assert isinstance(metadata, ChainMetadata)
    assert metadata.chain_id == chain.chain_id
    assert metadata.memory_ids == tuple(m.id for m in trail)

    related = engine.graph.relationships_for([insight.id], tenant, ["related_to"])
    assert {e.target_id for e in related} == {m.id for m in trail}

    call = llm.calls[0]
    assert call["max_tokens"] == 1500
    assert call["temperature"] == 0.7


def test_proposals_are_filtered(engine, llm, tenant, trail):
    ranked = [_ranked(memory, 0.9) for memory in trail]
    llm.queue(
        json.dumps(
            [
                {"name": "Weak", "memory_ids": [trail[0].id, trail[1].id], "confidence": 0.4},
                {"name": "Lonely", "memory_ids": [trail[0].id, "unknown-id"], "confidence": 0.9},
                {"name": "", "memory_ids": [trail[0].id, trail[2].id], "confidence": 0.9},
                {
                    "name": "Duplicates collapse",
                    "memory_ids": [trail[2].id, trail[2].id, trail[0].id],
                    "confidence": 0.8,
                },
            ]
        )
    )
    reasoner = _reasoner(engine, llm, ranked)

    chains = reasoner.create_memory_chains("checkout", tenant, persist=False)

    assert [c.name for c in chains] == ["Duplicates collapse"]
    assert chains[0].memory_ids == [trail[2].id, trail[0].id]
    assert chains[0].insight_id is None
    assert engine.graph.relationships_for([m.id for m in trail], tenant) == []


def test_chain_length_and_count_caps(engine, llm, tenant, trail):
    ranked = [_ranked(memory, 0.9) for memory in trail]
    ids = [m.id for m in trail]
    llm.queue(
        json.dumps(
            [
                {"name": "First", "memory_ids": ids, "confidence": 0.9},
                {"name": "Second", "memory_ids": ids[:2], "confidence": 0.9},
            ]
        )
    )
    reasoner = _reasoner(engine, llm, ranked, max_chain_length=2, max_chains=1)

    chains = reasoner.create_memory_chains("checkout", tenant, persist=False)

    assert [c.name for c in chains] == ["First"]
    assert chains[0].memory_ids == ids[:2]


def test_low_relevance_candidates_are_not_sent(engine, llm, tenant, trail):
    ranked = [_ranked(trail[0], 0.95), _ranked(trail[1], 0.5), _ranked(trail[2], 0.69)]
    reasoner = _reasoner(engine, llm, ranked)
    assert reasoner.create_memory_chains("checkout", tenant) == []
    assert llm.calls == []


def test_unparseable_or_failing_model_yields_no_chains(engine, llm, tenant, trail):
    ranked = [_ranked(memory, 0.9) for memory in trail]
    reasoner = _reasoner(engine, llm, ranked)

    llm.queue("I could not find any chains, sorry.")
    assert reasoner.create_memory_chains("checkout", tenant) == []

    llm.queue(LanguageModelError("language model unavailable: status 500"))
    assert reasoner.create_memory_chains("checkout", tenant) == []


def test_empty_query_is_rejected(engine, llm, tenant):
    reasoner = _reasoner(engine, llm, [])
    with pytest.raises(ValidationIssue):
        reasoner.create_memory_chains("   ", tenant)


def test_contradictions_are_filtered_and_recorded(engine, llm, tenant):
    a = engine.store.create("the launch is scheduled for may 3", "decision", tenant)
    b = engine.store.create("the launch was moved to june 10", "decision", tenant)
    c = engine.store.create("the launch owner is priya", "observation", tenant)
    llm.queue(
        json.dumps(
            [
                {"memory1_id": a.id, "memory2_id": b.id, "explanation": "Dates differ", "confidence": 0.9},
                {"memory1_id": b.id, "memory2_id": a.id, "explanation": "Same pair", "confidence": 0.95},
                {"memory1_id": a.id, "memory2_id": c.id, "explanation": "Unrelated", "confidence": 0.3},
                {"memory1_id": a.id, "memory2_id": "ghost", "explanation": "Unknown", "confidence": 0.9},
            ]
        )
    )
    reasoner = _reasoner(engine, llm, [])

    found = reasoner.find_contradictions([a, b, c], tenant, record=True)

    assert len(found) == 1
    item = found[0]
    assert (item.memory1.id, item.memory2.id) == (a.id, b.id)
    assert item.relationship_id is not None
    edges = engine.graph.relationships_for([a.id], tenant, ["contradicts"])
    assert len(edges) == 1
    assert edges[0].metadata == {"explanation": "Dates differ"}
    assert edges[0].strength == pytest.approx(0.9)
    assert llm.calls[0]["max_tokens"] == 1000


def test_contradictions_need_two_memories(engine, llm, tenant):
    reasoner = _reasoner(engine, llm, [])
    assert reasoner.find_contradictions([make_record("a", "alone")], tenant) == []
    assert llm.calls == []


def test_contradiction_model_failure_yields_empty(engine, llm, tenant):
    a = engine.store.create("prices rise in april", "decision", tenant)
    b = engine.store.create("prices stay flat all year", "decision", tenant)
    llm.queue(LanguageModelError("language model unavailable: timeout"))
    reasoner = _reasoner(engine, llm, [])
    assert reasoner.find_contradictions([a, b], tenant) == []


def _two_chain_answer(trail):
    return json.dumps(
        [
            {
                "name": "Broken chain",
                "memory_ids": [trail[0].id, trail[1].id],
                "reasoning": "Conversion fell and users reported the form.",
                "confidence": 0.9,
            },
            {
                "name": "Rollback chain",
                "memory_ids": [trail[1].id, trail[2].id],
                "reasoning": "Reports led to the rollback.",
                "confidence": 0.8,
            },
        ]
    )


def test_insight_embedding_failure_writes_nothing_for_that_chain(
    engine, embedder, llm, tenant, trail, monkeypatch
):
    original_embed = embedder.embed

    def embed(text):
        if text.startswith("Broken chain"):
            raise EmbeddingProviderError("embedding provider unavailable: status 503")
        return original_embed(text)

    monkeypatch.setattr(embedder, "embed", embed)
    llm.queue(_two_chain_answer(trail))
    reasoner = _reasoner(engine, llm, [_ranked(memory, 0.9) for memory in trail])

    chains = reasoner.create_memory_chains("checkout", tenant)

    assert [c.name for c in chains] == ["Rollback chain"]
    follows = engine.graph.relationships_for([m.id for m in trail], tenant, ["follows"])
    assert [(e.source_id, e.target_id) for e in follows] == [(trail[1].id, trail[2].id)]
    insights = engine.store.list_memories(tenant, memory_types=["insight"])
    assert [m.id for m in insights] == [chains[0].insight_id]


def test_edge_write_failure_rolls_back_insight_and_path(engine, llm, tenant, trail, monkeypatch):
    import memoryweave.services.memory_store as memory_store_module

    real_upsert = memory_store_module.upsert_edges

    def upsert_then_fail(db, tenant_id, edges):
        real_upsert(db, tenant_id, edges)
        raise OperationalError("INSERT INTO memory_relationships", {}, Exception("database is locked"))

    monkeypatch.setattr(memory_store_module, "upsert_edges", upsert_then_fail)
    llm.queue(_two_chain_answer(trail))
    reasoner = _reasoner(engine, llm, [_ranked(memory, 0.9) for memory in trail])

    assert reasoner.create_memory_chains("checkout", tenant) == []
    assert engine.graph.relationships_for([m.id for m in trail], tenant) == []
    assert engine.store.list_memories(tenant, memory_types=["insight"]) == []
