import os

os.environ.setdefault("DB_BACKEND", "sqlite")

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_record
from memoryweave.errors import LanguageModelError, ValidationIssue
from memoryweave.models import utcnow
from memoryweave.records import SummaryMetadata
from memoryweave.services.memory_summarization import (
    MemoryCluster,
    SummarizationConfig,
    build_summary_prompt,
    group_similar_memories,
)

POSTGRES_DECISIONS = (
    "team decided to use postgresql for the main production database cluster",
    "team decided to use postgresql for the main production database service",
    "team decided to use postgresql for the primary production database cluster",
)

LATENCY_OBSERVATIONS = (
    "checkout latency spikes every night during the batch export job",
    "checkout latency spikes every night during the nightly export job",
    "checkout latency spikes every evening during the batch export job",
)


def _later():
    return utcnow() + timedelta(days=2)


def test_grouping_partitions_by_type_and_similarity():
    memories = [
        make_record("a", "x", memory_type="decision", embedding=[1.0, 0.0, 0.0]),
        make_record("b", "x", memory_type="decision", embedding=[0.99, 0.1, 0.0]),
        make_record("c", "x", memory_type="decision", embedding=[0.0, 1.0, 0.0]),
        make_record("d", "x", memory_type="observation", embedding=[1.0, 0.0, 0.0]),
        make_record("e", "x", memory_type="observation"),
    ]
    clusters = group_similar_memories(memories, 0.8)
    groups = sorted(sorted(c.memory_ids) for c in clusters)
    assert groups == [["a", "b"], ["c"], ["d"]]
    pair = next(c for c in clusters if len(c) == 2)
    assert pair.centroid == pytest.approx((0.995, 0.05, 0.0))


def test_grouping_is_stable_across_runs():
    memories = [
        make_record("a", "x", memory_type="decision", embedding=[1.0, 0.0, 0.0]),
        make_record("b", "x", memory_type="decision", embedding=[0.9, 0.3, 0.0]),
        make_record("c", "x", memory_type="decision", embedding=[0.6, 0.8, 0.0]),
        make_record("d", "x", memory_type="decision", embedding=[0.0, 1.0, 0.1]),
        make_record("e", "x", memory_type="observation", embedding=[0.0, 0.0, 1.0]),
    ]
    first = [tuple(c.memory_ids) for c in group_similar_memories(memories, 0.8)]
    second = [tuple(c.memory_ids) for c in group_similar_memories(list(memories), 0.8)]
    shuffled = [tuple(c.memory_ids) for c in group_similar_memories(list(reversed(memories)), 0.8)]
    assert first == second
    assert sorted(map(sorted, first)) == sorted(map(sorted, shuffled))


def test_prompt_carries_type_focus_and_numbered_items():
    memories = [make_record("a", "first"), make_record("b", "second")]
    prompt = build_summary_prompt(memories, "decision", 500)
    assert prompt.startswith(
        "Summarize the following related information into a concise, informative summary "
        "of maximum 500 characters. Focus on the key decisions, their rationale, and outcomes."
    )
    assert prompt.endswith("\n\nInformation to summarize:\n\n[1] first\n[2] second")
    assert "Focus on the key points and their significance." in build_summary_prompt(memories, "other", 10)


def test_config_validation():
    with pytest.raises(ValidationIssue):
        SummarizationConfig(min_memories_for_summary=1)
    with pytest.raises(ValidationIssue):
        SummarizationConfig(max_memories_per_summary=2, min_memories_for_summary=3)


def test_near_duplicate_decisions_become_one_summary(engine, llm, tenant):
    originals = [engine.store.create(text, "decision", tenant) for text in POSTGRES_DECISIONS]
    engine.store.create("hire two backend engineers next quarter", "decision", tenant)
    llm.queue("The team standardised on PostgreSQL for production databases.")

    report = engine.summarizer.summarize_all(tenant, now=_later())

    assert report.total_memories == 4
    assert report.total_summaries == 1
    assert report.errors == ()
    summary = engine.store.get(report.summary_ids[0], tenant)
    assert summary.memory_type == "decision"
    assert summary.importance_score == 0.8
    metadata = summary.typed_metadata
    assert isinstance(metadata, SummaryMetadata)
    assert metadata.summarized_count == 3
    assert set(metadata.original_memory_ids) == {m.id for m in originals}

    edges = engine.graph.relationships_for([summary.id], tenant, ["summarizes"])
    assert len(edges) == 3
    assert {e.target_id for e in edges} == {m.id for m in originals}
    for original in originals:
        stored = engine.store.get(original.id, tenant)
        assert stored.summary_id == summary.id
        assert stored.metadata["summary_ids"] == [summary.id]

    call = llm.calls[0]
    assert call["system"] == "You are an AI assistant that creates concise, informative summaries."
    assert call["max_tokens"] == 125
    assert call["temperature"] == 0.3


def test_second_run_does_not_resummarize(engine, llm, tenant):
    for text in POSTGRES_DECISIONS:
        engine.store.create(text, "decision", tenant)
    llm.queue("PostgreSQL chosen for production.")
    engine.summarizer.summarize_all(tenant, now=_later())

    report = engine.summarizer.summarize_all(tenant, now=_later())
    assert report.total_summaries == 0
    assert len(llm.calls) == 1


def test_recent_memories_are_left_alone(engine, llm, tenant):
    for text in POSTGRES_DECISIONS:
        engine.store.create(text, "decision", tenant)
    report = engine.summarizer.summarize_all(tenant)
    assert report.total_memories == 0
    assert llm.calls == []


def test_summary_is_truncated_to_max_length(engine, llm, tenant):
    for text in POSTGRES_DECISIONS:
        engine.store.create(text, "decision", tenant)
    llm.queue("s" * 900)
    report = engine.summarizer.summarize_all(tenant, now=_later())
    summary = engine.store.get(report.summary_ids[0], tenant)
    assert len(summary.content) == 500


def test_failing_cluster_does_not_block_others(engine, llm, tenant):
    for text in POSTGRES_DECISIONS:
        engine.store.create(text, "decision", tenant)
    observations = [engine.store.create(text, "observation", tenant) for text in LATENCY_OBSERVATIONS]
    llm.queue(LanguageModelError("language model unavailable: status 503"), "Nightly export slows checkout.")

    report = engine.summarizer.summarize_all(tenant, now=_later())

    assert report.total_summaries == 1
    assert len(report.errors) == 1
    assert report.errors[0].startswith("decision")
    summary = engine.store.get(report.summary_ids[0], tenant)
    assert summary.memory_type == "observation"
    assert set(summary.typed_metadata.original_memory_ids) == {m.id for m in observations}


def test_summarize_cluster_rejects_small_clusters(engine, tenant):
    record = make_record("a", "only one", embedding=[1.0])
    cluster = MemoryCluster(memory_type="observation", memories=(record,), centroid=(1.0,))
    with pytest.raises(ValidationIssue):
        engine.summarizer.summarize_cluster(cluster, tenant)


def test_disabled_summarization_is_a_no_op(engine, llm, tenant, monkeypatch):
    import memoryweave.config as config

    for text in POSTGRES_DECISIONS:
        engine.store.create(text, "decision", tenant)
    monkeypatch.setattr(config, "SUMMARIZATION_ENABLED", False)
    report = engine.summarizer.summarize_all(tenant, now=_later())
    assert report.total_summaries == 0
    assert llm.calls == []


def test_failed_edge_write_leaves_no_summary_behind(engine, llm, tenant, monkeypatch):
    import memoryweave.services.memory_store as memory_store_module

    originals = [engine.store.create(text, "decision", tenant) for text in POSTGRES_DECISIONS]
    real_upsert = memory_store_module.upsert_edges
    attempts = []

    def locked_once(db, tenant_id, edges):
        attempts.append(len(edges))
        if len(attempts) == 1:
            raise OperationalError("INSERT INTO memory_relationships", {}, Exception("database is locked"))
        return real_upsert(db, tenant_id, edges)

    monkeypatch.setattr(memory_store_module, "upsert_edges", locked_once)
    llm.queue("PostgreSQL chosen for production.", "PostgreSQL chosen for production.")

    first = engine.summarizer.summarize_all(tenant, now=_later())
    assert first.total_summaries == 0
    assert len(first.errors) == 1
    assert {m.id for m in engine.store.list_memories(tenant)} == {m.id for m in originals}
    assert engine.graph.relationships_for([m.id for m in originals], tenant) == []

    second = engine.summarizer.summarize_all(tenant, now=_later())
    assert second.total_summaries == 1
    summaries = [
        m for m in engine.store.list_memories(tenant) if isinstance(m.typed_metadata, SummaryMetadata)
    ]
    assert [m.id for m in summaries] == list(second.summary_ids)
    for original in originals:
        assert engine.store.get(original.id, tenant).summary_id == second.summary_ids[0]
