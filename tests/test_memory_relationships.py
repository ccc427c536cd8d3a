import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from memoryweave.errors import MemoryNotFoundError, MemoryRelationshipNotFoundError, ValidationIssue
from memoryweave.services.memory_relationships import EdgeSpec


def _memories(engine, tenant, count):
    return [engine.store.create(f"Memory number {i}", "observation", tenant) for i in range(count)]


def test_create_relationship_is_an_upsert(engine, tenant):
    a, b = _memories(engine, tenant, 2)
    first, created = engine.graph.create_relationship(a.id, b.id, "supports", tenant, strength=0.4)
    assert created is True
    second, created_again = engine.graph.create_relationship(
        a.id, b.id, "supports", tenant, strength=0.9, metadata={"note": "stronger"}
    )
    assert created_again is False
    assert second.id == first.id
    assert second.strength == 0.9
    assert second.metadata == {"note": "stronger"}
    assert len(engine.graph.relationships_for([a.id], tenant)) == 1


def test_distinct_types_are_distinct_edges(engine, tenant):
    a, b = _memories(engine, tenant, 2)
    engine.graph.create_relationship(a.id, b.id, "supports", tenant)
    engine.graph.create_relationship(a.id, b.id, "caused", tenant)
    assert len(engine.graph.relationships_for([a.id], tenant)) == 2
    assert len(engine.graph.relationships_for([a.id], tenant, ["caused"])) == 1


def test_relationship_validation(engine, tenant):
    (a,) = _memories(engine, tenant, 1)
    with pytest.raises(ValidationIssue):
        engine.graph.create_relationship(a.id, a.id, "related_to", tenant)
    with pytest.raises(ValidationIssue):
        engine.graph.create_relationship(a.id, "other", "friends_with", tenant)
    with pytest.raises(ValidationIssue):
        engine.graph.create_relationship(a.id, "other", "related_to", tenant, strength=2.0)
    with pytest.raises(MemoryNotFoundError):
        engine.graph.create_relationship(a.id, "missing", "related_to", tenant)


def test_batch_creation_dedupes(engine, tenant):
    a, b, c = _memories(engine, tenant, 3)
    written = engine.graph.create_relationships(
        [
            EdgeSpec(a.id, b.id, "follows"),
            EdgeSpec(b.id, c.id, "follows"),
            EdgeSpec(a.id, b.id, "follows", strength=0.5),
        ],
        tenant,
        batch_size=1,
    )
    assert written == 2
    edges = {(e.source_id, e.target_id): e for e in engine.graph.relationships_for([a.id, b.id, c.id], tenant)}
    assert edges[(a.id, b.id)].strength == 0.5


def test_neighbors_and_edge_counts(engine, tenant):
    a, b, c = _memories(engine, tenant, 3)
    engine.graph.create_relationship(a.id, b.id, "related_to", tenant)
    engine.graph.create_relationship(c.id, a.id, "caused", tenant)
    assert set(engine.graph.neighbors(a.id, tenant)) == {b.id, c.id}
    assert engine.graph.count_edges([a.id, b.id, c.id], tenant) == {a.id: 2, b.id: 1, c.id: 1}


def test_walk_terminates_on_cycles(engine, tenant):
    a, b, c, d = _memories(engine, tenant, 4)
    engine.graph.create_relationship(a.id, b.id, "follows", tenant)
    engine.graph.create_relationship(b.id, c.id, "follows", tenant)
    engine.graph.create_relationship(c.id, a.id, "follows", tenant)
    engine.graph.create_relationship(c.id, d.id, "follows", tenant)

    visited = engine.graph.walk(a.id, tenant, max_depth=10, direction="outgoing")
    assert visited == [(b.id, 1), (c.id, 2), (d.id, 3)]

    shallow = engine.graph.walk(a.id, tenant, max_depth=1, direction="outgoing")
    assert shallow == [(b.id, 1)]


def test_walk_rejects_bad_direction(engine, tenant):
    (a,) = _memories(engine, tenant, 1)
    with pytest.raises(ValidationIssue):
        engine.graph.walk(a.id, tenant, direction="sideways")


def test_delete_relationship(engine, tenant):
    a, b = _memories(engine, tenant, 2)
    edge, _ = engine.graph.create_relationship(a.id, b.id, "related_to", tenant)
    engine.graph.delete_relationship(edge.id, tenant)
    assert engine.graph.relationships_for([a.id], tenant) == []
    with pytest.raises(MemoryRelationshipNotFoundError):
        engine.graph.delete_relationship(edge.id, tenant)
