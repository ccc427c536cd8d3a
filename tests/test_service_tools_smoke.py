import os

os.environ.setdefault("DB_BACKEND", "sqlite")

from memoryweave.services import memory_service


def test_service_tools_smoke(engine, tenant):
    stored = memory_service.memory_store(
        content="customer prefers invoices sent on the first business day",
        memory_type="preference",
        tenant_id=tenant,
        metadata={"account": "northwind"},
    )
    assert stored["status"] == "stored"
    memory_id = stored["memory"]["id"]

    fetched = memory_service.memory_get(memory_id, tenant)
    assert fetched["status"] == "ok"
    assert fetched["memory"]["metadata"] == {"account": "northwind"}

    other = memory_service.memory_store(
        content="northwind invoices go to the finance shared inbox",
        memory_type="observation",
        tenant_id=tenant,
    )
    other_id = other["memory"]["id"]

    search = memory_service.memory_search(
        query="customer prefers invoices sent on the first business day",
        tenant_id=tenant,
        min_score=0.0,
    )
    assert search["status"] == "ok"
    assert search["results"][0]["memory"]["id"] == memory_id

    updated = memory_service.memory_update(memory_id, tenant, importance_score=0.9)
    assert updated["status"] == "updated"
    assert updated["memory"]["importance_score"] == 0.9

    related = memory_service.memory_relate(memory_id, other_id, "related_to", tenant, strength=0.6)
    assert related["status"] == "created"
    again = memory_service.memory_relate(memory_id, other_id, "related_to", tenant, strength=0.8)
    assert again["status"] == "updated"
    edges = memory_service.memory_relationships(memory_id, tenant)
    assert edges["count"] == 1
    assert edges["relationships"][0]["strength"] == 0.8

    context = memory_service.memory_context(
        query="customer prefers invoices sent on the first business day",
        tenant_id=tenant,
        min_importance=0.0,
    )
    assert context["status"] == "ok"
    assert context["context_id"]
    assert memory_id in [item["id"] for item in context["memories"]]
    assert context["formatted"].startswith("RELEVANT MEMORIES (")

    feedback = memory_service.memory_context_feedback(
        context["context_id"],
        tenant,
        usefulness_score=0.9,
    )
    assert feedback["status"] == "updated"
    assert memory_id in feedback["importance_updates"]

    access = memory_service.memory_record_access(memory_id, tenant, access_type="apply")
    assert access["status"] == "recorded"
    outcome = memory_service.memory_access_outcome(access["access_id"], tenant, "positive", outcome_score=1.0)
    assert outcome["status"] == "updated"
    assert 0.0 <= outcome["importance_score"] <= 1.0

    scores = memory_service.memory_score(tenant, memory_ids=[memory_id, other_id])
    assert scores["count"] == 2

    deleted = memory_service.memory_delete(memory_id, tenant, cascade=True)
    assert deleted["status"] == "deleted"
    assert memory_service.memory_get(memory_id, tenant)["status"] == "not_found"
    assert memory_service.memory_relationships(other_id, tenant)["count"] == 0


def test_service_tools_report_errors(engine, tenant):
    bad_type = memory_service.memory_store(content="something", memory_type="rumour", tenant_id=tenant)
    assert bad_type["status"] == "error"
    assert bad_type["field"] == "memory_type"

    missing = memory_service.memory_update("does-not-exist", tenant, content="new text")
    assert missing["status"] == "not_found"

    no_tenant = memory_service.memory_search(query="anything", tenant_id="")
    assert no_tenant["status"] == "error"

    feedback = memory_service.memory_context_feedback("no-such-context", tenant, usefulness_score=0.5)
    assert feedback["status"] == "not_found"


def test_memory_walk_follows_edges_by_depth(engine, tenant):
    ids = [
        memory_service.memory_store(content=text, memory_type="decision", tenant_id=tenant)["memory"]["id"]
        for text in ("freeze the q3 roadmap", "move search work to q4", "hire a search engineer")
    ]
    memory_service.memory_relate(ids[0], ids[1], "follows", tenant)
    memory_service.memory_relate(ids[1], ids[2], "follows", tenant)

    walk = memory_service.memory_walk(ids[0], tenant, direction="outgoing")
    assert walk["status"] == "ok"
    assert walk["nodes"] == [{"id": ids[1], "depth": 1}, {"id": ids[2], "depth": 2}]

    shallow = memory_service.memory_walk(ids[0], tenant, max_depth=1)
    assert [node["id"] for node in shallow["nodes"]] == [ids[1]]

    backwards = memory_service.memory_walk(ids[2], tenant, direction="incoming")
    assert [node["id"] for node in backwards["nodes"]] == [ids[1], ids[0]]
    assert memory_service.memory_walk(ids[0], tenant, direction="incoming")["count"] == 0

    assert memory_service.memory_walk(ids[0], tenant, direction="sideways")["status"] == "error"
    assert memory_service.memory_walk(ids[0], tenant, max_depth=0)["status"] == "error"
    assert memory_service.memory_walk("does-not-exist", tenant)["status"] == "not_found"


def test_provider_status_reports_both_breakers():
    status = memory_service.provider_status()
    assert set(status) == {"embedding", "language_model"}
    assert "open" in status["embedding"]
