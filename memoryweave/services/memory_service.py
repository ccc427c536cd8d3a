"""
Memory engine facade: component wiring plus dict-returning service tools.

The tools validate input, delegate to the engine components and return plain
dicts with a ``status`` key. Validation problems come back as
``{"status": "error", ...}`` and missing records as ``{"status": "not_found"}``
via ``service_tool``; provider failures on the write path propagate.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

import memoryweave.config as config
from memoryweave.context import require_tenant_id_value
from memoryweave.errors import MemoryNotFoundError
from memoryweave.services.context_window import ContextWindowBuilder
from memoryweave.services.memory_chains import MemoryChainReasoner
from memoryweave.services.memory_context import ContextRequest, MemoryContextProvider
from memoryweave.services.memory_importance import ImportanceScorer
from memoryweave.services.memory_relationships import MemoryGraph
from memoryweave.services.memory_search import HybridSearch, HybridSearchConfig
from memoryweave.services.memory_shared import (
    MAX_LIST_ITEMS,
    MAX_QUERY_LENGTH,
    MAX_RESULT_LIMIT,
    _validate_id_list,
    _validate_limit,
    _validate_required_text,
    _validate_unit_interval,
    logger,
    service_tool,
)
from memoryweave.services.memory_store import MemoryStore
from memoryweave.services.memory_summarization import MemorySummarizer
from memoryweave.services.providers import (
    EmbeddingProvider,
    LanguageModelProvider,
    build_embedding_provider,
    build_language_model_provider,
    embedding_circuit_breaker,
    llm_circuit_breaker,
)

MAX_WALK_DEPTH = 10


@dataclass
class MemoryEngine:
    store: MemoryStore
    graph: MemoryGraph
    search: HybridSearch
    scorer: ImportanceScorer
    builder: ContextWindowBuilder
    contexts: MemoryContextProvider
    summarizer: MemorySummarizer
    chains: MemoryChainReasoner


def build_engine(
    embedder: EmbeddingProvider,
    llm: LanguageModelProvider,
    session_factory: Optional[Callable] = None,
    summary_llm: Optional[LanguageModelProvider] = None,
) -> MemoryEngine:
    store = MemoryStore(embedder, session_factory=session_factory)
    graph = MemoryGraph(session_factory=session_factory)
    search = HybridSearch(store, graph=graph)
    scorer = ImportanceScorer(store, graph)
    builder = ContextWindowBuilder()
    return MemoryEngine(
        store=store,
        graph=graph,
        search=search,
        scorer=scorer,
        builder=builder,
        contexts=MemoryContextProvider(store, search, scorer, builder, session_factory=session_factory),
        summarizer=MemorySummarizer(store, summary_llm or llm),
        chains=MemoryChainReasoner(store, graph, search, llm),
    )


_engine: Optional[MemoryEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> MemoryEngine:
    """Process-wide engine built from configuration on first use."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = build_engine(
                build_embedding_provider(),
                build_language_model_provider(),
                summary_llm=build_language_model_provider(config.LLM_SUMMARY_MODEL),
            )
            logger.info("memory_engine_initialized")
        return _engine


def set_engine(engine: Optional[MemoryEngine]) -> None:
    """Replace (or with None, reset) the process-wide engine."""
    global _engine
    with _engine_lock:
        _engine = engine


def _search_config(
    limit: Optional[int],
    min_score: Optional[float],
    vector_weight: Optional[float],
    keyword_weight: Optional[float],
) -> Optional[HybridSearchConfig]:
    overrides = {}
    if limit is not None:
        _validate_limit(limit, "limit", MAX_RESULT_LIMIT)
        overrides["max_results"] = limit
    if min_score is not None:
        _validate_unit_interval(min_score, "min_score")
        overrides["min_score"] = min_score
    if vector_weight is not None:
        _validate_unit_interval(vector_weight, "vector_weight")
        overrides["vector_weight"] = vector_weight
    if keyword_weight is not None:
        _validate_unit_interval(keyword_weight, "keyword_weight")
        overrides["keyword_weight"] = keyword_weight
    return HybridSearchConfig(**overrides) if overrides else None


# =============================================================================
# Memories
# =============================================================================

@service_tool
def memory_store(
    content: str,
    memory_type: str,
    tenant_id: str,
    user_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    importance_score: Optional[float] = None,
) -> dict:
    """
    Store a memory with its embedding.

    Args:
        content: Memory text
        memory_type: One of the supported memory types (e.g. "decision")
        tenant_id: Owning tenant
        user_id: Optional owning user
        metadata: Free-form JSON metadata
        importance_score: Initial importance (0.0-1.0)

    Returns:
        The stored memory
    """
    record = get_engine().store.create(
        content,
        memory_type,
        tenant_id,
        user_id=user_id,
        metadata=metadata,
        importance_score=importance_score,
    )
    return {"status": "stored", "memory": record.to_dict()}


@service_tool
def memory_get(memory_id: str, tenant_id: str, include_embedding: bool = False) -> dict:
    record = get_engine().store.get(memory_id, tenant_id)
    if record is None:
        raise MemoryNotFoundError(memory_id)
    return {"status": "ok", "memory": record.to_dict(include_embedding=include_embedding)}


@service_tool
def memory_update(
    memory_id: str,
    tenant_id: str,
    content: Optional[str] = None,
    memory_type: Optional[str] = None,
    metadata: Optional[dict] = None,
    importance_score: Optional[float] = None,
) -> dict:
    record = get_engine().store.update(
        memory_id,
        tenant_id,
        content=content,
        memory_type=memory_type,
        metadata=metadata,
        importance_score=importance_score,
    )
    return {"status": "updated", "memory": record.to_dict()}


@service_tool
def memory_delete(memory_id: str, tenant_id: str, cascade: bool = False) -> dict:
    get_engine().store.delete(memory_id, tenant_id, cascade=cascade)
    return {"status": "deleted", "id": memory_id, "cascade": cascade}


@service_tool
def memory_relate(
    source_id: str,
    target_id: str,
    relationship_type: str,
    tenant_id: str,
    strength: float = 1.0,
    metadata: Optional[dict] = None,
) -> dict:
    """Create or update a typed edge between two memories."""
    record, created = get_engine().graph.create_relationship(
        source_id,
        target_id,
        relationship_type,
        tenant_id,
        strength=strength,
        metadata=metadata,
    )
    return {"status": "created" if created else "updated", "relationship": record.to_dict()}


@service_tool
def memory_relationships(
    memory_id: str,
    tenant_id: str,
    relationship_types: Optional[List[str]] = None,
) -> dict:
    _validate_id_list(relationship_types, "relationship_types", MAX_LIST_ITEMS)
    edges = get_engine().graph.relationships_for([memory_id], tenant_id, relationship_types)
    return {"status": "ok", "count": len(edges), "relationships": [edge.to_dict() for edge in edges]}


@service_tool
def memory_walk(
    memory_id: str,
    tenant_id: str,
    max_depth: Optional[int] = None,
    relationship_types: Optional[List[str]] = None,
    direction: str = "both",
) -> dict:
    """
    Breadth-first walk of the relationship graph from one memory.

    Args:
        memory_id: Memory to start from
        tenant_id: Tenant that owns the graph
        max_depth: Hops to follow (defaults to GRAPH_MAX_DEPTH)
        relationship_types: Only follow these edge types
        direction: "outgoing", "incoming" or "both"

    Returns:
        Reached memory ids with their hop distance, nearest first
    """
    if max_depth is not None:
        _validate_limit(max_depth, "max_depth", MAX_WALK_DEPTH)
    _validate_id_list(relationship_types, "relationship_types", MAX_LIST_ITEMS)
    engine = get_engine()
    tenant_id = require_tenant_id_value(tenant_id)
    if engine.store.get(memory_id, tenant_id) is None:
        raise MemoryNotFoundError(memory_id)
    reached = engine.graph.walk(
        memory_id,
        tenant_id,
        max_depth=max_depth,
        relationship_types=relationship_types,
        direction=direction,
    )
    return {
        "status": "ok",
        "count": len(reached),
        "nodes": [{"id": node_id, "depth": depth} for node_id, depth in reached],
    }


# =============================================================================
# Retrieval
# =============================================================================

@service_tool
def memory_search(
    query: str,
    tenant_id: str,
    user_id: Optional[str] = None,
    limit: Optional[int] = None,
    min_score: Optional[float] = None,
    vector_weight: Optional[float] = None,
    keyword_weight: Optional[float] = None,
) -> dict:
    """
    Hybrid search over a tenant's memories.

    Args:
        query: Search query text
        tenant_id: Tenant to search
        user_id: Restrict to one user's memories
        limit: Maximum results
        min_score: Minimum relevance (0.0-1.0)
        vector_weight: Weight of semantic similarity
        keyword_weight: Weight of keyword overlap

    Returns:
        Ranked results with their sub-scores
    """
    _validate_required_text(query, "query", MAX_QUERY_LENGTH)
    search_config = _search_config(limit, min_score, vector_weight, keyword_weight)
    engine = get_engine()
    results = engine.search.search(query, tenant_id, user_id=user_id, search_config=search_config)
    if results:
        engine.store.record_accesses(
            [item.memory.id for item in results],
            tenant_id,
            access_type="search",
            user_id=user_id,
            context=query[:MAX_QUERY_LENGTH],
        )
    return {
        "status": "ok",
        "query": query,
        "count": len(results),
        "results": [item.to_dict() for item in results],
    }


@service_tool
def memory_related(
    memory_id: str,
    tenant_id: str,
    user_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> dict:
    engine = get_engine()
    tenant_id = require_tenant_id_value(tenant_id)
    if engine.store.get(memory_id, tenant_id) is None:
        raise MemoryNotFoundError(memory_id)
    search_config = _search_config(limit, None, None, None)
    results = engine.search.find_related_memories(
        memory_id,
        tenant_id,
        user_id=user_id,
        search_config=search_config,
    )
    return {"status": "ok", "count": len(results), "results": [item.to_dict() for item in results]}


@service_tool
def memory_score(
    tenant_id: str,
    memory_ids: Optional[List[str]] = None,
    persist: bool = False,
) -> dict:
    """Compute importance for the given memories, or the whole tenant when omitted."""
    _validate_id_list(memory_ids, "memory_ids", MAX_RESULT_LIMIT)
    engine = get_engine()
    if memory_ids:
        memories = engine.store.get_many(memory_ids, tenant_id)
    else:
        memories = engine.store.list_memories(tenant_id, limit=MAX_RESULT_LIMIT)
    scored = engine.scorer.score_and_sort(memories, tenant_id)
    written = engine.scorer.persist_scores(scored, tenant_id) if persist else 0
    return {
        "status": "ok",
        "count": len(scored),
        "persisted": written,
        "scores": [
            {
                "id": item.memory.id,
                "importance": round(item.importance, 6),
                "factors": item.factors.to_dict() if item.factors else None,
            }
            for item in scored
        ],
    }


@service_tool
def memory_context(
    query: str,
    tenant_id: str,
    user_id: Optional[str] = None,
    context_id: Optional[str] = None,
    max_tokens: Optional[int] = None,
    max_memories: Optional[int] = None,
    min_importance: Optional[float] = None,
    include_types: Optional[List[str]] = None,
    exclude_types: Optional[List[str]] = None,
    metadata_filters: Optional[dict] = None,
    grouped: bool = False,
) -> dict:
    """
    Assemble a token-budgeted context block for a prompt.

    Returns:
        The selected memories, budget accounting and the formatted prompt text
    """
    _validate_id_list(include_types, "include_types", MAX_LIST_ITEMS)
    _validate_id_list(exclude_types, "exclude_types", MAX_LIST_ITEMS)
    provider = get_engine().contexts
    assembled = provider.get_context(
        ContextRequest(
            query=query,
            tenant_id=tenant_id,
            user_id=user_id,
            context_id=context_id,
            max_tokens=max_tokens,
            max_memories=max_memories,
            min_importance=min_importance,
            include_types=tuple(include_types or ()),
            exclude_types=tuple(exclude_types or ()),
            metadata_filters=dict(metadata_filters or {}),
        )
    )
    payload = assembled.to_dict()
    payload["status"] = "degraded" if assembled.error else "ok"
    payload["formatted"] = provider.format_context_for_prompt(assembled, grouped=grouped)
    return payload


@service_tool
def memory_context_feedback(
    context_id: str,
    tenant_id: str,
    relevance_score: Optional[float] = None,
    usefulness_score: Optional[float] = None,
    feedback: Optional[str] = None,
) -> dict:
    updated = get_engine().contexts.update_context_with_feedback(
        context_id,
        tenant_id,
        relevance_score=relevance_score,
        usefulness_score=usefulness_score,
        feedback=feedback,
    )
    return {"status": "updated", "context_id": context_id, "importance_updates": updated}


# =============================================================================
# Access log
# =============================================================================

@service_tool
def memory_record_access(
    memory_id: str,
    tenant_id: str,
    access_type: str = "retrieve",
    user_id: Optional[str] = None,
    context: Optional[str] = None,
) -> dict:
    record = get_engine().store.record_access(
        memory_id,
        tenant_id,
        access_type=access_type,
        user_id=user_id,
        context=context,
    )
    return {"status": "recorded", "access_id": record.id, "memory_id": memory_id}


@service_tool
def memory_access_outcome(
    access_id: str,
    tenant_id: str,
    outcome: str,
    outcome_score: Optional[float] = None,
    recompute: bool = True,
) -> dict:
    """Record how an accessed memory worked out; optionally fold it into importance."""
    store = get_engine().store
    record = store.update_access_outcome(access_id, tenant_id, outcome, outcome_score=outcome_score)
    payload = {"status": "updated", "access_id": record.id, "outcome": record.outcome}
    if recompute:
        payload["importance_score"] = store.recompute_importance_from_access(record.memory_id, tenant_id)
    return payload


# =============================================================================
# Enrichment
# =============================================================================

@service_tool
def memory_summarize(tenant_id: str, user_id: Optional[str] = None) -> dict:
    report = get_engine().summarizer.summarize_all(tenant_id, user_id=user_id)
    payload = report.to_dict()
    payload["status"] = "ok" if config.SUMMARIZATION_ENABLED else "disabled"
    return payload


@service_tool
def memory_chains(query: str, tenant_id: str, user_id: Optional[str] = None, persist: bool = True) -> dict:
    chains = get_engine().chains.create_memory_chains(query, tenant_id, user_id=user_id, persist=persist)
    return {"status": "ok", "count": len(chains), "chains": [chain.to_dict() for chain in chains]}


@service_tool
def memory_contradictions(memory_ids: List[str], tenant_id: str, record: bool = False) -> dict:
    _validate_id_list(memory_ids, "memory_ids", MAX_RESULT_LIMIT)
    engine = get_engine()
    memories = engine.store.get_many(memory_ids or [], tenant_id)
    found = engine.chains.find_contradictions(memories, tenant_id, record=record)
    return {"status": "ok", "count": len(found), "contradictions": [item.to_dict() for item in found]}


def provider_status() -> dict:
    return {
        "embedding": embedding_circuit_breaker.status(),
        "language_model": llm_circuit_breaker.status(),
    }


__all__ = [
    "MemoryEngine",
    "build_engine",
    "get_engine",
    "set_engine",
    "memory_store",
    "memory_get",
    "memory_update",
    "memory_delete",
    "memory_relate",
    "memory_relationships",
    "memory_walk",
    "memory_search",
    "memory_related",
    "memory_score",
    "memory_context",
    "memory_context_feedback",
    "memory_record_access",
    "memory_access_outcome",
    "memory_summarize",
    "memory_chains",
    "memory_contradictions",
    "provider_status",
]
