"""
Hybrid memory search: semantic similarity, keyword overlap and recency.

relevance = (vector * vector_weight + keyword * keyword_weight) * temporal

The embedding call is the only network hop. If it fails the search still
answers from keywords alone, with the keyword score carrying the full
semantic weight so the threshold stays meaningful.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import memoryweave.config as config
from memoryweave.errors import EmbeddingProviderError, ValidationIssue
from memoryweave.models import as_utc, utcnow
from memoryweave.records import MemoryRecord, RankedMemory
from memoryweave.services.memory_relationships import MemoryGraph
from memoryweave.services.memory_shared import (
    MAX_QUERY_LENGTH,
    _validate_required_text,
    logger,
)
from memoryweave.services.memory_store import MemoryStore
from memoryweave.services.similarity import BruteForceIndex, SimilarityIndex

MIN_TERM_LENGTH = 3


@dataclass(frozen=True)
class HybridSearchConfig:
    """Ranking weights and candidate bounds for one search.

    Only the ``vector_candidate_limit`` newest embedded memories are scored
    semantically, and at most ``keyword_candidate_limit`` keyword matches are
    fetched (most matched terms first, then newest). Memories outside both
    pools are not ranked; raise the limits for tenants with larger stores.
    """

    vector_weight: float = field(default_factory=lambda: config.SEARCH_VECTOR_WEIGHT)
    keyword_weight: float = field(default_factory=lambda: config.SEARCH_KEYWORD_WEIGHT)
    min_score: float = field(default_factory=lambda: config.SEARCH_MIN_SCORE)
    max_results: int = field(default_factory=lambda: config.SEARCH_MAX_RESULTS)
    use_temporal_weighting: bool = field(default_factory=lambda: config.SEARCH_TEMPORAL_WEIGHTING)
    temporal_decay: float = field(default_factory=lambda: config.SEARCH_TEMPORAL_DECAY)
    vector_candidate_limit: int = field(default_factory=lambda: config.SEARCH_VECTOR_CANDIDATE_LIMIT)
    keyword_candidate_limit: int = field(default_factory=lambda: config.SEARCH_KEYWORD_CANDIDATE_LIMIT)

    def __post_init__(self):
        for name in ("vector_weight", "keyword_weight", "temporal_decay"):
            if getattr(self, name) < 0:
                raise ValidationIssue(f"{name} must be >= 0", field=name, error_type="out_of_range")
        if self.vector_weight + self.keyword_weight > 1.0 + 1e-9:
            raise ValidationIssue(
                "vector_weight + keyword_weight must not exceed 1",
                field="vector_weight",
                error_type="out_of_range",
            )
        if self.max_results < 1:
            raise ValidationIssue("max_results must be >= 1", field="max_results", error_type="out_of_range")
        for name in ("vector_candidate_limit", "keyword_candidate_limit"):
            if getattr(self, name) < 1:
                raise ValidationIssue(f"{name} must be >= 1", field=name, error_type="out_of_range")


def extract_terms(query: str) -> List[str]:
    """Lowercased whitespace tokens longer than two characters, first occurrence kept."""
    terms = [term for term in query.lower().split() if len(term) >= MIN_TERM_LENGTH]
    return list(dict.fromkeys(terms))


def keyword_score(content: str, terms: Sequence[str]) -> float:
    if not terms:
        return 0.0
    text = content.lower()
    matched = sum(1 for term in terms if term in text)
    return matched / len(terms)


def temporal_score(created_at: Optional[datetime], decay: float, now: datetime) -> float:
    if created_at is None:
        return 1.0
    age_days = max(0.0, (now - as_utc(created_at)) / timedelta(days=1))
    return math.exp(-decay * age_days)


class HybridSearch:
    def __init__(
        self,
        store: MemoryStore,
        graph: Optional[MemoryGraph] = None,
        index: Optional[SimilarityIndex] = None,
        default_config: Optional[HybridSearchConfig] = None,
    ):
        self.store = store
        self.graph = graph
        self.index = index or BruteForceIndex()
        self.default_config = default_config

    def _config(self, override: Optional[HybridSearchConfig]) -> HybridSearchConfig:
        return override or self.default_config or HybridSearchConfig()

    def _vector_scores(
        self,
        query: str,
        candidates: Sequence[MemoryRecord],
        tenant_id: str,
    ) -> Optional[Dict[str, float]]:
        """Cosine scores per candidate, or None when the query cannot be embedded."""
        try:
            query_vector = self.store.embedder.embed(query)
        except EmbeddingProviderError as exc:
            logger.warning(
                "hybrid_search_degraded",
                extra={"tenant_id": tenant_id, "reason": str(exc), "mode": "keyword_only"},
            )
            return None
        vectors = {memory.id: memory.embedding for memory in candidates if memory.embedding}
        return self.index.score(query_vector, vectors)

    def search(
        self,
        query: str,
        tenant_id: str,
        user_id: Optional[str] = None,
        search_config: Optional[HybridSearchConfig] = None,
        candidate_ids: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> List[RankedMemory]:
        _validate_required_text(query, "query", MAX_QUERY_LENGTH)
        cfg = self._config(search_config)
        now = now or utcnow()
        terms = extract_terms(query)

        if candidate_ids is not None:
            subset = self.store.get_many(candidate_ids, tenant_id)
            if user_id:
                subset = [memory for memory in subset if memory.user_id == user_id]
            vector_candidates = subset
            keyword_candidates = [m for m in subset if keyword_score(m.content, terms) > 0]
        else:
            vector_candidates = self.store.list_memories(
                tenant_id,
                user_id=user_id,
                with_embeddings_only=True,
                limit=cfg.vector_candidate_limit,
            )
            keyword_candidates = self.store.keyword_candidates(
                tenant_id,
                terms,
                user_id=user_id,
                limit=cfg.keyword_candidate_limit,
            )

        vector_scores = self._vector_scores(query, vector_candidates, tenant_id)
        vector_weight = cfg.vector_weight
        keyword_weight = cfg.keyword_weight
        if vector_scores is None:
            vector_scores = {}
            keyword_weight = cfg.vector_weight + cfg.keyword_weight
            vector_weight = 0.0

        memories: Dict[str, MemoryRecord] = {}
        for memory in vector_candidates:
            if memory.id in vector_scores:
                memories[memory.id] = memory
        for memory in keyword_candidates:
            memories.setdefault(memory.id, memory)

        ranked: List[RankedMemory] = []
        for memory_id, memory in memories.items():
            vector = max(0.0, vector_scores.get(memory_id, 0.0))
            keyword = keyword_score(memory.content, terms)
            temporal = (
                temporal_score(memory.created_at, cfg.temporal_decay, now)
                if cfg.use_temporal_weighting
                else 1.0
            )
            relevance = (vector * vector_weight + keyword * keyword_weight) * temporal
            ranked.append(
                RankedMemory(
                    memory=memory,
                    vector_score=vector,
                    keyword_score=keyword,
                    temporal_score=temporal,
                    relevance=relevance,
                )
            )

        ranked.sort(key=lambda item: (-item.relevance, item.memory.id))
        results = [item for item in ranked if item.relevance >= cfg.min_score]
        return results[: cfg.max_results]

    def find_related_memories(
        self,
        memory_id: str,
        tenant_id: str,
        user_id: Optional[str] = None,
        search_config: Optional[HybridSearchConfig] = None,
        now: Optional[datetime] = None,
    ) -> List[RankedMemory]:
        """Explicitly linked memories first-class at a fixed score, plus semantic neighbours."""
        cfg = self._config(search_config)
        source = self.store.get(memory_id, tenant_id)
        if source is None:
            return []

        results: Dict[str, RankedMemory] = {}
        if self.graph is not None:
            linked_ids = self.graph.neighbors(memory_id, tenant_id)
            fixed = config.RELATED_MEMORY_SCORE
            for memory in self.store.get_many(linked_ids, tenant_id):
                if user_id and memory.user_id != user_id:
                    continue
                results[memory.id] = RankedMemory(
                    memory=memory,
                    vector_score=fixed,
                    keyword_score=fixed,
                    temporal_score=1.0,
                    relevance=fixed,
                )

        for item in self.search(source.content[:MAX_QUERY_LENGTH], tenant_id, user_id=user_id, search_config=cfg, now=now):
            if item.memory.id == memory_id or item.memory.id in results:
                continue
            results[item.memory.id] = item

        ranked = sorted(results.values(), key=lambda item: (-item.relevance, item.memory.id))
        return ranked[: cfg.max_results]


__all__ = [
    "HybridSearch",
    "HybridSearchConfig",
    "extract_terms",
    "keyword_score",
    "temporal_score",
]
