"""
Importance scoring for memories.

    score = recency * w_recency + usage * w_usage + feedback * w_feedback
            + relationships * w_relationships + explicit * w_explicit

Every factor lies in [0, 1], the weights must sum to at most 1, and the result
is clamped to [0, 1].
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import memoryweave.config as config
from memoryweave.errors import ValidationIssue
from memoryweave.models import as_utc, utcnow
from memoryweave.records import FeedbackMetadata, ImportanceFactors, MemoryRecord, ScoredMemory
from memoryweave.services.memory_relationships import MemoryGraph
from memoryweave.services.memory_shared import WRITE_BATCH_SIZE, clamp_unit, logger
from memoryweave.services.memory_store import MemoryStore

TYPE_IMPORTANCE = {
    "insight": 0.9,
    "decision": 0.8,
    "feedback": 0.7,
    "preference": 0.7,
    "observation": 0.5,
    "interaction": 0.4,
}
DEFAULT_TYPE_IMPORTANCE = 0.5
NEUTRAL_FEEDBACK = 0.5


@dataclass(frozen=True)
class ImportanceConfig:
    recency_weight: float = field(default_factory=lambda: config.IMPORTANCE_RECENCY_WEIGHT)
    usage_weight: float = field(default_factory=lambda: config.IMPORTANCE_USAGE_WEIGHT)
    feedback_weight: float = field(default_factory=lambda: config.IMPORTANCE_FEEDBACK_WEIGHT)
    relationship_weight: float = field(default_factory=lambda: config.IMPORTANCE_RELATIONSHIP_WEIGHT)
    explicit_weight: float = field(default_factory=lambda: config.IMPORTANCE_EXPLICIT_WEIGHT)
    recency_decay: float = field(default_factory=lambda: config.IMPORTANCE_RECENCY_DECAY)
    max_recency_age_days: float = field(default_factory=lambda: config.IMPORTANCE_MAX_RECENCY_AGE_DAYS)
    usage_cap: int = field(default_factory=lambda: config.IMPORTANCE_USAGE_CAP)
    relationship_cap: int = field(default_factory=lambda: config.IMPORTANCE_RELATIONSHIP_CAP)

    def __post_init__(self):
        weights = self.weights()
        for name, value in weights.items():
            if value < 0:
                raise ValidationIssue(f"{name} must be >= 0", field=name, error_type="out_of_range")
        if sum(weights.values()) > 1.0 + 1e-9:
            raise ValidationIssue(
                "importance weights must sum to at most 1",
                field="weights",
                error_type="out_of_range",
                data={"sum": sum(weights.values())},
            )
        if self.usage_cap < 1 or self.relationship_cap < 1:
            raise ValidationIssue("caps must be >= 1", field="usage_cap", error_type="out_of_range")

    def weights(self) -> Dict[str, float]:
        return {
            "recency_weight": self.recency_weight,
            "usage_weight": self.usage_weight,
            "feedback_weight": self.feedback_weight,
            "relationship_weight": self.relationship_weight,
            "explicit_weight": self.explicit_weight,
        }


def recency_factor(created_at: Optional[datetime], now: datetime, cfg: ImportanceConfig) -> float:
    if created_at is None:
        return 1.0
    age_days = max(0.0, (now - as_utc(created_at)) / timedelta(days=1))
    if age_days <= cfg.max_recency_age_days:
        return 1.0
    return math.exp(-cfg.recency_decay * age_days)


def usage_factor(access_count: int, cfg: ImportanceConfig) -> float:
    return clamp_unit(max(0, access_count) / cfg.usage_cap)


def feedback_factor(memory: MemoryRecord) -> float:
    metadata = memory.typed_metadata
    if isinstance(metadata, FeedbackMetadata):
        rating = metadata.feedback_score
    else:
        rating = metadata.extra.get("feedback_score")
    if isinstance(rating, bool) or not isinstance(rating, (int, float)) or not math.isfinite(rating):
        return NEUTRAL_FEEDBACK
    # 1-5 rating scale
    return clamp_unit((rating - 1.0) / 4.0)


def relationship_factor(edge_count: int, cfg: ImportanceConfig) -> float:
    return clamp_unit(max(0, edge_count) / cfg.relationship_cap)


def explicit_factor(memory: MemoryRecord) -> float:
    explicit = memory.typed_metadata.importance
    if explicit is not None and math.isfinite(explicit):
        return clamp_unit(explicit)
    return TYPE_IMPORTANCE.get(memory.memory_type, DEFAULT_TYPE_IMPORTANCE)


def compute_importance(
    memory: MemoryRecord,
    access_count: int,
    edge_count: int,
    cfg: ImportanceConfig,
    now: datetime,
) -> tuple[float, ImportanceFactors]:
    factors = ImportanceFactors(
        recency=recency_factor(memory.created_at, now, cfg),
        usage=usage_factor(access_count, cfg),
        feedback=feedback_factor(memory),
        relationships=relationship_factor(edge_count, cfg),
        explicit=explicit_factor(memory),
    )
    score = (
        factors.recency * cfg.recency_weight
        + factors.usage * cfg.usage_weight
        + factors.feedback * cfg.feedback_weight
        + factors.relationships * cfg.relationship_weight
        + factors.explicit * cfg.explicit_weight
    )
    return clamp_unit(score), factors


class ImportanceScorer:
    def __init__(
        self,
        store: MemoryStore,
        graph: MemoryGraph,
        default_config: Optional[ImportanceConfig] = None,
    ):
        self.store = store
        self.graph = graph
        self.config = default_config or ImportanceConfig()

    def score_memory(
        self,
        memory: MemoryRecord,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> ScoredMemory:
        return self.score_and_sort([memory], tenant_id, now=now)[0]

    def score_and_sort(
        self,
        memories: Sequence[MemoryRecord],
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> List[ScoredMemory]:
        """Score every memory (two grouped count queries) and sort descending."""
        if not memories:
            return []
        now = now or utcnow()
        ids = [memory.id for memory in memories]
        access_counts = self.store.count_accesses(ids, tenant_id)
        edge_counts = self.graph.count_edges(ids, tenant_id)
        scored = []
        for memory in memories:
            score, factors = compute_importance(
                memory,
                access_counts.get(memory.id, 0),
                edge_counts.get(memory.id, 0),
                self.config,
                now,
            )
            scored.append(ScoredMemory(memory=memory, importance=score, factors=factors))
        scored.sort(key=lambda item: (-item.importance, item.memory.id))
        return scored

    def persist_scores(
        self,
        scored: Sequence[ScoredMemory],
        tenant_id: str,
        batch_size: int = WRITE_BATCH_SIZE,
    ) -> int:
        written = self.store.apply_importance(
            [(item.memory.id, item.importance) for item in scored],
            tenant_id,
            batch_size=batch_size,
        )
        logger.info(
            "importance_scores_persisted",
            extra={"tenant_id": tenant_id, "count": written},
        )
        return written

    def rescore_tenant(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
        batch_size: int = WRITE_BATCH_SIZE,
    ) -> int:
        """Recompute and persist importance for a tenant's memories."""
        memories = self.store.list_memories(tenant_id, user_id=user_id, limit=limit)
        return self.persist_scores(self.score_and_sort(memories, tenant_id), tenant_id, batch_size)


__all__ = [
    "ImportanceConfig",
    "ImportanceScorer",
    "TYPE_IMPORTANCE",
    "compute_importance",
]
