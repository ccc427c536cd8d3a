"""
Memory summarization: cluster near-duplicate memories and replace them with a
single summary memory.

Pipeline per tenant:
1. Partition candidates by memory type
2. Greedy clustering around seeds taken in (created_at, id) order
3. Skip clusters below the minimum size, cap the rest
4. Ask the language model for a bounded-length summary
5. Store the summary, its ``summarizes`` edges and the stamps on the originals
   in one transaction

Originals are never deleted. Each cluster is processed independently; a
provider or storage failure is recorded in the batch report and the batch
moves on.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

import memoryweave.config as config
from memoryweave.context import optional_user_id, require_tenant_id_value
from memoryweave.errors import (
    DimensionMismatchError,
    EmbeddingProviderError,
    LanguageModelError,
    ValidationIssue,
)
from memoryweave.models import utcnow
from memoryweave.records import MemoryRecord, SummaryMetadata
from memoryweave.services.memory_relationships import EdgeSpec
from memoryweave.services.memory_shared import logger
from memoryweave.services.memory_store import MemoryStore
from memoryweave.services.providers import LanguageModelProvider
from memoryweave.services.similarity import centroid, pairwise_similarity

SUMMARY_SYSTEM_PROMPT = "You are an AI assistant that creates concise, informative summaries."

TYPE_FOCUS = {
    "decision": "Focus on the key decisions, their rationale, and outcomes.",
    "observation": "Focus on the main observations, patterns, and insights.",
    "feedback": "Focus on the main feedback points, sentiment, and actionable insights.",
    "interaction": "Focus on the key interactions, their context, and outcomes.",
    "tactic": "Focus on the main tactics, their application, and effectiveness.",
    "preference": "Focus on the key preferences, their context, and implications.",
    "insight": "Focus on the main insights, their significance, and applications.",
}
DEFAULT_FOCUS = "Focus on the key points and their significance."


@dataclass(frozen=True)
class SummarizationConfig:
    max_memories_per_summary: int = field(default_factory=lambda: config.SUMMARY_MAX_MEMORIES)
    min_memories_for_summary: int = field(default_factory=lambda: config.SUMMARY_MIN_MEMORIES)
    similarity_threshold: float = field(default_factory=lambda: config.SUMMARY_SIMILARITY_THRESHOLD)
    max_summary_length: int = field(default_factory=lambda: config.SUMMARY_MAX_LENGTH)
    min_age_hours: int = field(default_factory=lambda: config.SUMMARY_MIN_AGE_HOURS)
    batch_limit: int = field(default_factory=lambda: config.SUMMARY_BATCH_LIMIT)
    summary_importance: float = field(default_factory=lambda: config.SUMMARY_IMPORTANCE)

    def __post_init__(self):
        if self.min_memories_for_summary < 2:
            raise ValidationIssue(
                "min_memories_for_summary must be >= 2",
                field="min_memories_for_summary",
                error_type="out_of_range",
            )
        if self.max_memories_per_summary < self.min_memories_for_summary:
            raise ValidationIssue(
                "max_memories_per_summary must be >= min_memories_for_summary",
                field="max_memories_per_summary",
                error_type="out_of_range",
            )
        if not -1.0 <= self.similarity_threshold <= 1.0:
            raise ValidationIssue(
                "similarity_threshold must be between -1 and 1",
                field="similarity_threshold",
                error_type="out_of_range",
            )
        if self.max_summary_length < 1:
            raise ValidationIssue(
                "max_summary_length must be >= 1",
                field="max_summary_length",
                error_type="out_of_range",
            )
        if not 0.0 <= self.summary_importance <= 1.0:
            raise ValidationIssue(
                "summary_importance must be between 0 and 1",
                field="summary_importance",
                error_type="out_of_range",
            )


@dataclass(frozen=True)
class MemoryCluster:
    memory_type: str
    memories: tuple[MemoryRecord, ...]
    centroid: tuple[float, ...]

    @property
    def memory_ids(self) -> List[str]:
        return [memory.id for memory in self.memories]

    def __len__(self) -> int:
        return len(self.memories)


@dataclass(frozen=True)
class SummaryResult:
    summary: MemoryRecord
    original_ids: tuple[str, ...]
    compression_ratio: float

    def to_dict(self) -> dict:
        return {
            "summary": self.summary.to_dict(),
            "original_ids": list(self.original_ids),
            "summarized_count": len(self.original_ids),
            "compression_ratio": round(self.compression_ratio, 6),
        }


@dataclass(frozen=True)
class SummarizationReport:
    total_memories: int = 0
    total_summaries: int = 0
    summary_ids: tuple[str, ...] = ()
    processing_time_ms: int = 0
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "total_memories": self.total_memories,
            "total_summaries": self.total_summaries,
            "summary_ids": list(self.summary_ids),
            "processing_time_ms": self.processing_time_ms,
            "errors": list(self.errors),
        }


def _seed_order(memory: MemoryRecord) -> tuple:
    created = memory.created_at.timestamp() if memory.created_at else 0.0
    return (created, memory.id)


def _cluster_one_type(
    memory_type: str,
    members: Sequence[MemoryRecord],
    threshold: float,
) -> List[MemoryCluster]:
    ordered = sorted(members, key=_seed_order)
    dim = len(ordered[0].embedding)
    usable = []
    for memory in ordered:
        if len(memory.embedding) != dim:
            logger.warning(
                "summarization_dimension_skip",
                extra={"memory_id": memory.id, "expected": dim, "actual": len(memory.embedding)},
            )
            continue
        usable.append(memory)

    sims = pairwise_similarity([memory.embedding for memory in usable])
    if sims is None:
        return []

    clusters: List[MemoryCluster] = []
    assigned = set()
    for i, seed in enumerate(usable):
        if i in assigned:
            continue
        assigned.add(i)
        group = [i]
        for j in range(i + 1, len(usable)):
            if j not in assigned and sims[i, j] >= threshold:
                assigned.add(j)
                group.append(j)
        picked = tuple(usable[index] for index in group)
        clusters.append(
            MemoryCluster(
                memory_type=memory_type,
                memories=picked,
                centroid=tuple(centroid([memory.embedding for memory in picked])),
            )
        )
    return clusters


def group_similar_memories(
    memories: Sequence[MemoryRecord],
    similarity_threshold: Optional[float] = None,
) -> List[MemoryCluster]:
    """Partition by type, then group each memory with the earliest seed it is close to.

    Every clustered memory lands in exactly one cluster, singletons included.
    Memories without an embedding are left out.
    """
    threshold = config.SUMMARY_SIMILARITY_THRESHOLD if similarity_threshold is None else similarity_threshold
    by_type: Dict[str, List[MemoryRecord]] = {}
    for memory in memories:
        if not memory.embedding:
            continue
        by_type.setdefault(memory.memory_type, []).append(memory)

    clusters: List[MemoryCluster] = []
    for memory_type in sorted(by_type):
        clusters.extend(_cluster_one_type(memory_type, by_type[memory_type], threshold))
    return clusters


def build_summary_prompt(memories: Sequence[MemoryRecord], memory_type: str, max_length: int) -> str:
    prompt = (
        "Summarize the following related information into a concise, informative summary "
        f"of maximum {max_length} characters. "
    )
    prompt += TYPE_FOCUS.get(memory_type, DEFAULT_FOCUS)
    prompt += "\n\nInformation to summarize:\n"
    for index, memory in enumerate(memories, start=1):
        prompt += f"\n[{index}] {memory.content}"
    return prompt


class MemorySummarizer:
    def __init__(
        self,
        store: MemoryStore,
        llm: LanguageModelProvider,
        default_config: Optional[SummarizationConfig] = None,
    ):
        self.store = store
        self.llm = llm
        self.config = default_config or SummarizationConfig()

    def _generate(self, memories: Sequence[MemoryRecord], memory_type: str, cfg: SummarizationConfig) -> str:
        prompt = build_summary_prompt(memories, memory_type, cfg.max_summary_length)
        text = self.llm.complete(
            prompt,
            system=SUMMARY_SYSTEM_PROMPT,
            max_tokens=math.ceil(cfg.max_summary_length / 4),
            temperature=0.3,
        )
        text = (text or "").strip()
        if not text:
            raise LanguageModelError("empty summary")
        return text[: cfg.max_summary_length]

    def summarize_cluster(
        self,
        cluster: MemoryCluster,
        tenant_id: str,
        user_id: Optional[str] = None,
        summarization_config: Optional[SummarizationConfig] = None,
    ) -> SummaryResult:
        """Summarize one cluster. Provider and storage errors propagate."""
        cfg = summarization_config or self.config
        tenant_id = require_tenant_id_value(tenant_id)
        members = list(cluster.memories[: cfg.max_memories_per_summary])
        if len(members) < cfg.min_memories_for_summary:
            raise ValidationIssue(
                f"cluster needs at least {cfg.min_memories_for_summary} memories",
                field="cluster",
                error_type="out_of_range",
                data={"size": len(members)},
            )

        text = self._generate(members, cluster.memory_type, cfg)
        original_ids = tuple(memory.id for memory in members)
        metadata = SummaryMetadata(
            importance=cfg.summary_importance,
            summarized_count=len(original_ids),
            original_memory_ids=original_ids,
        ).to_dict()
        # Summary row, its edges and the stamps on the originals commit together.
        summary = self.store.create_linked(
            text,
            cluster.memory_type,
            tenant_id,
            lambda summary_id: [EdgeSpec(summary_id, memory_id, "summarizes") for memory_id in original_ids],
            user_id=user_id,
            metadata=metadata,
            importance_score=cfg.summary_importance,
            summarizes=original_ids,
        )

        original_chars = sum(len(memory.content) for memory in members)
        ratio = len(text) / original_chars if original_chars else 0.0
        logger.info(
            "memory_summary_created",
            extra={
                "tenant_id": tenant_id,
                "summary_id": summary.id,
                "summarized_count": len(original_ids),
                "compression_ratio": round(ratio, 4),
            },
        )
        return SummaryResult(summary=summary, original_ids=original_ids, compression_ratio=ratio)

    def summarize_memories(
        self,
        memories: Sequence[MemoryRecord],
        tenant_id: str,
        user_id: Optional[str] = None,
        summarization_config: Optional[SummarizationConfig] = None,
    ) -> SummarizationReport:
        cfg = summarization_config or self.config
        tenant_id = require_tenant_id_value(tenant_id)
        started = time.monotonic()
        try:
            clusters = group_similar_memories(memories, cfg.similarity_threshold)
        except DimensionMismatchError as exc:
            logger.warning("summarization_clustering_failed", extra={"tenant_id": tenant_id, "reason": str(exc)})
            clusters = []

        summary_ids: List[str] = []
        errors: List[str] = []
        for cluster in clusters:
            if len(cluster) < cfg.min_memories_for_summary:
                continue
            try:
                result = self.summarize_cluster(cluster, tenant_id, user_id=user_id, summarization_config=cfg)
            except (LanguageModelError, EmbeddingProviderError, SQLAlchemyError, ValidationIssue) as exc:
                logger.warning(
                    "memory_summary_failed",
                    extra={
                        "tenant_id": tenant_id,
                        "memory_type": cluster.memory_type,
                        "cluster_size": len(cluster),
                        "reason": exc.__class__.__name__,
                    },
                )
                errors.append(f"{cluster.memory_type}: {exc}")
                continue
            summary_ids.append(result.summary.id)

        return SummarizationReport(
            total_memories=len(memories),
            total_summaries=len(summary_ids),
            summary_ids=tuple(summary_ids),
            processing_time_ms=int((time.monotonic() - started) * 1000),
            errors=tuple(errors),
        )

    def summarize_all(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
        summarization_config: Optional[SummarizationConfig] = None,
    ) -> SummarizationReport:
        """Summarize a tenant's settled, not yet summarized memories."""
        cfg = summarization_config or self.config
        tenant_id = require_tenant_id_value(tenant_id)
        user_id = optional_user_id(user_id)
        if not config.SUMMARIZATION_ENABLED:
            logger.info("summarization_disabled", extra={"tenant_id": tenant_id})
            return SummarizationReport()

        now = now or utcnow()
        candidates = self.store.list_memories(
            tenant_id,
            user_id=user_id,
            with_embeddings_only=True,
            created_before=now - timedelta(hours=cfg.min_age_hours),
            unsummarized_only=True,
            limit=cfg.batch_limit,
        )
        candidates = [memory for memory in candidates if not memory.is_summary]
        report = self.summarize_memories(candidates, tenant_id, user_id=user_id, summarization_config=cfg)
        logger.info(
            "summarization_batch_complete",
            extra={"tenant_id": tenant_id, **report.to_dict()},
        )
        return report


__all__ = [
    "MemoryCluster",
    "MemorySummarizer",
    "SummarizationConfig",
    "SummarizationReport",
    "SummaryResult",
    "build_summary_prompt",
    "group_similar_memories",
]
