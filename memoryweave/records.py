"""
Domain records passed between memory engine components.

Rows never leave a session; services convert them to these frozen records
before returning. Metadata stays an open JSON map in storage, but callers read
it through ``parse_metadata`` which recognises the conventional variants:

- ``SummaryMetadata``: the memory is a synthesized summary of other memories
- ``ChainMetadata``: the memory is the insight describing a memory chain
- ``FeedbackMetadata``: the memory carries a 1-5 ``feedback_score``
- ``ExtraMetadata``: anything else

Unknown keys are preserved in ``extra`` so ``to_dict`` round-trips.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Optional, Union

from memoryweave.models import Memory, MemoryAccess, MemoryRelationship, as_utc


def _coerce_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _coerce_id_list(value: Any) -> Optional[tuple[str, ...]]:
    if not isinstance(value, (list, tuple)):
        return None
    return tuple(str(item) for item in value)


# =============================================================================
# Metadata variants
# =============================================================================

_COMMON_KEYS = ("importance", "last_importance_update", "summary_ids")


@dataclass(frozen=True)
class ExtraMetadata:
    importance: Optional[float] = None
    last_importance_update: Optional[str] = None
    summary_ids: tuple[str, ...] = ()
    extra: dict = field(default_factory=dict)

    kind: ClassVar[str] = "extra"
    _owned_keys: ClassVar[tuple[str, ...]] = ()

    def _variant_fields(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        data = dict(self.extra)
        if self.importance is not None:
            data["importance"] = self.importance
        if self.last_importance_update is not None:
            data["last_importance_update"] = self.last_importance_update
        if self.summary_ids:
            data["summary_ids"] = list(self.summary_ids)
        data.update(self._variant_fields())
        return data


@dataclass(frozen=True)
class SummaryMetadata(ExtraMetadata):
    summarized_count: int = 0
    original_memory_ids: tuple[str, ...] = ()

    kind: ClassVar[str] = "summary"
    _owned_keys: ClassVar[tuple[str, ...]] = ("is_summary", "summarized_count", "original_memory_ids")

    def _variant_fields(self) -> dict:
        return {
            "is_summary": True,
            "summarized_count": self.summarized_count,
            "original_memory_ids": list(self.original_memory_ids),
        }


@dataclass(frozen=True)
class ChainMetadata(ExtraMetadata):
    chain_id: Optional[str] = None
    chain_confidence: Optional[float] = None
    memory_ids: tuple[str, ...] = ()

    kind: ClassVar[str] = "chain"
    _owned_keys: ClassVar[tuple[str, ...]] = ("is_chain", "chain_id", "chain_confidence", "memory_ids")

    def _variant_fields(self) -> dict:
        data: dict = {"is_chain": True, "memory_ids": list(self.memory_ids)}
        if self.chain_id is not None:
            data["chain_id"] = self.chain_id
        if self.chain_confidence is not None:
            data["chain_confidence"] = self.chain_confidence
        return data


@dataclass(frozen=True)
class FeedbackMetadata(ExtraMetadata):
    feedback_score: Optional[float] = None

    kind: ClassVar[str] = "feedback"
    _owned_keys: ClassVar[tuple[str, ...]] = ("feedback_score",)

    def _variant_fields(self) -> dict:
        if self.feedback_score is None:
            return {}
        return {"feedback_score": self.feedback_score}


MemoryMetadata = Union[SummaryMetadata, ChainMetadata, FeedbackMetadata, ExtraMetadata]


def parse_metadata(raw: Optional[dict]) -> MemoryMetadata:
    """Map a stored metadata object onto its typed variant."""
    data = dict(raw or {})
    if data.get("is_summary"):
        variant = SummaryMetadata
    elif data.get("is_chain"):
        variant = ChainMetadata
    elif _coerce_float(data.get("feedback_score")) is not None:
        variant = FeedbackMetadata
    else:
        variant = ExtraMetadata

    common = {
        "importance": _coerce_float(data.get("importance")),
        "last_importance_update": data.get("last_importance_update")
        if isinstance(data.get("last_importance_update"), str)
        else None,
        "summary_ids": _coerce_id_list(data.get("summary_ids")) or (),
    }
    owned = set(_COMMON_KEYS) | set(variant._owned_keys)
    # Keys that fail coercion stay in extra so nothing is lost on write-back.
    extra = {key: value for key, value in data.items() if key not in owned}
    for key in _COMMON_KEYS:
        if key in data and common[key] in (None, ()) and data[key] is not None:
            extra[key] = data[key]

    if variant is SummaryMetadata:
        return SummaryMetadata(
            **common,
            extra=extra,
            summarized_count=_coerce_int(data.get("summarized_count")) or 0,
            original_memory_ids=_coerce_id_list(data.get("original_memory_ids")) or (),
        )
    if variant is ChainMetadata:
        return ChainMetadata(
            **common,
            extra=extra,
            chain_id=str(data["chain_id"]) if data.get("chain_id") is not None else None,
            chain_confidence=_coerce_float(data.get("chain_confidence")),
            memory_ids=_coerce_id_list(data.get("memory_ids")) or (),
        )
    if variant is FeedbackMetadata:
        return FeedbackMetadata(
            **common,
            extra=extra,
            feedback_score=_coerce_float(data.get("feedback_score")),
        )
    return ExtraMetadata(**common, extra=extra)


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class MemoryRecord:
    id: str
    tenant_id: str
    content: str
    memory_type: str
    importance_score: float
    metadata: dict
    user_id: Optional[str] = None
    embedding: Optional[tuple[float, ...]] = None
    summary_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Memory) -> "MemoryRecord":
        embedding = row.embedding
        return MemoryRecord(
            id=row.id,
            tenant_id=row.tenant_id,
            user_id=row.user_id,
            content=row.content,
            memory_type=row.memory_type,
            importance_score=float(row.importance_score if row.importance_score is not None else 0.5),
            metadata=dict(row.metadata_ or {}),
            embedding=tuple(float(v) for v in embedding) if embedding else None,
            summary_id=row.summary_id,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @property
    def typed_metadata(self) -> MemoryMetadata:
        return parse_metadata(self.metadata)

    @property
    def is_summary(self) -> bool:
        return isinstance(self.typed_metadata, SummaryMetadata)

    def to_dict(self, include_embedding: bool = False) -> dict:
        data = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "content": self.content,
            "memory_type": self.memory_type,
            "importance_score": self.importance_score,
            "metadata": dict(self.metadata),
            "summary_id": self.summary_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_embedding:
            data["embedding"] = list(self.embedding) if self.embedding else None
        return data


@dataclass(frozen=True)
class RelationshipRecord:
    id: str
    tenant_id: str
    source_id: str
    target_id: str
    relationship_type: str
    strength: float
    metadata: dict
    created_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: MemoryRelationship) -> "RelationshipRecord":
        return RelationshipRecord(
            id=row.id,
            tenant_id=row.tenant_id,
            source_id=row.source_id,
            target_id=row.target_id,
            relationship_type=row.relationship_type,
            strength=float(row.strength if row.strength is not None else 1.0),
            metadata=dict(row.metadata_ or {}),
            created_at=as_utc(row.created_at),
        )

    def other_end(self, memory_id: str) -> str:
        return self.target_id if self.source_id == memory_id else self.source_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "relationship_type": self.relationship_type,
            "strength": self.strength,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class AccessRecord:
    id: str
    memory_id: str
    access_type: str
    user_id: Optional[str] = None
    context: Optional[str] = None
    outcome: Optional[str] = None
    outcome_score: Optional[float] = None
    created_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: MemoryAccess) -> "AccessRecord":
        return AccessRecord(
            id=row.id,
            memory_id=row.memory_id,
            access_type=row.access_type,
            user_id=row.user_id,
            context=row.context,
            outcome=row.outcome,
            outcome_score=row.outcome_score,
            created_at=as_utc(row.created_at),
        )


@dataclass(frozen=True)
class RankedMemory:
    """A memory with its hybrid search sub-scores."""

    memory: MemoryRecord
    vector_score: float
    keyword_score: float
    temporal_score: float
    relevance: float

    def to_dict(self) -> dict:
        return {
            "memory": self.memory.to_dict(),
            "vector_score": round(self.vector_score, 6),
            "keyword_score": round(self.keyword_score, 6),
            "temporal_score": round(self.temporal_score, 6),
            "relevance": round(self.relevance, 6),
        }


@dataclass(frozen=True)
class ImportanceFactors:
    recency: float
    usage: float
    feedback: float
    relationships: float
    explicit: float

    def to_dict(self) -> dict:
        return {
            "recency": self.recency,
            "usage": self.usage,
            "feedback": self.feedback,
            "relationships": self.relationships,
            "explicit": self.explicit,
        }


@dataclass(frozen=True)
class ScoredMemory:
    memory: MemoryRecord
    importance: float
    factors: Optional[ImportanceFactors] = None
