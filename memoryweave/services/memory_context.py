"""
Memory context provider: the query-time path from a question to a prompt block.

search -> filter -> importance -> context window -> access log -> persistence

Context retrieval sits on the critical path of every agent turn, so
``get_context`` answers with an empty context instead of raising once the
request itself has validated. Persisted contexts can be reused by id until
they expire, and collect relevance/usefulness feedback that feeds back into
member importance.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

import memoryweave.config as config
from memoryweave.context import optional_user_id, require_tenant_id_value
from memoryweave.errors import ContextNotFoundError, MemoryNotFoundError
from memoryweave.models import MemoryContext, MemoryContextItem, as_utc, utcnow
from memoryweave.records import MemoryRecord, ScoredMemory, SummaryMetadata
from memoryweave.services.context_window import (
    ContextWindow,
    ContextWindowBuilder,
    ContextWindowConfig,
    WindowMemory,
    empty_window,
)
from memoryweave.services.memory_importance import ImportanceScorer
from memoryweave.services.memory_search import HybridSearch, HybridSearchConfig
from memoryweave.services.memory_shared import (
    MAX_QUERY_LENGTH,
    MAX_TEXT_LENGTH,
    _validate_metadata,
    _validate_optional_text,
    _validate_required_text,
    _validate_unit_interval,
    logger,
    open_session,
)
from memoryweave.services.memory_store import MemoryStore
from memoryweave.validators import normalize_memory_type

CONTEXT_ACCESS_LABEL = "context_window"


@dataclass(frozen=True)
class ContextRequest:
    query: str
    tenant_id: str
    user_id: Optional[str] = None
    context_id: Optional[str] = None
    max_tokens: Optional[int] = None
    max_memories: Optional[int] = None
    min_importance: Optional[float] = None
    include_types: tuple[str, ...] = ()
    exclude_types: tuple[str, ...] = ()
    metadata_filters: dict = field(default_factory=dict)
    persist: Optional[bool] = None


@dataclass(frozen=True)
class AssembledContext:
    window: ContextWindow
    context_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    retrieved_count: int = 0
    retrieval_time_ms: int = 0
    reused: bool = False
    error: Optional[str] = None

    @property
    def memories(self) -> List[MemoryRecord]:
        return [item.memory for item in self.window.memories]

    def to_dict(self) -> dict:
        data = self.window.to_dict()
        data.update(
            {
                "context_id": self.context_id,
                "expires_at": self.expires_at.isoformat() if self.expires_at else None,
                "retrieved_count": self.retrieved_count,
                "retrieval_time_ms": self.retrieval_time_ms,
                "reused": self.reused,
            }
        )
        if self.error:
            data["error"] = self.error
        return data


def matches_metadata(memory: MemoryRecord, filters: Dict[str, object]) -> bool:
    """Every filter key must be present with an equal value."""
    for key, value in filters.items():
        if key not in memory.metadata or memory.metadata[key] != value:
            return False
    return True


def _title_case(memory_type: str) -> str:
    return " ".join(part.capitalize() for part in memory_type.replace("-", "_").split("_") if part)


class MemoryContextProvider:
    def __init__(
        self,
        store: MemoryStore,
        search: HybridSearch,
        scorer: ImportanceScorer,
        builder: ContextWindowBuilder,
        session_factory: Optional[Callable] = None,
        search_config: Optional[HybridSearchConfig] = None,
        retention_days: Optional[int] = None,
        persistence_enabled: Optional[bool] = None,
    ):
        self.store = store
        self.search = search
        self.scorer = scorer
        self.builder = builder
        self._session_factory = session_factory
        self.search_config = search_config
        self.retention_days = config.CONTEXT_RETENTION_DAYS if retention_days is None else retention_days
        self.persistence_enabled = (
            config.CONTEXT_PERSISTENCE_ENABLED if persistence_enabled is None else persistence_enabled
        )

    def session(self):
        return open_session(self._session_factory)

    # ------------------------------------------------------------------
    # Query path
    # ------------------------------------------------------------------

    def _validate(self, request: ContextRequest) -> ContextRequest:
        _validate_required_text(request.query, "query", MAX_QUERY_LENGTH)
        _validate_metadata(request.metadata_filters, "metadata_filters")
        if request.min_importance is not None:
            _validate_unit_interval(request.min_importance, "min_importance")
        return replace(
            request,
            tenant_id=require_tenant_id_value(request.tenant_id),
            user_id=optional_user_id(request.user_id),
            include_types=tuple(normalize_memory_type(t, "include_types") for t in request.include_types),
            exclude_types=tuple(normalize_memory_type(t, "exclude_types") for t in request.exclude_types),
        )

    def _window_config(self, request: ContextRequest) -> ContextWindowConfig:
        overrides = {}
        if request.max_tokens is not None:
            overrides["max_tokens"] = request.max_tokens
        if request.max_memories is not None:
            overrides["max_memories"] = request.max_memories
        if request.min_importance is not None:
            overrides["min_importance_threshold"] = request.min_importance
        return replace(self.builder.config, **overrides) if overrides else self.builder.config

    @staticmethod
    def _filter(memories: Sequence[MemoryRecord], request: ContextRequest) -> List[MemoryRecord]:
        kept = list(memories)
        if request.include_types:
            kept = [m for m in kept if m.memory_type in request.include_types]
        if request.exclude_types:
            kept = [m for m in kept if m.memory_type not in request.exclude_types]
        if request.metadata_filters:
            kept = [m for m in kept if matches_metadata(m, request.metadata_filters)]
        return kept

    def _score(self, memories: Sequence[MemoryRecord], tenant_id: str) -> List[ScoredMemory]:
        try:
            return self.scorer.score_and_sort(memories, tenant_id)
        except SQLAlchemyError as exc:
            logger.warning(
                "importance_scoring_degraded",
                extra={"tenant_id": tenant_id, "reason": exc.__class__.__name__},
            )
            cached = [ScoredMemory(memory=m, importance=m.importance_score) for m in memories]
            cached.sort(key=lambda item: (-item.importance, item.memory.id))
            return cached

    def get_context(self, request: ContextRequest) -> AssembledContext:
        request = self._validate(request)
        window_config = self._window_config(request)
        started = time.monotonic()
        persist = self.persistence_enabled if request.persist is None else request.persist

        try:
            if request.context_id and persist:
                existing = self.load_context(request.context_id, request.tenant_id)
                if existing is not None:
                    return replace(existing, retrieval_time_ms=int((time.monotonic() - started) * 1000))

            ranked = self.search.search(
                request.query,
                request.tenant_id,
                user_id=request.user_id,
                search_config=self.search_config,
            )
            candidates = self._filter([item.memory for item in ranked], request)
            scored = self._score(candidates, request.tenant_id)
            window = self.builder.build(scored, query=request.query, window_config=window_config)

            if window.memories:
                try:
                    self.store.record_accesses(
                        window.memory_ids,
                        request.tenant_id,
                        access_type="retrieve",
                        user_id=request.user_id,
                        context=CONTEXT_ACCESS_LABEL,
                    )
                except SQLAlchemyError as exc:
                    logger.warning(
                        "context_access_log_failed",
                        extra={"tenant_id": request.tenant_id, "reason": exc.__class__.__name__},
                    )

            context_id = None
            expires_at = None
            if persist:
                context_id, expires_at = self._persist(window, request)

            return AssembledContext(
                window=window,
                context_id=context_id,
                expires_at=expires_at,
                retrieved_count=len(ranked),
                retrieval_time_ms=int((time.monotonic() - started) * 1000),
            )
        except Exception as exc:
            logger.exception(
                "memory_context_failed",
                extra={"tenant_id": request.tenant_id, "reason": exc.__class__.__name__},
            )
            return AssembledContext(
                window=empty_window(request.query, window_config.max_tokens),
                retrieval_time_ms=int((time.monotonic() - started) * 1000),
                error=exc.__class__.__name__,
            )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, window: ContextWindow, request: ContextRequest) -> tuple[str, datetime]:
        now = utcnow()
        expires_at = now + timedelta(days=self.retention_days)
        db = self.session()
        try:
            row = MemoryContext(
                tenant_id=request.tenant_id,
                user_id=request.user_id,
                query=request.query,
                token_count=window.total_tokens,
                memory_count=window.memory_count,
                average_importance=window.average_importance,
                context_utilization=window.utilization,
                truncated=window.truncated,
                created_at=now,
                updated_at=now,
                expires_at=expires_at,
            )
            for position, item in enumerate(window.memories):
                row.items.append(
                    MemoryContextItem(
                        tenant_id=request.tenant_id,
                        memory_id=item.memory.id,
                        position=position,
                        content=item.content,
                        token_count=item.token_count,
                        importance_score=item.importance,
                        compressed=item.compressed,
                    )
                )
            db.add(row)
            db.commit()
            return row.id, expires_at
        finally:
            db.close()

    def load_context(
        self,
        context_id: str,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[AssembledContext]:
        """Rebuild a persisted, unexpired context; members deleted since are dropped."""
        tenant_id = require_tenant_id_value(tenant_id)
        now = now or utcnow()
        db = self.session()
        try:
            row = (
                db.query(MemoryContext)
                .filter(MemoryContext.tenant_id == tenant_id)
                .filter(MemoryContext.id == context_id)
                .first()
            )
            if not row:
                return None
            expires_at = as_utc(row.expires_at)
            if expires_at is not None and expires_at <= now:
                return None
            items = [
                (item.memory_id, item.content, item.token_count, item.importance_score, item.compressed)
                for item in row.items
            ]
            query = row.query
            max_tokens = (
                int(round(row.token_count / row.context_utilization))
                if row.context_utilization
                else self.builder.config.max_tokens
            )
            truncated = bool(row.truncated)
        finally:
            db.close()

        records = {m.id: m for m in self.store.get_many([i[0] for i in items], tenant_id)}
        memories = tuple(
            WindowMemory(
                memory=records[memory_id],
                importance=importance,
                content=content,
                token_count=tokens,
                compressed=bool(compressed),
            )
            for memory_id, content, tokens, importance, compressed in items
            if memory_id in records
        )
        window = ContextWindow(
            memories=memories,
            total_tokens=sum(item.token_count for item in memories),
            max_tokens=max_tokens,
            query=query,
            truncated=truncated,
            candidate_count=len(items),
        )
        return AssembledContext(
            window=window,
            context_id=context_id,
            expires_at=expires_at,
            retrieved_count=len(items),
            reused=True,
        )

    def update_context_with_feedback(
        self,
        context_id: str,
        tenant_id: str,
        relevance_score: Optional[float] = None,
        usefulness_score: Optional[float] = None,
        feedback: Optional[str] = None,
    ) -> Dict[str, float]:
        """Store feedback on a context and fold the rating into member importance.

        Returns the recomputed importance per member memory.
        """
        tenant_id = require_tenant_id_value(tenant_id)
        if relevance_score is not None:
            _validate_unit_interval(relevance_score, "relevance_score")
        if usefulness_score is not None:
            _validate_unit_interval(usefulness_score, "usefulness_score")
        _validate_optional_text(feedback, "feedback", MAX_TEXT_LENGTH)

        db = self.session()
        try:
            row = (
                db.query(MemoryContext)
                .filter(MemoryContext.tenant_id == tenant_id)
                .filter(MemoryContext.id == context_id)
                .first()
            )
            if not row:
                raise ContextNotFoundError(f"Context not found: {context_id}")
            if relevance_score is not None:
                row.relevance_score = relevance_score
            if usefulness_score is not None:
                row.usefulness_score = usefulness_score
            if feedback is not None:
                row.feedback = feedback
            row.updated_at = utcnow()
            member_ids = [item.memory_id for item in row.items]
            db.commit()
        finally:
            db.close()

        rating = usefulness_score if usefulness_score is not None else relevance_score
        if rating is None:
            return {}
        outcome = "positive" if rating >= 0.5 else "negative"
        updated: Dict[str, float] = {}
        for memory_id in member_ids:
            try:
                self.store.record_access(
                    memory_id,
                    tenant_id,
                    access_type="apply",
                    context=CONTEXT_ACCESS_LABEL,
                    outcome=outcome,
                    outcome_score=rating,
                )
                updated[memory_id] = self.store.recompute_importance_from_access(memory_id, tenant_id)
            except MemoryNotFoundError:
                logger.info(
                    "context_feedback_member_missing",
                    extra={"tenant_id": tenant_id, "memory_id": memory_id},
                )
        return updated

    def purge_expired_contexts(self, tenant_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        db = self.session()
        try:
            query = db.query(MemoryContext).filter(MemoryContext.expires_at.isnot(None))
            query = query.filter(MemoryContext.expires_at <= now)
            if tenant_id is not None:
                query = query.filter(MemoryContext.tenant_id == require_tenant_id_value(tenant_id))
            rows = query.all()
            for row in rows:
                db.delete(row)
            db.commit()
            removed = len(rows)
        finally:
            db.close()
        if removed:
            logger.info("memory_contexts_purged", extra={"count": removed})
        return removed

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def format_context_for_prompt(self, context: AssembledContext, grouped: bool = False) -> str:
        if not grouped:
            return self.builder.format_for_prompt(context.window)
        if not context.window.memories:
            return ""
        groups: Dict[str, List[MemoryRecord]] = {}
        for item in context.window.memories:
            groups.setdefault(item.memory.memory_type, []).append(item.memory)
        contents = {item.memory.id: item.content for item in context.window.memories}
        lines = ["### Relevant Context", ""]
        for memory_type, members in groups.items():
            lines.append(f"## {_title_case(memory_type)}")
            lines.append("")
            for memory in members:
                lines.append(f"- {contents[memory.id]}")
                metadata = memory.typed_metadata
                if isinstance(metadata, SummaryMetadata):
                    lines.append(f"  (Summary of {metadata.summarized_count} related items)")
            lines.append("")
        return "\n".join(lines) + "\n"


__all__ = [
    "AssembledContext",
    "ContextRequest",
    "MemoryContextProvider",
    "matches_metadata",
]
