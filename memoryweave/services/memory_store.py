"""
Memory store: tenant-scoped CRUD over memories and their access log.

Every query carries a ``tenant_id`` filter. Writes that change content call
the embedding provider before touching the session, so a provider failure
leaves the database untouched.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import case, func, or_

import memoryweave.config as config
from memoryweave.context import optional_user_id, require_tenant_id_value
from memoryweave.errors import AccessNotFoundError, MemoryNotFoundError, ValidationIssue
from memoryweave.models import Memory, MemoryAccess, MemoryRelationship, as_utc, utcnow
from memoryweave.records import AccessRecord, MemoryRecord, parse_metadata
from memoryweave.services.memory_relationships import EdgeSpec, upsert_edges
from memoryweave.services.memory_shared import (
    MAX_RESULT_LIMIT,
    MAX_TEXT_LENGTH,
    WRITE_BATCH_SIZE,
    _validate_metadata,
    _validate_optional_text,
    _validate_required_text,
    _validate_unit_interval,
    chunked,
    clamp_unit,
    logger,
    open_session,
)
from memoryweave.services.providers import EmbeddingProvider
from memoryweave.validators import normalize_access_type, normalize_memory_type

OUTCOMES = ("positive", "negative", "neutral")
DEFAULT_IMPORTANCE = 0.5

# Access-derived importance (usage, outcome quality, recency of use)
ACCESS_USAGE_WEIGHT = 0.3
ACCESS_OUTCOME_WEIGHT = 0.5
ACCESS_RECENCY_WEIGHT = 0.2
ACCESS_USAGE_CAP = 10
ACCESS_RECENCY_WINDOW_DAYS = 30


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _initial_importance(importance_score: Optional[float], metadata: Optional[dict]) -> float:
    if importance_score is not None:
        _validate_unit_interval(importance_score, "importance_score")
        return float(importance_score)
    explicit = parse_metadata(metadata).importance
    if explicit is not None:
        return clamp_unit(explicit)
    return DEFAULT_IMPORTANCE


def _stamp_rows(rows: Sequence[Memory], summary_id: str) -> int:
    for row in rows:
        metadata = dict(row.metadata_ or {})
        existing = [str(value) for value in metadata.get("summary_ids") or []]
        if summary_id not in existing:
            existing.append(summary_id)
        metadata["summary_ids"] = existing
        row.metadata_ = metadata
        row.summary_id = summary_id
        row.updated_at = utcnow()
    return len(rows)


class MemoryStore:
    def __init__(
        self,
        embedder: EmbeddingProvider,
        session_factory: Optional[Callable] = None,
    ):
        self.embedder = embedder
        self._session_factory = session_factory

    def session(self):
        return open_session(self._session_factory)

    def _embed(self, content: str) -> List[float]:
        vector = self.embedder.embed(content)
        return [float(value) for value in vector]

    @staticmethod
    def _scoped(db, tenant_id: str):
        return db.query(Memory).filter(Memory.tenant_id == tenant_id)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def _new_row(
        self,
        content: str,
        memory_type: str,
        tenant_id: str,
        user_id: Optional[str],
        metadata: Optional[dict],
        importance_score: Optional[float],
    ) -> Memory:
        """Validated, embedded row with its id assigned; nothing is written."""
        _validate_required_text(content, "content", MAX_TEXT_LENGTH)
        memory_type = normalize_memory_type(memory_type)
        _validate_metadata(metadata, "metadata")
        importance = _initial_importance(importance_score, metadata)

        embedding = self._embed(content)

        now = utcnow()
        return Memory(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_id=user_id,
            content=content,
            embedding=embedding,
            memory_type=memory_type,
            importance_score=importance,
            metadata_=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

    def create(
        self,
        content: str,
        memory_type: str,
        tenant_id: str,
        user_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        importance_score: Optional[float] = None,
    ) -> MemoryRecord:
        tenant_id = require_tenant_id_value(tenant_id)
        user_id = optional_user_id(user_id)
        row = self._new_row(content, memory_type, tenant_id, user_id, metadata, importance_score)

        db = self.session()
        try:
            db.add(row)
            db.commit()
            db.refresh(row)
            record = MemoryRecord.from_row(row)
        finally:
            db.close()
        logger.info(
            "memory_created",
            extra={"tenant_id": tenant_id, "memory_id": record.id, "memory_type": record.memory_type},
        )
        return record

    def create_linked(
        self,
        content: str,
        memory_type: str,
        tenant_id: str,
        edges_for: Callable[[str], Sequence[EdgeSpec]],
        user_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        importance_score: Optional[float] = None,
        summarizes: Sequence[str] = (),
    ) -> MemoryRecord:
        """Create a memory together with its edges in one transaction.

        ``edges_for`` receives the new memory's id. Memories listed in
        ``summarizes`` are stamped with that id in the same transaction, so a
        failure leaves nothing behind.
        """
        tenant_id = require_tenant_id_value(tenant_id)
        user_id = optional_user_id(user_id)
        row = self._new_row(content, memory_type, tenant_id, user_id, metadata, importance_score)
        edges = list(edges_for(row.id))

        db = self.session()
        try:
            db.add(row)
            db.flush()
            edge_count = upsert_edges(db, tenant_id, edges)
            for batch in chunked(list(summarizes), WRITE_BATCH_SIZE):
                _stamp_rows(self._scoped(db, tenant_id).filter(Memory.id.in_(batch)).all(), row.id)
                db.flush()
            db.commit()
            db.refresh(row)
            record = MemoryRecord.from_row(row)
        finally:
            db.close()
        logger.info(
            "memory_created",
            extra={
                "tenant_id": tenant_id,
                "memory_id": record.id,
                "memory_type": record.memory_type,
                "edges": edge_count,
            },
        )
        return record

    def get(self, memory_id: str, tenant_id: str) -> Optional[MemoryRecord]:
        tenant_id = require_tenant_id_value(tenant_id)
        db = self.session()
        try:
            row = self._scoped(db, tenant_id).filter(Memory.id == memory_id).first()
            return MemoryRecord.from_row(row) if row else None
        finally:
            db.close()

    def get_many(self, memory_ids: Sequence[str], tenant_id: str) -> List[MemoryRecord]:
        """Fetch memories by id, preserving the requested order; missing ids are skipped."""
        tenant_id = require_tenant_id_value(tenant_id)
        wanted = list(dict.fromkeys(memory_ids))
        if not wanted:
            return []
        db = self.session()
        try:
            found: Dict[str, MemoryRecord] = {}
            for batch in chunked(wanted, 500):
                rows = self._scoped(db, tenant_id).filter(Memory.id.in_(batch)).all()
                for row in rows:
                    found[row.id] = MemoryRecord.from_row(row)
        finally:
            db.close()
        return [found[memory_id] for memory_id in wanted if memory_id in found]

    def update(
        self,
        memory_id: str,
        tenant_id: str,
        content: Optional[str] = None,
        memory_type: Optional[str] = None,
        metadata: Optional[dict] = None,
        importance_score: Optional[float] = None,
    ) -> MemoryRecord:
        """Apply a partial update; content changes regenerate the embedding."""
        tenant_id = require_tenant_id_value(tenant_id)
        if content is not None:
            _validate_required_text(content, "content", MAX_TEXT_LENGTH)
        if memory_type is not None:
            memory_type = normalize_memory_type(memory_type)
        _validate_metadata(metadata, "metadata")
        if importance_score is not None:
            _validate_unit_interval(importance_score, "importance_score")

        db = self.session()
        try:
            row = self._scoped(db, tenant_id).filter(Memory.id == memory_id).first()
            if not row:
                raise MemoryNotFoundError(memory_id)

            if content is not None and content != row.content:
                # Embed before mutating the row so a provider failure writes nothing.
                new_embedding = self._embed(content)
                row.content = content
                row.embedding = new_embedding
            if memory_type is not None:
                row.memory_type = memory_type
            if metadata is not None:
                row.metadata_ = dict(metadata)
            if importance_score is not None:
                row.importance_score = float(importance_score)
            row.updated_at = utcnow()
            db.commit()
            db.refresh(row)
            return MemoryRecord.from_row(row)
        finally:
            db.close()

    def merge_metadata(self, memory_id: str, tenant_id: str, patch: dict) -> MemoryRecord:
        tenant_id = require_tenant_id_value(tenant_id)
        _validate_metadata(patch, "metadata")
        db = self.session()
        try:
            row = self._scoped(db, tenant_id).filter(Memory.id == memory_id).first()
            if not row:
                raise MemoryNotFoundError(memory_id)
            merged = dict(row.metadata_ or {})
            merged.update(patch or {})
            row.metadata_ = merged
            row.updated_at = utcnow()
            db.commit()
            db.refresh(row)
            return MemoryRecord.from_row(row)
        finally:
            db.close()

    def delete(self, memory_id: str, tenant_id: str, cascade: bool = False) -> None:
        """Delete a memory; relationships and access rows go too only with ``cascade``."""
        tenant_id = require_tenant_id_value(tenant_id)
        db = self.session()
        try:
            row = self._scoped(db, tenant_id).filter(Memory.id == memory_id).first()
            if not row:
                raise MemoryNotFoundError(memory_id)
            db.delete(row)
            if cascade:
                (
                    db.query(MemoryRelationship)
                    .filter(MemoryRelationship.tenant_id == tenant_id)
                    .filter(
                        or_(
                            MemoryRelationship.source_id == memory_id,
                            MemoryRelationship.target_id == memory_id,
                        )
                    )
                    .delete(synchronize_session=False)
                )
                (
                    db.query(MemoryAccess)
                    .filter(MemoryAccess.tenant_id == tenant_id)
                    .filter(MemoryAccess.memory_id == memory_id)
                    .delete(synchronize_session=False)
                )
                (
                    self._scoped(db, tenant_id)
                    .filter(Memory.summary_id == memory_id)
                    .update({Memory.summary_id: None}, synchronize_session=False)
                )
            db.commit()
        finally:
            db.close()
        logger.info(
            "memory_deleted",
            extra={"tenant_id": tenant_id, "memory_id": memory_id, "cascade": cascade},
        )

    # ------------------------------------------------------------------
    # Candidate queries
    # ------------------------------------------------------------------

    def list_memories(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        memory_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        with_embeddings_only: bool = False,
        created_before: Optional[datetime] = None,
        unsummarized_only: bool = False,
        exclude_ids: Optional[Sequence[str]] = None,
    ) -> List[MemoryRecord]:
        """Newest-first listing with optional filters."""
        tenant_id = require_tenant_id_value(tenant_id)
        user_id = optional_user_id(user_id)
        db = self.session()
        try:
            query = self._scoped(db, tenant_id)
            if user_id:
                query = query.filter(Memory.user_id == user_id)
            if memory_types:
                types = [normalize_memory_type(value, "memory_types") for value in memory_types]
                query = query.filter(Memory.memory_type.in_(types))
            if with_embeddings_only:
                query = query.filter(Memory.embedding.isnot(None))
            if created_before is not None:
                query = query.filter(Memory.created_at < created_before)
            if unsummarized_only:
                query = query.filter(Memory.summary_id.is_(None))
            if exclude_ids:
                query = query.filter(Memory.id.notin_(list(exclude_ids)))
            query = query.order_by(Memory.created_at.desc(), Memory.id.asc())
            if limit is not None:
                query = query.limit(limit)
            return [MemoryRecord.from_row(row) for row in query.all()]
        finally:
            db.close()

    def keyword_candidates(
        self,
        tenant_id: str,
        terms: Sequence[str],
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[MemoryRecord]:
        """Memories whose content contains any of ``terms`` (case-insensitive).

        Ordered by how many terms match, then newest first, so the limit keeps
        the strongest lexical matches.
        """
        tenant_id = require_tenant_id_value(tenant_id)
        user_id = optional_user_id(user_id)
        if not terms:
            return []
        db = self.session()
        try:
            query = self._scoped(db, tenant_id)
            if user_id:
                query = query.filter(Memory.user_id == user_id)
            clauses = [
                Memory.content.ilike(f"%{_escape_like(term)}%", escape="\\")
                for term in terms
            ]
            matched = sum(case((clause, 1), else_=0) for clause in clauses)
            query = query.filter(or_(*clauses)).order_by(
                matched.desc(), Memory.created_at.desc(), Memory.id.asc()
            )
            query = query.limit(limit or config.SEARCH_KEYWORD_CANDIDATE_LIMIT)
            return [MemoryRecord.from_row(row) for row in query.all()]
        finally:
            db.close()

    def stamp_summary(
        self,
        memory_ids: Sequence[str],
        summary_id: str,
        tenant_id: str,
        batch_size: int = WRITE_BATCH_SIZE,
    ) -> int:
        """Point originals at a summary and append it to ``metadata.summary_ids``."""
        tenant_id = require_tenant_id_value(tenant_id)
        stamped = 0
        db = self.session()
        try:
            for batch in chunked(list(memory_ids), batch_size):
                rows = self._scoped(db, tenant_id).filter(Memory.id.in_(batch)).all()
                stamped += _stamp_rows(rows, summary_id)
                db.commit()
        finally:
            db.close()
        return stamped

    def apply_importance(
        self,
        updates: Sequence[tuple[str, float]],
        tenant_id: str,
        batch_size: int = WRITE_BATCH_SIZE,
    ) -> int:
        """Write scores to the column and ``metadata.importance`` in bounded batches."""
        tenant_id = require_tenant_id_value(tenant_id)
        written = 0
        db = self.session()
        try:
            for batch in chunked(list(updates), batch_size):
                scores = {memory_id: clamp_unit(score) for memory_id, score in batch}
                stamp = utcnow()
                rows = self._scoped(db, tenant_id).filter(Memory.id.in_(list(scores))).all()
                for row in rows:
                    score = scores[row.id]
                    metadata = dict(row.metadata_ or {})
                    metadata["importance"] = score
                    metadata["last_importance_update"] = stamp.isoformat()
                    row.metadata_ = metadata
                    row.importance_score = score
                    written += 1
                db.commit()
        finally:
            db.close()
        return written

    # ------------------------------------------------------------------
    # Access log
    # ------------------------------------------------------------------

    def record_access(
        self,
        memory_id: str,
        tenant_id: str,
        access_type: str = "retrieve",
        user_id: Optional[str] = None,
        context: Optional[str] = None,
        outcome: Optional[str] = None,
        outcome_score: Optional[float] = None,
    ) -> AccessRecord:
        tenant_id = require_tenant_id_value(tenant_id)
        access_type = normalize_access_type(access_type)
        _validate_optional_text(context, "context", MAX_TEXT_LENGTH)
        outcome = self._normalize_outcome(outcome, outcome_score)
        db = self.session()
        try:
            exists = self._scoped(db, tenant_id).filter(Memory.id == memory_id).first()
            if not exists:
                raise MemoryNotFoundError(memory_id)
            row = MemoryAccess(
                tenant_id=tenant_id,
                memory_id=memory_id,
                user_id=optional_user_id(user_id),
                access_type=access_type,
                context=context,
                outcome=outcome,
                outcome_score=outcome_score,
                created_at=utcnow(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return AccessRecord.from_row(row)
        finally:
            db.close()

    def record_accesses(
        self,
        memory_ids: Sequence[str],
        tenant_id: str,
        access_type: str = "retrieve",
        user_id: Optional[str] = None,
        context: Optional[str] = None,
        batch_size: int = WRITE_BATCH_SIZE,
    ) -> int:
        tenant_id = require_tenant_id_value(tenant_id)
        access_type = normalize_access_type(access_type)
        user_id = optional_user_id(user_id)
        ids = list(memory_ids)
        written = 0
        db = self.session()
        try:
            for batch in chunked(ids, batch_size):
                now = utcnow()
                for memory_id in batch:
                    db.add(
                        MemoryAccess(
                            tenant_id=tenant_id,
                            memory_id=memory_id,
                            user_id=user_id,
                            access_type=access_type,
                            context=context,
                            created_at=now,
                        )
                    )
                db.commit()
                written += len(batch)
        finally:
            db.close()
        return written

    @staticmethod
    def _normalize_outcome(outcome: Optional[str], outcome_score: Optional[float]) -> Optional[str]:
        if outcome_score is not None:
            _validate_unit_interval(outcome_score, "outcome_score")
        if outcome is None:
            return None
        if not isinstance(outcome, str) or outcome.strip().lower() not in OUTCOMES:
            raise ValidationIssue(
                f"outcome must be one of: {', '.join(OUTCOMES)}",
                field="outcome",
                error_type="invalid_value",
            )
        return outcome.strip().lower()

    def update_access_outcome(
        self,
        access_id: str,
        tenant_id: str,
        outcome: str,
        outcome_score: Optional[float] = None,
    ) -> AccessRecord:
        tenant_id = require_tenant_id_value(tenant_id)
        outcome = self._normalize_outcome(outcome, outcome_score)
        db = self.session()
        try:
            row = (
                db.query(MemoryAccess)
                .filter(MemoryAccess.tenant_id == tenant_id)
                .filter(MemoryAccess.id == access_id)
                .first()
            )
            if not row:
                raise AccessNotFoundError(f"Access record not found: {access_id}")
            row.outcome = outcome
            row.outcome_score = outcome_score
            db.commit()
            db.refresh(row)
            return AccessRecord.from_row(row)
        finally:
            db.close()

    def list_accesses(self, memory_id: str, tenant_id: str, limit: int = MAX_RESULT_LIMIT) -> List[AccessRecord]:
        tenant_id = require_tenant_id_value(tenant_id)
        db = self.session()
        try:
            rows = (
                db.query(MemoryAccess)
                .filter(MemoryAccess.tenant_id == tenant_id)
                .filter(MemoryAccess.memory_id == memory_id)
                .order_by(MemoryAccess.created_at.desc())
                .limit(limit)
                .all()
            )
            return [AccessRecord.from_row(row) for row in rows]
        finally:
            db.close()

    def count_accesses(self, memory_ids: Sequence[str], tenant_id: str) -> Dict[str, int]:
        tenant_id = require_tenant_id_value(tenant_id)
        ids = list(dict.fromkeys(memory_ids))
        counts: Dict[str, int] = {memory_id: 0 for memory_id in ids}
        if not ids:
            return counts
        db = self.session()
        try:
            for batch in chunked(ids, 500):
                rows = (
                    db.query(MemoryAccess.memory_id, func.count(MemoryAccess.id))
                    .filter(MemoryAccess.tenant_id == tenant_id)
                    .filter(MemoryAccess.memory_id.in_(batch))
                    .group_by(MemoryAccess.memory_id)
                    .all()
                )
                for memory_id, count in rows:
                    counts[memory_id] = int(count)
        finally:
            db.close()
        return counts

    def recompute_importance_from_access(self, memory_id: str, tenant_id: str) -> float:
        """Derive importance from how often, how well and how recently a memory was used."""
        tenant_id = require_tenant_id_value(tenant_id)
        db = self.session()
        try:
            row = self._scoped(db, tenant_id).filter(Memory.id == memory_id).first()
            if not row:
                raise MemoryNotFoundError(memory_id)
            accesses = (
                db.query(MemoryAccess)
                .filter(MemoryAccess.tenant_id == tenant_id)
                .filter(MemoryAccess.memory_id == memory_id)
                .all()
            )
            if not accesses:
                importance = DEFAULT_IMPORTANCE
            else:
                usage = min(len(accesses) / ACCESS_USAGE_CAP, 1.0)
                scores = [a.outcome_score for a in accesses if a.outcome_score is not None]
                outcome = sum(scores) / len(scores) if scores else 0.5
                last_access = max(as_utc(a.created_at) for a in accesses)
                days = (utcnow() - last_access) / timedelta(days=1)
                recency = max(0.0, 1.0 - days / ACCESS_RECENCY_WINDOW_DAYS)
                importance = clamp_unit(
                    usage * ACCESS_USAGE_WEIGHT
                    + outcome * ACCESS_OUTCOME_WEIGHT
                    + recency * ACCESS_RECENCY_WEIGHT
                )
            row.importance_score = importance
            row.updated_at = utcnow()
            db.commit()
            return importance
        finally:
            db.close()


__all__ = ["MemoryStore", "OUTCOMES"]
