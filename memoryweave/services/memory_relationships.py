"""
Memory relationship services for typed, directed edges between memories.

Supports:
- Idempotent upserts keyed by (tenant, source, target, type)
- Chunked batch creation, and in-session upserts for atomic summary and chain writes
- Neighbour lookup and per-memory edge counts
- Bounded-depth, cycle-safe graph walks

The graph is an edge list keyed by memory id; it may contain cycles.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

import memoryweave.config as config
from memoryweave.context import require_tenant_id_value
from memoryweave.errors import MemoryNotFoundError, MemoryRelationshipNotFoundError, ValidationIssue
from memoryweave.models import Memory, MemoryRelationship, utcnow
from memoryweave.records import RelationshipRecord
from memoryweave.services.memory_shared import (
    WRITE_BATCH_SIZE,
    _validate_metadata,
    chunked,
    logger,
    open_session,
)
from memoryweave.validators import normalize_relationship_type


WALK_DIRECTIONS = ("outgoing", "incoming", "both")


@dataclass(frozen=True)
class EdgeSpec:
    source_id: str
    target_id: str
    relationship_type: str
    strength: float = 1.0
    metadata: dict = field(default_factory=dict)


def _normalize_strength(strength: Optional[float]) -> float:
    if strength is None:
        return 1.0
    if isinstance(strength, bool) or not isinstance(strength, (int, float)):
        raise ValidationIssue(
            "strength must be a number",
            field="strength",
            error_type="invalid_type",
        )
    value = float(strength)
    if not 0.0 <= value <= 1.0:
        raise ValidationIssue(
            "strength must be between 0 and 1",
            field="strength",
            error_type="invalid_value",
        )
    return value


def _normalize_edge(edge: EdgeSpec) -> EdgeSpec:
    if not edge.source_id or not edge.target_id:
        raise ValidationIssue(
            "source_id and target_id are required",
            field="source_id" if not edge.source_id else "target_id",
            error_type="required",
        )
    if edge.source_id == edge.target_id:
        raise ValidationIssue(
            "source_id and target_id must be different",
            field="target_id",
            error_type="invalid_value",
        )
    _validate_metadata(edge.metadata, "metadata")
    return EdgeSpec(
        source_id=edge.source_id,
        target_id=edge.target_id,
        relationship_type=normalize_relationship_type(edge.relationship_type),
        strength=_normalize_strength(edge.strength),
        metadata=dict(edge.metadata or {}),
    )


def _dedupe(edges: Sequence[EdgeSpec]) -> List[EdgeSpec]:
    # Last write wins for duplicates inside one call.
    unique: Dict[tuple, EdgeSpec] = {}
    for edge in (_normalize_edge(edge) for edge in edges):
        unique[(edge.source_id, edge.target_id, edge.relationship_type)] = edge
    return list(unique.values())


def upsert_edges(db, tenant_id: str, edges: Sequence[EdgeSpec]) -> int:
    """Upsert ``edges`` inside the caller's session; the caller commits."""
    pending = _dedupe(edges)
    for edge in pending:
        MemoryGraph._upsert(db, tenant_id, edge)
        db.flush()
    return len(pending)


class MemoryGraph:
    def __init__(self, session_factory: Optional[Callable] = None):
        self._session_factory = session_factory

    def session(self):
        return open_session(self._session_factory)

    @staticmethod
    def _scoped(db, tenant_id: str):
        return db.query(MemoryRelationship).filter(MemoryRelationship.tenant_id == tenant_id)

    @staticmethod
    def _find(db, tenant_id: str, edge: EdgeSpec) -> Optional[MemoryRelationship]:
        return (
            db.query(MemoryRelationship)
            .filter(MemoryRelationship.tenant_id == tenant_id)
            .filter(MemoryRelationship.source_id == edge.source_id)
            .filter(MemoryRelationship.target_id == edge.target_id)
            .filter(MemoryRelationship.relationship_type == edge.relationship_type)
            .first()
        )

    @staticmethod
    def _require_memories(db, tenant_id: str, memory_ids: Sequence[str]) -> None:
        wanted = set(memory_ids)
        rows = (
            db.query(Memory.id)
            .filter(Memory.tenant_id == tenant_id)
            .filter(Memory.id.in_(list(wanted)))
            .all()
        )
        missing = wanted - {row[0] for row in rows}
        if missing:
            raise MemoryNotFoundError(sorted(missing)[0])

    @staticmethod
    def _upsert(db, tenant_id: str, edge: EdgeSpec) -> tuple[MemoryRelationship, bool]:
        existing = MemoryGraph._find(db, tenant_id, edge)
        if existing:
            existing.strength = edge.strength
            merged = dict(existing.metadata_ or {})
            merged.update(edge.metadata)
            existing.metadata_ = merged
            return existing, False
        row = MemoryRelationship(
            tenant_id=tenant_id,
            source_id=edge.source_id,
            target_id=edge.target_id,
            relationship_type=edge.relationship_type,
            strength=edge.strength,
            metadata_=dict(edge.metadata),
            created_at=utcnow(),
        )
        db.add(row)
        return row, True

    def create_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship_type: str,
        tenant_id: str,
        strength: Optional[float] = 1.0,
        metadata: Optional[dict] = None,
    ) -> tuple[RelationshipRecord, bool]:
        """Create or update one edge. Returns (edge, created)."""
        tenant_id = require_tenant_id_value(tenant_id)
        edge = _normalize_edge(
            EdgeSpec(source_id, target_id, relationship_type, strength, metadata or {})
        )
        db = self.session()
        try:
            self._require_memories(db, tenant_id, [edge.source_id, edge.target_id])
            row, created = self._upsert(db, tenant_id, edge)
            try:
                db.commit()
            except IntegrityError:
                # Lost an insert race; the other writer's row is now the one to update.
                db.rollback()
                row, created = self._upsert(db, tenant_id, edge)
                db.commit()
            db.refresh(row)
            return RelationshipRecord.from_row(row), created
        finally:
            db.close()

    def create_relationships(
        self,
        edges: Sequence[EdgeSpec],
        tenant_id: str,
        batch_size: int = WRITE_BATCH_SIZE,
    ) -> int:
        """Upsert many edges, one transaction per batch. Returns the number written."""
        tenant_id = require_tenant_id_value(tenant_id)
        pending = _dedupe(edges)
        written = 0
        db = self.session()
        try:
            for batch in chunked(pending, batch_size):
                for edge in batch:
                    self._upsert(db, tenant_id, edge)
                    db.flush()
                db.commit()
                written += len(batch)
        finally:
            db.close()
        logger.info(
            "relationships_written",
            extra={"tenant_id": tenant_id, "count": written},
        )
        return written

    def delete_relationship(self, relationship_id: str, tenant_id: str) -> None:
        tenant_id = require_tenant_id_value(tenant_id)
        db = self.session()
        try:
            row = self._scoped(db, tenant_id).filter(MemoryRelationship.id == relationship_id).first()
            if not row:
                raise MemoryRelationshipNotFoundError(f"Relationship not found: {relationship_id}")
            db.delete(row)
            db.commit()
        finally:
            db.close()

    def relationships_for(
        self,
        memory_ids: Sequence[str],
        tenant_id: str,
        relationship_types: Optional[Sequence[str]] = None,
    ) -> List[RelationshipRecord]:
        """Edges touching any of ``memory_ids`` in either direction."""
        tenant_id = require_tenant_id_value(tenant_id)
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return []
        db = self.session()
        try:
            query = self._scoped(db, tenant_id).filter(
                or_(
                    MemoryRelationship.source_id.in_(ids),
                    MemoryRelationship.target_id.in_(ids),
                )
            )
            if relationship_types:
                types = [normalize_relationship_type(value) for value in relationship_types]
                query = query.filter(MemoryRelationship.relationship_type.in_(types))
            rows = query.order_by(MemoryRelationship.created_at.asc(), MemoryRelationship.id.asc()).all()
            return [RelationshipRecord.from_row(row) for row in rows]
        finally:
            db.close()

    def neighbors(
        self,
        memory_id: str,
        tenant_id: str,
        relationship_types: Optional[Sequence[str]] = None,
    ) -> List[str]:
        seen: Dict[str, None] = {}
        for edge in self.relationships_for([memory_id], tenant_id, relationship_types):
            other = edge.other_end(memory_id)
            if other != memory_id:
                seen.setdefault(other, None)
        return list(seen)

    def count_edges(self, memory_ids: Sequence[str], tenant_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {memory_id: 0 for memory_id in memory_ids}
        for edge in self.relationships_for(list(counts), tenant_id):
            if edge.source_id in counts:
                counts[edge.source_id] += 1
            if edge.target_id in counts:
                counts[edge.target_id] += 1
        return counts

    def walk(
        self,
        start_id: str,
        tenant_id: str,
        max_depth: Optional[int] = None,
        relationship_types: Optional[Sequence[str]] = None,
        direction: str = "both",
    ) -> List[tuple[str, int]]:
        """Breadth-first walk from ``start_id``; each memory is visited once.

        Returns (memory_id, depth) pairs in visit order, excluding the start.
        """
        tenant_id = require_tenant_id_value(tenant_id)
        if direction not in WALK_DIRECTIONS:
            raise ValidationIssue(
                f"direction must be one of: {', '.join(WALK_DIRECTIONS)}",
                field="direction",
                error_type="invalid_value",
            )
        depth_limit = config.GRAPH_MAX_DEPTH if max_depth is None else max_depth
        if depth_limit < 0:
            raise ValidationIssue("max_depth must be >= 0", field="max_depth", error_type="out_of_range")

        visited = {start_id}
        order: List[tuple[str, int]] = []
        frontier = deque([start_id])
        depth = 0
        while frontier and depth < depth_limit:
            depth += 1
            layer = list(frontier)
            layer_ids = set(layer)
            frontier.clear()
            for edge in self.relationships_for(layer, tenant_id, relationship_types):
                hops = []
                if direction in ("outgoing", "both") and edge.source_id in layer_ids:
                    hops.append(edge.target_id)
                if direction in ("incoming", "both") and edge.target_id in layer_ids:
                    hops.append(edge.source_id)
                for next_id in hops:
                    if next_id in visited:
                        continue
                    visited.add(next_id)
                    order.append((next_id, depth))
                    frontier.append(next_id)
        return order


__all__ = [
    "EdgeSpec",
    "MemoryGraph",
    "MemoryRelationshipNotFoundError",
    "upsert_edges",
]
