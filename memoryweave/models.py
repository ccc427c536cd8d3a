"""
MemoryWeave Database Models
PostgreSQL or SQLite schema
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean,
    DateTime, ForeignKey, CheckConstraint, Index, UniqueConstraint, JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base

import memoryweave.config as config

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE
DEFAULT_TENANT_ID = config.DEFAULT_TENANT_ID

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON


def _uuid_default() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive timestamps; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class MemoryType(str, PyEnum):
    observation = "observation"
    decision = "decision"
    feedback = "feedback"
    interaction = "interaction"
    tactic = "tactic"
    preference = "preference"
    insight = "insight"


class RelationshipType(str, PyEnum):
    caused = "caused"
    related_to = "related_to"
    contradicts = "contradicts"
    supports = "supports"
    follows = "follows"
    precedes = "precedes"
    summarizes = "summarizes"


class AccessType(str, PyEnum):
    retrieve = "retrieve"
    search = "search"
    analyze = "analyze"
    apply = "apply"


MEMORY_TYPES: tuple[str, ...] = tuple(item.value for item in MemoryType)
RELATIONSHIP_TYPES: tuple[str, ...] = tuple(item.value for item in RelationshipType)
ACCESS_TYPES: tuple[str, ...] = tuple(item.value for item in AccessType)


# =============================================================================
# Memories
# =============================================================================

class Memory(Base):
    __tablename__ = "memories"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    user_id = Column(String(100), nullable=True)
    content = Column(Text, nullable=False)
    embedding = Column(JSON_TYPE(none_as_null=True), nullable=True)  # list[float], dimension fixed per tenant
    memory_type = Column(String(50), nullable=False)
    importance_score = Column(Float, nullable=False, default=0.5)
    summary_id = Column(String(36), nullable=True)  # most recent summary covering this memory
    metadata_ = Column("metadata", JSON_TYPE, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("content != ''", name="ck_memories_content"),
        Index("ix_memories_tenant_type", "tenant_id", "memory_type"),
        Index("ix_memories_tenant_user", "tenant_id", "user_id"),
        Index("ix_memories_tenant_created", "tenant_id", "created_at"),
        Index("ix_memories_summary_id", "summary_id"),
    )


# =============================================================================
# Relationships (directed, typed edges; cycles allowed)
# =============================================================================

class MemoryRelationship(Base):
    __tablename__ = "memory_relationships"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    source_id = Column(String(36), nullable=False)
    target_id = Column(String(36), nullable=False)
    relationship_type = Column(String(50), nullable=False)
    strength = Column(Float, nullable=False, default=1.0)
    metadata_ = Column("metadata", JSON_TYPE, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("source_id != target_id", name="ck_memory_relationships_distinct"),
        CheckConstraint("strength >= 0 AND strength <= 1", name="ck_memory_relationships_strength"),
        UniqueConstraint(
            "tenant_id",
            "source_id",
            "target_id",
            "relationship_type",
            name="uq_memory_relationships_unique",
        ),
        Index("ix_memory_relationships_source", "tenant_id", "source_id"),
        Index("ix_memory_relationships_target", "tenant_id", "target_id"),
        Index("ix_memory_relationships_type", "tenant_id", "relationship_type"),
    )


# =============================================================================
# Access log (append-only usage signal)
# =============================================================================

class MemoryAccess(Base):
    __tablename__ = "memory_access"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    memory_id = Column(String(36), nullable=False)
    user_id = Column(String(100), nullable=True)
    access_type = Column(String(50), nullable=False)
    context = Column(Text, nullable=True)
    outcome = Column(String(50), nullable=True)  # positive, negative, neutral
    outcome_score = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_memory_access_memory", "tenant_id", "memory_id"),
        Index("ix_memory_access_created", "tenant_id", "created_at"),
    )


# =============================================================================
# Persisted contexts
# =============================================================================

class MemoryContext(Base):
    __tablename__ = "memory_contexts"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    user_id = Column(String(100), nullable=True)
    query = Column(Text, nullable=False)
    token_count = Column(Integer, nullable=False, default=0)
    memory_count = Column(Integer, nullable=False, default=0)
    average_importance = Column(Float, nullable=False, default=0.0)
    context_utilization = Column(Float, nullable=False, default=0.0)
    truncated = Column(Boolean, nullable=False, default=False)
    relevance_score = Column(Float, nullable=True)
    usefulness_score = Column(Float, nullable=True)
    feedback = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship(
        "MemoryContextItem",
        back_populates="context",
        cascade="all, delete-orphan",
        order_by="MemoryContextItem.position",
    )

    __table_args__ = (
        Index("ix_memory_contexts_tenant_user", "tenant_id", "user_id"),
        Index("ix_memory_contexts_expires", "tenant_id", "expires_at"),
    )


class MemoryContextItem(Base):
    __tablename__ = "memory_context_items"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    context_id = Column(String(36), ForeignKey("memory_contexts.id", ondelete="CASCADE"), nullable=False)
    memory_id = Column(String(36), nullable=False)
    position = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)  # as placed in the window, possibly compressed
    token_count = Column(Integer, nullable=False)
    importance_score = Column(Float, nullable=False)
    compressed = Column(Boolean, nullable=False, default=False)

    context = relationship("MemoryContext", back_populates="items")

    __table_args__ = (
        UniqueConstraint("context_id", "position", name="uq_memory_context_items_position"),
        Index("ix_memory_context_items_memory", "tenant_id", "memory_id"),
    )
