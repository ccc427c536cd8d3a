"""Memory engine schema: memories, relationships, access log, persisted contexts.

Revision ID: 0001_memory_schema
Revises:
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_memory_schema"
down_revision = None
branch_labels = None
depends_on = None


TENANT_ID_DEFAULT = "system"


def _tenant_column() -> sa.Column:
    return sa.Column(
        "tenant_id",
        sa.String(100),
        nullable=False,
        server_default=TENANT_ID_DEFAULT,
    )


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"

    json_type = postgresql.JSONB() if is_postgres else sa.JSON()

    # =============================================================================
    # Memories
    # =============================================================================
    op.create_table(
        "memories",
        sa.Column("id", sa.String(36), nullable=False),
        _tenant_column(),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("embedding", json_type, nullable=True),
        sa.Column("memory_type", sa.String(50), nullable=False),
        sa.Column("importance_score", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("summary_id", sa.String(36), nullable=True),
        sa.Column("metadata", json_type, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("content != ''", name="ck_memories_content"),
    )
    op.create_index("ix_memories_tenant_type", "memories", ["tenant_id", "memory_type"])
    op.create_index("ix_memories_tenant_user", "memories", ["tenant_id", "user_id"])
    op.create_index("ix_memories_tenant_created", "memories", ["tenant_id", "created_at"])
    op.create_index("ix_memories_summary_id", "memories", ["summary_id"])

    # =============================================================================
    # Memory Relationships
    # =============================================================================
    op.create_table(
        "memory_relationships",
        sa.Column("id", sa.String(36), nullable=False),
        _tenant_column(),
        sa.Column("source_id", sa.String(36), nullable=False),
        sa.Column("target_id", sa.String(36), nullable=False),
        sa.Column("relationship_type", sa.String(50), nullable=False),
        sa.Column("strength", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("metadata", json_type, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("source_id != target_id", name="ck_memory_relationships_distinct"),
        sa.CheckConstraint(
            "strength >= 0 AND strength <= 1",
            name="ck_memory_relationships_strength",
        ),
        sa.UniqueConstraint(
            "tenant_id",
            "source_id",
            "target_id",
            "relationship_type",
            name="uq_memory_relationships_unique",
        ),
    )
    op.create_index(
        "ix_memory_relationships_source",
        "memory_relationships",
        ["tenant_id", "source_id"],
    )
    op.create_index(
        "ix_memory_relationships_target",
        "memory_relationships",
        ["tenant_id", "target_id"],
    )
    op.create_index(
        "ix_memory_relationships_type",
        "memory_relationships",
        ["tenant_id", "relationship_type"],
    )

    # =============================================================================
    # Access Log
    # =============================================================================
    op.create_table(
        "memory_access",
        sa.Column("id", sa.String(36), nullable=False),
        _tenant_column(),
        sa.Column("memory_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column("access_type", sa.String(50), nullable=False),
        sa.Column("context", sa.Text(), nullable=True),
        sa.Column("outcome", sa.String(50), nullable=True),
        sa.Column("outcome_score", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_memory_access_memory", "memory_access", ["tenant_id", "memory_id"])
    op.create_index("ix_memory_access_created", "memory_access", ["tenant_id", "created_at"])

    # =============================================================================
    # Persisted Contexts
    # =============================================================================
    op.create_table(
        "memory_contexts",
        sa.Column("id", sa.String(36), nullable=False),
        _tenant_column(),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("token_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("memory_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_importance", sa.Float(), nullable=False, server_default="0"),
        sa.Column("context_utilization", sa.Float(), nullable=False, server_default="0"),
        sa.Column("truncated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("relevance_score", sa.Float(), nullable=True),
        sa.Column("usefulness_score", sa.Float(), nullable=True),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_memory_contexts_tenant_user", "memory_contexts", ["tenant_id", "user_id"])
    op.create_index("ix_memory_contexts_expires", "memory_contexts", ["tenant_id", "expires_at"])

    op.create_table(
        "memory_context_items",
        sa.Column("id", sa.String(36), nullable=False),
        _tenant_column(),
        sa.Column("context_id", sa.String(36), nullable=False),
        sa.Column("memory_id", sa.String(36), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("token_count", sa.Integer(), nullable=False),
        sa.Column("importance_score", sa.Float(), nullable=False),
        sa.Column("compressed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["context_id"],
            ["memory_contexts.id"],
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("context_id", "position", name="uq_memory_context_items_position"),
    )
    op.create_index(
        "ix_memory_context_items_memory",
        "memory_context_items",
        ["tenant_id", "memory_id"],
    )


def downgrade() -> None:
    op.drop_table("memory_context_items")
    op.drop_table("memory_contexts")
    op.drop_table("memory_access")
    op.drop_table("memory_relationships")
    op.drop_table("memories")
