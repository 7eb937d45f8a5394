"""Create embedding queue, vector store, relationship graph and profile tables.

Revision ID: 0001_readgraph_schema
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

import core.config as config


revision = "0001_readgraph_schema"
down_revision = None
branch_labels = None
depends_on = None


ACTIVE_JOB_PREDICATE = "status IN ('pending', 'processing')"


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON
    uuid_type = postgresql.UUID(as_uuid=True) if is_postgres else sa.String(length=36)
    if is_postgres and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from pgvector.sqlalchemy import Vector

        vector_type = Vector(config.EMBEDDING_DIM)
    else:
        vector_type = sa.JSON

    op.create_table(
        "embedding_jobs",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("item_type", sa.String(length=32), nullable=False),
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text()),
        sa.Column("lease_token", sa.String(length=36)),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_embedding_jobs_status",
        ),
        sa.CheckConstraint(
            "item_type IN ('note', 'highlight', 'document', 'external_paper')",
            name="ck_embedding_jobs_item_type",
        ),
    )
    op.create_index(
        "uq_embedding_jobs_active_item",
        "embedding_jobs",
        ["item_type", "item_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_JOB_PREDICATE),
        sqlite_where=sa.text(ACTIVE_JOB_PREDICATE),
    )
    op.create_index(
        "ix_embedding_jobs_lease_order",
        "embedding_jobs",
        ["status", "priority", "created_at"],
    )
    op.create_index("ix_embedding_jobs_owner", "embedding_jobs", ["owner_id"])

    op.create_table(
        "embedding_vectors",
        sa.Column("item_type", sa.String(length=32), primary_key=True),
        sa.Column("item_id", sa.String(length=64), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("vector", vector_type, nullable=False),
        sa.Column("model_version", sa.String(length=100)),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_embedding_vectors_owner_type",
        "embedding_vectors",
        ["owner_id", "item_type"],
    )

    op.create_table(
        "relationship_edges",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("item_type", sa.String(length=32), nullable=False, server_default="document"),
        sa.Column("source_item_id", sa.String(length=64), nullable=False),
        sa.Column("related_item_id", sa.String(length=64), nullable=False),
        sa.Column("relationship_label", sa.String(length=50), nullable=False),
        sa.Column("strength", sa.Float(), nullable=False),
        sa.Column("similarity", sa.Float(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="completed"),
        sa.Column("description", sa.Text()),
        sa.Column("metadata", json_type),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("source_item_id != related_item_id", name="ck_relationship_edges_distinct"),
        sa.CheckConstraint("strength >= 0 AND strength <= 100", name="ck_relationship_edges_strength"),
        sa.UniqueConstraint(
            "item_type",
            "source_item_id",
            "related_item_id",
            name="uq_relationship_edges_pair",
        ),
    )
    op.create_index(
        "ix_relationship_edges_owner_source",
        "relationship_edges",
        ["owner_id", "item_type", "source_item_id"],
    )
    op.create_index(
        "ix_relationship_edges_related",
        "relationship_edges",
        ["item_type", "related_item_id"],
    )

    op.create_table(
        "interest_profiles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False, unique=True),
        sa.Column("aggregate_vector", vector_type, nullable=True),
        sa.Column("top_concepts", json_type),
        sa.Column("interest_trends", json_type),
        sa.Column("sample_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("note_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("highlight_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lookback_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("last_computed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "content_items",
        sa.Column("item_type", sa.String(length=32), primary_key=True),
        sa.Column("item_id", sa.String(length=64), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("text", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_content_items_owner_type_created",
        "content_items",
        ["owner_id", "item_type", "created_at"],
    )

    op.create_table(
        "series",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
    )

    op.create_table(
        "library_items",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("title", sa.String(length=500)),
        sa.Column("reading_progress", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_favorite", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_read_at", sa.DateTime(timezone=True)),
        sa.Column("archived_at", sa.DateTime(timezone=True)),
        sa.Column(
            "series_id",
            sa.Integer(),
            sa.ForeignKey("series.id", ondelete="SET NULL"),
        ),
        sa.Column("series_order", sa.Integer()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_library_items_owner_progress",
        "library_items",
        ["owner_id", "reading_progress"],
    )
    op.create_index(
        "ix_library_items_series",
        "library_items",
        ["series_id", "series_order"],
    )

    op.create_table(
        "collections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
    )
    op.create_table(
        "collection_memberships",
        sa.Column(
            "collection_id",
            sa.Integer(),
            sa.ForeignKey("collections.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "item_id",
            sa.String(length=64),
            sa.ForeignKey("library_items.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
    )
    op.create_table(
        "tag_assignments",
        sa.Column(
            "tag_id",
            sa.Integer(),
            sa.ForeignKey("tags.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "item_id",
            sa.String(length=64),
            sa.ForeignKey("library_items.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )

    op.create_table(
        "audit_events",
        sa.Column("event_id", uuid_type, primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=255)),
        sa.Column("owner_id", sa.String(length=100)),
        sa.Column("target_type", sa.String(length=50), nullable=False),
        sa.Column("target_ids", json_type, nullable=False),
        sa.Column("count_affected", sa.Integer()),
        sa.Column("reason", sa.Text()),
        sa.Column("metadata", json_type),
    )
    op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_owner_id", "audit_events", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_owner_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_created_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("tag_assignments")
    op.drop_table("tags")
    op.drop_table("collection_memberships")
    op.drop_table("collections")
    op.drop_index("ix_library_items_series", table_name="library_items")
    op.drop_index("ix_library_items_owner_progress", table_name="library_items")
    op.drop_table("library_items")
    op.drop_table("series")
    op.drop_index("ix_content_items_owner_type_created", table_name="content_items")
    op.drop_table("content_items")
    op.drop_table("interest_profiles")
    op.drop_index("ix_relationship_edges_related", table_name="relationship_edges")
    op.drop_index("ix_relationship_edges_owner_source", table_name="relationship_edges")
    op.drop_table("relationship_edges")
    op.drop_index("ix_embedding_vectors_owner_type", table_name="embedding_vectors")
    op.drop_table("embedding_vectors")
    op.drop_index("ix_embedding_jobs_owner", table_name="embedding_jobs")
    op.drop_index("ix_embedding_jobs_lease_order", table_name="embedding_jobs")
    op.drop_index("uq_embedding_jobs_active_item", table_name="embedding_jobs")
    op.drop_table("embedding_jobs")
