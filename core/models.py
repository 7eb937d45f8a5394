"""
ReadGraph Database Models
PostgreSQL + pgvector schema (SQLite + JSON vectors for local runs)
"""

from datetime import datetime
from enum import Enum as PyEnum
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean,
    DateTime, ForeignKey, CheckConstraint, Index, UniqueConstraint, JSON, text
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship, declarative_base
from pgvector.sqlalchemy import Vector as PgVector

import core.config as config

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE
VECTOR_BACKEND_EFFECTIVE = config.VECTOR_BACKEND_EFFECTIVE

if DB_BACKEND_EFFECTIVE == "postgres" and VECTOR_BACKEND_EFFECTIVE == "pgvector":
    EMBEDDING_COLUMN_TYPE = PgVector(config.EMBEDDING_DIM)
else:
    EMBEDDING_COLUMN_TYPE = JSON(none_as_null=True)

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON
UUID_TYPE = UUID(as_uuid=True) if DB_BACKEND_EFFECTIVE == "postgres" else String(36)


def _uuid_default() -> str | uuid.UUID:
    value = uuid.uuid4()
    return value if DB_BACKEND_EFFECTIVE == "postgres" else str(value)

Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class ItemType(str, PyEnum):
    note = "note"
    highlight = "highlight"
    document = "document"
    external_paper = "external_paper"


class JobStatus(str, PyEnum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class EdgeStatus(str, PyEnum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class RelationshipLabel(str, PyEnum):
    identical = "Identical"
    extension = "Extension / Follow-up"
    shared_topic = "Shared Topic"
    tangential = "Related (Tangential)"


ITEM_TYPES: tuple[str, ...] = tuple(item.value for item in ItemType)
ACTIVE_JOB_STATUSES: tuple[str, ...] = (JobStatus.pending.value, JobStatus.processing.value)
_ACTIVE_JOB_PREDICATE = text("status IN ('pending', 'processing')")


# =============================================================================
# Embedding Jobs
# =============================================================================

class EmbeddingJob(Base):
    __tablename__ = "embedding_jobs"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    owner_id = Column(String(100), nullable=False)
    item_type = Column(String(32), nullable=False)
    item_id = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.pending.value)
    priority = Column(Integer, nullable=False, default=5)  # higher = more urgent
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error_message = Column(Text)
    lease_token = Column(String(36))
    lease_expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_embedding_jobs_status",
        ),
        CheckConstraint(
            "item_type IN ('note', 'highlight', 'document', 'external_paper')",
            name="ck_embedding_jobs_item_type",
        ),
        # one active job per item
        Index(
            "uq_embedding_jobs_active_item",
            "item_type",
            "item_id",
            unique=True,
            postgresql_where=_ACTIVE_JOB_PREDICATE,
            sqlite_where=_ACTIVE_JOB_PREDICATE,
        ),
        Index("ix_embedding_jobs_lease_order", "status", "priority", "created_at"),
        Index("ix_embedding_jobs_owner", "owner_id"),
    )


# =============================================================================
# Embedding Vectors (one per item, overwritten on regeneration)
# =============================================================================

class EmbeddingVector(Base):
    __tablename__ = "embedding_vectors"

    item_type = Column(String(32), primary_key=True)
    item_id = Column(String(64), primary_key=True)
    owner_id = Column(String(100), nullable=False)
    vector = Column(EMBEDDING_COLUMN_TYPE, nullable=False)
    model_version = Column(String(100))
    generated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_embedding_vectors_owner_type", "owner_id", "item_type"),
    )


# =============================================================================
# Relationship Edges (symmetric similarity graph)
# =============================================================================

class RelationshipEdge(Base):
    __tablename__ = "relationship_edges"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    owner_id = Column(String(100), nullable=False)
    item_type = Column(String(32), nullable=False, default=ItemType.document.value)
    source_item_id = Column(String(64), nullable=False)
    related_item_id = Column(String(64), nullable=False)
    relationship_label = Column(String(50), nullable=False)
    strength = Column(Float, nullable=False)  # 0-100
    similarity = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default=EdgeStatus.completed.value)
    description = Column(Text)
    metadata_ = Column("metadata", JSON_TYPE, nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("source_item_id != related_item_id", name="ck_relationship_edges_distinct"),
        CheckConstraint("strength >= 0 AND strength <= 100", name="ck_relationship_edges_strength"),
        UniqueConstraint(
            "item_type",
            "source_item_id",
            "related_item_id",
            name="uq_relationship_edges_pair",
        ),
        Index("ix_relationship_edges_owner_source", "owner_id", "item_type", "source_item_id"),
        Index("ix_relationship_edges_related", "item_type", "related_item_id"),
    )


# =============================================================================
# Interest Profiles
# =============================================================================

class InterestProfile(Base):
    __tablename__ = "interest_profiles"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False, unique=True)
    aggregate_vector = Column(EMBEDDING_COLUMN_TYPE, nullable=True)
    top_concepts = Column(JSON_TYPE, default=list)  # [{term, frequency, importance, ...}]
    interest_trends = Column(JSON_TYPE, default=dict)  # {emerging, declining, stable}
    sample_count = Column(Integer, default=0, nullable=False)
    note_count = Column(Integer, default=0, nullable=False)
    highlight_count = Column(Integer, default=0, nullable=False)
    lookback_days = Column(Integer, default=30, nullable=False)
    last_computed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


# =============================================================================
# Library collaborators (written by the host application, read by the engine)
# =============================================================================

class ContentItem(Base):
    """Source text for anything that gets an embedding."""
    __tablename__ = "content_items"

    item_type = Column(String(32), primary_key=True)
    item_id = Column(String(64), primary_key=True)
    owner_id = Column(String(100), nullable=False)
    text = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_content_items_owner_type_created", "owner_id", "item_type", "created_at"),
    )


class Series(Base):
    __tablename__ = "series"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)

    items = relationship("LibraryItem", back_populates="series", order_by="LibraryItem.series_order")


class LibraryItem(Base):
    __tablename__ = "library_items"

    id = Column(String(64), primary_key=True)
    owner_id = Column(String(100), nullable=False)
    title = Column(String(500))
    reading_progress = Column(Float, default=0.0, nullable=False)  # 0-100
    is_favorite = Column(Boolean, default=False, nullable=False)
    last_read_at = Column(DateTime(timezone=True))
    archived_at = Column(DateTime(timezone=True))
    series_id = Column(Integer, ForeignKey("series.id", ondelete="SET NULL"))
    series_order = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    series = relationship("Series", back_populates="items")

    __table_args__ = (
        Index("ix_library_items_owner_progress", "owner_id", "reading_progress"),
        Index("ix_library_items_series", "series_id", "series_order"),
    )


class Collection(Base):
    __tablename__ = "collections"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)


class CollectionMembership(Base):
    __tablename__ = "collection_memberships"

    collection_id = Column(Integer, ForeignKey("collections.id", ondelete="CASCADE"), primary_key=True)
    item_id = Column(String(64), ForeignKey("library_items.id", ondelete="CASCADE"), primary_key=True)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False)
    name = Column(String(100), nullable=False)


class TagAssignment(Base):
    __tablename__ = "tag_assignments"

    tag_id = Column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)
    item_id = Column(String(64), ForeignKey("library_items.id", ondelete="CASCADE"), primary_key=True)


# =============================================================================
# Audit Events
# =============================================================================

class AuditEvent(Base):
    __tablename__ = "audit_events"

    event_id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    event_type = Column(String(100), nullable=False)
    event_version = Column(Integer, default=1, nullable=False)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(255))
    owner_id = Column(String(100))
    target_type = Column(String(50), nullable=False)
    target_ids = Column(JSON_TYPE, nullable=False)
    count_affected = Column(Integer)
    reason = Column(Text)
    metadata_ = Column("metadata", JSON_TYPE)

    __table_args__ = (
        Index("ix_audit_events_created_at", "created_at"),
        Index("ix_audit_events_event_type", "event_type"),
        Index("ix_audit_events_owner_id", "owner_id"),
    )


__all__ = [
    "Base",
    "ItemType",
    "JobStatus",
    "EdgeStatus",
    "RelationshipLabel",
    "ITEM_TYPES",
    "ACTIVE_JOB_STATUSES",
    "EmbeddingJob",
    "EmbeddingVector",
    "RelationshipEdge",
    "InterestProfile",
    "ContentItem",
    "Series",
    "LibraryItem",
    "Collection",
    "CollectionMembership",
    "Tag",
    "TagAssignment",
    "AuditEvent",
]
