"""
Relationship graph builder.

Turns nearest-neighbour matches from the vector store into a symmetric set of
labelled edges. Every edge is written in both directions with the same
similarity, strength and label, and re-running discovery updates rows in
place instead of duplicating them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import core.config as config
from core.audit import log_event
from core.audit_constants import EVENT_GRAPH_BACKFILLED
from core.db import DB
from core.errors import VectorStoreUnavailableError
from core.models import (
    EdgeStatus,
    EmbeddingVector,
    ItemType,
    LibraryItem,
    RelationshipEdge,
    RelationshipLabel,
)
from core.services.engine_shared import _isoformat, _utcnow, logger, service_tool
from core.services.vector_store import nearest_neighbors
from core.validators import (
    validate_item_id,
    validate_item_type,
    validate_limit,
    validate_owner_id,
    validate_threshold,
)

EDGE_DESCRIPTION = "Automatically detected relationship based on content similarity."
EDGE_METHOD = "vector_similarity"

# (minimum strength, label), checked top-down
STRENGTH_TIERS: tuple[tuple[float, RelationshipLabel], ...] = (
    (90.0, RelationshipLabel.identical),
    (80.0, RelationshipLabel.extension),
    (70.0, RelationshipLabel.shared_topic),
)

DISCOVER_ATTEMPTS = 2


def strength_from_similarity(similarity: float) -> float:
    strength = round(similarity * 100, 2)
    return min(100.0, max(0.0, strength))


def classify_strength(strength: float) -> str:
    for minimum, label in STRENGTH_TIERS:
        if strength >= minimum:
            return label.value
    return RelationshipLabel.tangential.value


def _upsert_edge(
    db,
    *,
    owner_id: str,
    item_type: str,
    source_item_id: str,
    related_item_id: str,
    similarity: float,
    strength: float,
    label: str,
    now: datetime,
) -> RelationshipEdge:
    existing = (
        db.query(RelationshipEdge)
        .filter(RelationshipEdge.item_type == item_type)
        .filter(RelationshipEdge.source_item_id == source_item_id)
        .filter(RelationshipEdge.related_item_id == related_item_id)
        .first()
    )
    if existing:
        existing.owner_id = owner_id
        existing.similarity = similarity
        existing.strength = strength
        existing.relationship_label = label
        existing.status = EdgeStatus.completed.value
        existing.updated_at = now
        return existing

    edge = RelationshipEdge(
        owner_id=owner_id,
        item_type=item_type,
        source_item_id=source_item_id,
        related_item_id=related_item_id,
        relationship_label=label,
        strength=strength,
        similarity=similarity,
        status=EdgeStatus.completed.value,
        description=EDGE_DESCRIPTION,
        metadata_={"method": EDGE_METHOD, "similarity_score": similarity},
        created_at=now,
        updated_at=now,
    )
    db.add(edge)
    return edge


def _write_edges(db, owner_id, item_type, source_item_id, matches) -> int:
    now = _utcnow()
    written = 0
    for related_item_id, similarity in matches:
        strength = strength_from_similarity(similarity)
        label = classify_strength(strength)
        for source, related in (
            (source_item_id, related_item_id),
            (related_item_id, source_item_id),
        ):
            _upsert_edge(
                db,
                owner_id=owner_id,
                item_type=item_type,
                source_item_id=source,
                related_item_id=related,
                similarity=similarity,
                strength=strength,
                label=label,
                now=now,
            )
            written += 1
        db.flush()
    return written


def discover(
    db,
    owner_id: str,
    source_item_id: str,
    item_type: str = ItemType.document.value,
    similarity_threshold: Optional[float] = None,
    neighbor_limit: Optional[int] = None,
) -> int:
    """
    Link an item to its nearest neighbours of the same owner and type.

    Returns the number of edge rows written, counting both directions.
    An item without a vector is a no-op returning 0.
    """
    owner_id = validate_owner_id(owner_id)
    source_item_id = validate_item_id(source_item_id, "source_item_id")
    item_type = validate_item_type(item_type)
    if similarity_threshold is None:
        similarity_threshold = config.GRAPH_SIMILARITY_THRESHOLD
    if neighbor_limit is None:
        neighbor_limit = config.GRAPH_NEIGHBOR_LIMIT
    validate_threshold(similarity_threshold, "similarity_threshold")
    validate_limit(neighbor_limit, "neighbor_limit", config.MAX_RESULT_LIMIT)

    for attempt in range(DISCOVER_ATTEMPTS):
        matches = nearest_neighbors(
            db, owner_id, item_type, source_item_id, similarity_threshold, neighbor_limit
        )
        if matches is None:
            logger.info(
                "discover_skipped_missing_vector",
                extra={"owner_id": owner_id, "item_type": item_type, "item_id": source_item_id},
            )
            return 0
        try:
            written = _write_edges(db, owner_id, item_type, source_item_id, matches)
            db.commit()
        except IntegrityError:
            # a concurrent discover inserted one of our pairs first
            db.rollback()
            if attempt + 1 >= DISCOVER_ATTEMPTS:
                raise
            logger.info(
                "discover_retry_after_conflict",
                extra={"owner_id": owner_id, "item_id": source_item_id},
            )
            continue
        logger.info(
            "discover_complete",
            extra={
                "owner_id": owner_id,
                "item_type": item_type,
                "item_id": source_item_id,
                "matches": len(matches),
                "edges_written": written,
            },
        )
        return written
    return 0


def backfill(db, owner_id: str, item_type: Optional[str] = None) -> dict:
    """Re-run discovery for every item of the owner that has a vector."""
    owner_id = validate_owner_id(owner_id)
    if item_type is not None:
        item_type = validate_item_type(item_type)

    query = db.query(EmbeddingVector.item_type, EmbeddingVector.item_id).filter(
        EmbeddingVector.owner_id == owner_id
    )
    if item_type:
        query = query.filter(EmbeddingVector.item_type == item_type)
    items = query.order_by(EmbeddingVector.item_type, EmbeddingVector.item_id).all()

    edges_written = 0
    failed_items = []
    for row in items:
        try:
            edges_written += discover(db, owner_id, row.item_id, row.item_type)
        except (VectorStoreUnavailableError, SQLAlchemyError) as exc:
            db.rollback()
            failed_items.append(row.item_id)
            logger.warning(
                "backfill_item_failed",
                extra={"owner_id": owner_id, "item_id": row.item_id, "error": str(exc)},
            )

    log_event(
        db,
        event_type=EVENT_GRAPH_BACKFILLED,
        actor_type="system",
        owner_id=owner_id,
        target_type="graph",
        target_ids=[owner_id],
        count_affected=edges_written,
        metadata={
            "items_processed": len(items),
            "failed_items": len(failed_items),
            "item_type": item_type,
        },
    )
    db.commit()
    return {
        "items_processed": len(items),
        "edges_written": edges_written,
        "failed_items": failed_items,
    }


def get_related_items(
    db,
    owner_id: str,
    item_type: str,
    item_id: str,
    limit: Optional[int] = None,
) -> list[dict]:
    """Edges leaving an item, strongest first, with document titles when known."""
    owner_id = validate_owner_id(owner_id)
    item_type = validate_item_type(item_type)
    item_id = validate_item_id(item_id)
    limit = config.MAX_RESULT_LIMIT if limit is None else limit
    validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)

    rows = (
        db.query(RelationshipEdge, LibraryItem.title)
        .outerjoin(
            LibraryItem,
            (LibraryItem.id == RelationshipEdge.related_item_id)
            & (RelationshipEdge.item_type == ItemType.document.value),
        )
        .filter(RelationshipEdge.owner_id == owner_id)
        .filter(RelationshipEdge.item_type == item_type)
        .filter(RelationshipEdge.source_item_id == item_id)
        .order_by(RelationshipEdge.strength.desc(), RelationshipEdge.created_at.desc())
        .limit(limit)
        .all()
    )
    return [serialize_edge(edge, title=title) for edge, title in rows]


def serialize_edge(edge: RelationshipEdge, title: Optional[str] = None) -> dict:
    return {
        "id": str(edge.id),
        "owner_id": edge.owner_id,
        "item_type": edge.item_type,
        "source_item_id": edge.source_item_id,
        "related_item_id": edge.related_item_id,
        "related_title": title,
        "relationship_label": edge.relationship_label,
        "strength": edge.strength,
        "similarity": edge.similarity,
        "status": edge.status,
        "description": edge.description,
        "metadata": edge.metadata_,
        "created_at": _isoformat(edge.created_at),
        "updated_at": _isoformat(edge.updated_at),
    }


# =============================================================================
# Service tools
# =============================================================================

@service_tool
def discover_relationships(
    owner_id: str,
    item_id: str,
    item_type: str = ItemType.document.value,
    similarity_threshold: Optional[float] = None,
    neighbor_limit: Optional[int] = None,
) -> dict:
    db = DB.SessionLocal()
    try:
        written = discover(db, owner_id, item_id, item_type, similarity_threshold, neighbor_limit)
        return {"status": "ok", "item_id": item_id, "edges_written": written}
    finally:
        db.close()


@service_tool
def backfill_relationships(owner_id: str, item_type: Optional[str] = None) -> dict:
    db = DB.SessionLocal()
    try:
        return {"status": "ok", "owner_id": owner_id, **backfill(db, owner_id, item_type)}
    finally:
        db.close()


@service_tool
def related_items(
    owner_id: str,
    item_id: str,
    item_type: str = ItemType.document.value,
    limit: Optional[int] = None,
) -> dict:
    db = DB.SessionLocal()
    try:
        results = get_related_items(db, owner_id, item_type, item_id, limit)
        return {"status": "ok", "item_id": item_id, "count": len(results), "results": results}
    finally:
        db.close()
