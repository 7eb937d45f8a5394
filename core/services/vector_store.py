"""
Vector store: one embedding per content item plus owner-scoped
nearest-neighbour search.

Postgres with pgvector ranks by ``cosine_distance`` in SQL. Every other
backend loads the owner's vectors and scores them in-process with numpy.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
from sqlalchemy import func, or_
from sqlalchemy.exc import OperationalError

import core.config as config
from core.audit import log_event
from core.audit_constants import EVENT_VECTOR_DELETED
from core.db import DB
from core.errors import VectorStoreUnavailableError
from core.models import ContentItem, EmbeddingVector, ITEM_TYPES, RelationshipEdge
from core.services.engine_shared import (
    EMBEDDING_MODEL,
    _isoformat,
    _utcnow,
    logger,
    service_tool,
)
from core.validators import (
    validate_item_id,
    validate_item_type,
    validate_limit,
    validate_owner_id,
    validate_threshold,
    validate_vector,
)

# float rounding slack when comparing a similarity with a threshold
SIMILARITY_EPSILON = 1e-9


def _vector_search_enabled() -> bool:
    return config.DB_BACKEND_EFFECTIVE == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"


def _as_array(vector) -> np.ndarray:
    return np.asarray(vector, dtype=np.float64)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    left = _as_array(a)
    right = _as_array(b)
    denom = float(np.linalg.norm(left) * np.linalg.norm(right))
    if denom == 0.0:
        return 0.0
    return float(np.dot(left, right) / denom)


def vectors_equal(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    # pgvector stores float32, compare at that precision
    left = np.asarray(a, dtype=np.float32)
    right = np.asarray(b, dtype=np.float32)
    return left.shape == right.shape and bool(np.array_equal(left, right))


def get_vector(db, item_type: str, item_id: str) -> Optional[EmbeddingVector]:
    return db.query(EmbeddingVector).filter(
        EmbeddingVector.item_type == item_type,
        EmbeddingVector.item_id == item_id,
    ).first()


def upsert_vector(
    db,
    owner_id: str,
    item_type: str,
    item_id: str,
    vector: Sequence[float],
    model_version: Optional[str] = None,
) -> bool:
    """
    Store the vector for an item, replacing any previous one.

    Returns True when the stored value is new or changed. The caller owns
    the transaction.
    """
    owner_id = validate_owner_id(owner_id)
    item_type = validate_item_type(item_type)
    item_id = validate_item_id(item_id)
    values = validate_vector(vector)

    existing = get_vector(db, item_type, item_id)
    if existing is None:
        db.add(EmbeddingVector(
            item_type=item_type,
            item_id=item_id,
            owner_id=owner_id,
            vector=values,
            model_version=model_version or EMBEDDING_MODEL,
            generated_at=_utcnow(),
        ))
        db.flush()
        return True

    changed = not vectors_equal(existing.vector, values)
    existing.owner_id = owner_id
    existing.vector = values
    existing.model_version = model_version or EMBEDDING_MODEL
    existing.generated_at = _utcnow()
    db.flush()
    return changed


def delete_item_vector(db, owner_id: str, item_type: str, item_id: str) -> dict:
    """
    Remove the owner's vector for an item and every edge touching it, in
    both directions. Another owner's vector for the same item is left alone.
    """
    owner_id = validate_owner_id(owner_id)
    item_type = validate_item_type(item_type)
    item_id = validate_item_id(item_id)

    record = get_vector(db, item_type, item_id)
    vectors_deleted = 0
    if record is not None and record.owner_id == owner_id:
        db.delete(record)
        vectors_deleted = 1

    edges_deleted = db.query(RelationshipEdge).filter(
        RelationshipEdge.owner_id == owner_id,
        RelationshipEdge.item_type == item_type,
        or_(
            RelationshipEdge.source_item_id == item_id,
            RelationshipEdge.related_item_id == item_id,
        ),
    ).delete(synchronize_session=False)

    if vectors_deleted or edges_deleted:
        log_event(
            db,
            event_type=EVENT_VECTOR_DELETED,
            actor_type="system",
            owner_id=owner_id,
            target_type="item",
            target_ids=[f"{item_type}:{item_id}"],
            count_affected=edges_deleted,
            metadata={"item_type": item_type, "edges_deleted": edges_deleted},
        )
    db.flush()
    return {"vectors_deleted": vectors_deleted, "edges_deleted": edges_deleted}


def _pgvector_neighbors(db, owner_id, item_type, item_id, source, threshold, limit):
    distance = EmbeddingVector.vector.cosine_distance(source)
    rows = (
        db.query(EmbeddingVector.item_id, distance.label("distance"))
        .filter(
            EmbeddingVector.owner_id == owner_id,
            EmbeddingVector.item_type == item_type,
            EmbeddingVector.item_id != item_id,
            distance <= 1.0 - threshold + SIMILARITY_EPSILON,
        )
        .order_by(distance.asc(), EmbeddingVector.item_id.asc())
        .limit(limit)
        .all()
    )
    return [(row.item_id, 1.0 - float(row.distance)) for row in rows]


def _python_neighbors(db, owner_id, item_type, item_id, source, threshold, limit):
    rows = db.query(EmbeddingVector.item_id, EmbeddingVector.vector).filter(
        EmbeddingVector.owner_id == owner_id,
        EmbeddingVector.item_type == item_type,
        EmbeddingVector.item_id != item_id,
    ).all()
    if not rows:
        return []

    matrix = np.asarray([row.vector for row in rows], dtype=np.float64)
    query = _as_array(source)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)

    matches = [
        (row.item_id, float(score))
        for row, score in zip(rows, scores)
        if score >= threshold - SIMILARITY_EPSILON
    ]
    matches.sort(key=lambda match: (-match[1], match[0]))
    return matches[:limit]


def nearest_neighbors(
    db,
    owner_id: str,
    item_type: str,
    item_id: str,
    similarity_threshold: float,
    limit: int,
) -> Optional[list[tuple[str, float]]]:
    """
    Return ``[(item_id, similarity)]`` for the owner's other items of the same
    type, similarity descending. None when the source item has no vector.
    """
    try:
        source = get_vector(db, item_type, item_id)
        if source is None or source.owner_id != owner_id:
            return None
        if _vector_search_enabled():
            return _pgvector_neighbors(
                db, owner_id, item_type, item_id, source.vector, similarity_threshold, limit
            )
        return _python_neighbors(
            db, owner_id, item_type, item_id, source.vector, similarity_threshold, limit
        )
    except OperationalError as exc:
        logger.warning(
            "vector_store_unavailable",
            extra={"owner_id": owner_id, "item_type": item_type, "item_id": item_id},
        )
        raise VectorStoreUnavailableError("vector store unavailable") from exc


def coverage_stats(db, owner_id: Optional[str] = None) -> dict:
    """Content items vs stored vectors, per item type."""
    content_query = db.query(ContentItem.item_type, func.count()).group_by(ContentItem.item_type)
    vector_query = db.query(EmbeddingVector.item_type, func.count()).group_by(EmbeddingVector.item_type)
    if owner_id:
        content_query = content_query.filter(ContentItem.owner_id == owner_id)
        vector_query = vector_query.filter(EmbeddingVector.owner_id == owner_id)
    content_counts = dict(content_query.all())
    vector_counts = dict(vector_query.all())

    by_type = {}
    for item_type in ITEM_TYPES:
        total = content_counts.get(item_type, 0)
        stored = vector_counts.get(item_type, 0)
        by_type[item_type] = {
            "items": total,
            "vectors": stored,
            "coverage": round(stored / total, 4) if total else None,
        }
    return by_type


def serialize_vector_record(record: EmbeddingVector) -> dict:
    return {
        "owner_id": record.owner_id,
        "item_type": record.item_type,
        "item_id": record.item_id,
        "dimensions": len(record.vector) if record.vector is not None else 0,
        "model_version": record.model_version,
        "generated_at": _isoformat(record.generated_at),
    }


# =============================================================================
# Service tools
# =============================================================================

@service_tool
def store_item_vector(
    owner_id: str,
    item_type: str,
    item_id: str,
    vector: list[float],
    model_version: Optional[str] = None,
) -> dict:
    """Store a precomputed vector for an item and relink it when the value changed."""
    from core.services.relationship_graph import discover

    db = DB.SessionLocal()
    try:
        changed = upsert_vector(db, owner_id, item_type, item_id, vector, model_version)
        db.commit()
        item_type = item_type.strip().lower()
        item_id = item_id.strip()
        edges_written = discover(db, owner_id, item_id, item_type) if changed else 0
        record = get_vector(db, item_type, item_id)
        return {
            "status": "ok",
            "changed": changed,
            "edges_written": edges_written,
            "vector": serialize_vector_record(record),
        }
    finally:
        db.close()


@service_tool
def delete_vector(owner_id: str, item_type: str, item_id: str) -> dict:
    db = DB.SessionLocal()
    try:
        result = delete_item_vector(db, owner_id, item_type, item_id)
        db.commit()
        if not result["vectors_deleted"] and not result["edges_deleted"]:
            return {"status": "not_found", "item_id": item_id.strip(), **result}
        return {"status": "ok", **result}
    finally:
        db.close()


@service_tool
def similar_items(
    owner_id: str,
    item_type: str,
    item_id: str,
    similarity_threshold: float = 0.0,
    limit: int = 10,
) -> dict:
    """Nearest items to ``item_id`` without touching the graph."""
    owner_id = validate_owner_id(owner_id)
    item_type = validate_item_type(item_type)
    item_id = validate_item_id(item_id)
    validate_threshold(similarity_threshold, "similarity_threshold")
    validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)

    db = DB.SessionLocal()
    try:
        matches = nearest_neighbors(db, owner_id, item_type, item_id, similarity_threshold, limit)
        if matches is None:
            return {"status": "not_found", "item_id": item_id, "results": []}
        return {
            "status": "ok",
            "item_id": item_id,
            "results": [
                {"item_id": match_id, "similarity": round(similarity, 6)}
                for match_id, similarity in matches
            ],
        }
    finally:
        db.close()


@service_tool
def vector_coverage(owner_id: Optional[str] = None) -> dict:
    if owner_id is not None:
        owner_id = validate_owner_id(owner_id)
    db = DB.SessionLocal()
    try:
        return {"status": "ok", "owner_id": owner_id, "by_type": coverage_stats(db, owner_id)}
    finally:
        db.close()
