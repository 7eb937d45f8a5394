"""
Recommendation aggregator.

Builds four independent candidate lists for an owner and concatenates them:

- semantic: graph neighbours of well-read documents
- collection: unread documents sharing a collection with well-read ones
- tag: barely started documents sharing tags with well-read ones
- series: the next unread entry of a series the owner is part way through

Scores are local to each signal and the lists are not deduplicated against
each other. A signal that fails is reported in ``degraded_signals`` and the
rest are still returned.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select

import core.config as config
from core.db import DB
from core.models import (
    Collection,
    CollectionMembership,
    ItemType,
    LibraryItem,
    RelationshipEdge,
    Series,
    Tag,
    TagAssignment,
)
from core.services.engine_shared import logger, service_tool
from core.validators import validate_limit, validate_owner_id

SEED_MIN_PROGRESS = 50.0
COLLECTION_MAX_PROGRESS = 50.0
TAG_MAX_PROGRESS = 30.0
SERIES_UNREAD_PROGRESS = 50.0
SERIES_NEXT_SCORE = 1.0
SERIES_LATER_SCORE = 0.7
REASON_NAME_LIMIT = 3


def _result(signal_type: str, item: LibraryItem, score: float, reason: str) -> dict:
    return {
        "signal_type": signal_type,
        "candidate_item_id": item.id,
        "title": item.title,
        "score": score,
        "reason": reason,
    }


def _seed_items(db, owner_id: str) -> list[LibraryItem]:
    return db.query(LibraryItem).filter(
        LibraryItem.owner_id == owner_id,
        LibraryItem.reading_progress > SEED_MIN_PROGRESS,
    ).all()


def _recency_key(item: LibraryItem) -> float:
    # newest first, never-read last
    if item.last_read_at is None:
        return float("inf")
    return -_timestamp(item.last_read_at)


def _timestamp(value: datetime) -> float:
    return (value.replace(tzinfo=None) - datetime(1970, 1, 1)).total_seconds()


# =============================================================================
# Signals
# =============================================================================

def semantic_signal(db, owner_id: str, limit: int) -> list[dict]:
    seeds = {item.id: item for item in _seed_items(db, owner_id)}
    if not seeds:
        return []

    edges = db.query(RelationshipEdge).filter(
        RelationshipEdge.owner_id == owner_id,
        RelationshipEdge.item_type == ItemType.document.value,
        RelationshipEdge.source_item_id.in_(list(seeds)),
    ).all()

    best: dict[str, RelationshipEdge] = {}
    for edge in edges:
        if edge.related_item_id in seeds:
            continue
        current = best.get(edge.related_item_id)
        if current is None or edge.strength > current.strength:
            best[edge.related_item_id] = edge
    if not best:
        return []

    candidates = {
        item.id: item
        for item in db.query(LibraryItem).filter(
            LibraryItem.owner_id == owner_id,
            LibraryItem.id.in_(list(best)),
            LibraryItem.archived_at.is_(None),
            LibraryItem.reading_progress <= SEED_MIN_PROGRESS,
        ).all()
    }
    ranked = sorted(
        (edge for item_id, edge in best.items() if item_id in candidates),
        key=lambda edge: (-edge.strength, edge.related_item_id),
    )

    results = []
    for edge in ranked[:limit]:
        seed = seeds[edge.source_item_id]
        seed_name = seed.title or seed.id
        reason = f'Similar to "{seed_name}" ({edge.relationship_label}, strength {edge.strength:g})'
        results.append(_result("semantic", candidates[edge.related_item_id], edge.strength, reason))
    return results


def collection_signal(db, owner_id: str, limit: int) -> list[dict]:
    seed_ids = [item.id for item in _seed_items(db, owner_id)]
    if not seed_ids:
        return []

    seed_collections = (
        select(CollectionMembership.collection_id)
        .join(Collection, Collection.id == CollectionMembership.collection_id)
        .where(Collection.owner_id == owner_id)
        .where(CollectionMembership.item_id.in_(seed_ids))
    )
    rows = (
        db.query(LibraryItem, Collection.name)
        .join(CollectionMembership, CollectionMembership.item_id == LibraryItem.id)
        .join(Collection, Collection.id == CollectionMembership.collection_id)
        .filter(LibraryItem.owner_id == owner_id)
        .filter(LibraryItem.reading_progress < COLLECTION_MAX_PROGRESS)
        .filter(LibraryItem.archived_at.is_(None))
        .filter(CollectionMembership.collection_id.in_(seed_collections))
        .all()
    )

    items: dict[str, LibraryItem] = {}
    shared: dict[str, set[str]] = defaultdict(set)
    for item, collection_name in rows:
        items[item.id] = item
        shared[item.id].add(collection_name)

    ranked = sorted(
        items.values(),
        key=lambda item: (-len(shared[item.id]), _recency_key(item), item.id),
    )
    results = []
    for item in ranked[:limit]:
        names = sorted(shared[item.id])
        reason = f"In your {', '.join(names[:REASON_NAME_LIMIT])} collections"
        results.append(_result("collection", item, float(len(names)), reason))
    return results


def tag_signal(db, owner_id: str, limit: int) -> list[dict]:
    seed_ids = [item.id for item in _seed_items(db, owner_id)]
    if not seed_ids:
        return []

    seed_tags = (
        select(TagAssignment.tag_id)
        .join(Tag, Tag.id == TagAssignment.tag_id)
        .where(Tag.owner_id == owner_id)
        .where(TagAssignment.item_id.in_(seed_ids))
    )
    rows = (
        db.query(LibraryItem, Tag.name)
        .join(TagAssignment, TagAssignment.item_id == LibraryItem.id)
        .join(Tag, Tag.id == TagAssignment.tag_id)
        .filter(LibraryItem.owner_id == owner_id)
        .filter(LibraryItem.reading_progress < TAG_MAX_PROGRESS)
        .filter(LibraryItem.archived_at.is_(None))
        .filter(TagAssignment.tag_id.in_(seed_tags))
        .all()
    )

    items: dict[str, LibraryItem] = {}
    shared: dict[str, set[str]] = defaultdict(set)
    for item, tag_name in rows:
        items[item.id] = item
        shared[item.id].add(tag_name)

    ranked = sorted(
        items.values(),
        key=lambda item: (
            -len(shared[item.id]),
            not item.is_favorite,
            _recency_key(item),
            item.id,
        ),
    )
    results = []
    for item in ranked[:limit]:
        names = sorted(shared[item.id])
        reason = f"Similar tags: {', '.join(names[:REASON_NAME_LIMIT])}"
        results.append(_result("tag", item, float(len(names)), reason))
    return results


def series_signal(db, owner_id: str, limit: int) -> list[dict]:
    results = []
    series_rows = db.query(Series).filter(Series.owner_id == owner_id).order_by(Series.id).all()
    for series in series_rows:
        if len(results) >= limit:
            break
        entries = [
            item for item in series.items
            if item.owner_id == owner_id and item.series_order is not None
        ]
        read_positions = [
            index for index, item in enumerate(entries)
            if (item.reading_progress or 0) > SERIES_UNREAD_PROGRESS
        ]
        if not read_positions:
            continue
        unread_positions = [
            index for index, item in enumerate(entries)
            if (item.reading_progress or 0) < SERIES_UNREAD_PROGRESS and item.archived_at is None
        ]
        if not unread_positions:
            continue

        next_position = unread_positions[0]
        furthest = max(read_positions)
        score = SERIES_NEXT_SCORE if next_position == furthest + 1 else SERIES_LATER_SCORE
        results.append(
            _result("series", entries[next_position], score, f"Continue {series.name} series")
        )
    return results


SIGNAL_BUILDERS: dict[str, Callable[..., list[dict]]] = {
    "semantic": semantic_signal,
    "collection": collection_signal,
    "tag": tag_signal,
    "series": series_signal,
}


def recommend(db, owner_id: str, limit_per_signal: Optional[int] = None) -> dict:
    """Run every signal for the owner and concatenate the results."""
    owner_id = validate_owner_id(owner_id)
    if limit_per_signal is None:
        limit_per_signal = config.RECOMMENDATION_LIMIT_PER_SIGNAL
    validate_limit(limit_per_signal, "limit_per_signal", config.MAX_RESULT_LIMIT)

    results: list[dict] = []
    degraded: list[str] = []
    for signal_type, builder in SIGNAL_BUILDERS.items():
        try:
            results.extend(builder(db, owner_id, limit_per_signal))
        except Exception:
            db.rollback()
            degraded.append(signal_type)
            logger.exception(
                "recommendation_signal_failed",
                extra={"owner_id": owner_id, "signal_type": signal_type},
            )
    return {"results": results, "degraded_signals": degraded}


@service_tool
def get_recommendations(owner_id: str, limit_per_signal: Optional[int] = None) -> dict:
    """Recommendations for an owner across all signals."""
    db = DB.SessionLocal()
    try:
        payload = recommend(db, owner_id, limit_per_signal)
        return {
            "status": "ok",
            "owner_id": owner_id,
            "count": len(payload["results"]),
            **payload,
        }
    finally:
        db.close()
