"""
Interest profile aggregator.

Keeps one rolling profile per owner: the mean vector of their recent notes and
highlights, the terms they keep coming back to, and how those terms moved
compared with the window before.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Iterable, Optional

import numpy as np

import core.config as config
from core.audit import log_event
from core.audit_constants import EVENT_PROFILE_RECOMPUTED
from core.db import DB
from core.models import ContentItem, EmbeddingVector, InterestProfile, ItemType
from core.services.engine_shared import _isoformat, _utcnow, logger, service_tool
from core.services.vector_store import SIMILARITY_EPSILON, _vector_search_enabled
from core.validators import validate_limit, validate_owner_id, validate_threshold

PROFILE_ITEM_TYPES = (ItemType.note.value, ItemType.highlight.value)
MIN_TERM_LENGTH = 5
FREQUENCY_SATURATION = 10
FREQUENCY_WEIGHT = 0.6
RECENCY_WEIGHT = 0.4
DECLINE_RATIO = 0.5

_NON_WORD = re.compile(r"[^\w\s]")


def _terms(text: str) -> list[str]:
    return [word for word in _NON_WORD.sub(" ", text.lower()).split() if len(word) >= MIN_TERM_LENGTH]


def extract_concepts(
    items: Iterable[tuple[str, datetime]],
    lookback_days: int,
    now: datetime,
    top_n: Optional[int] = None,
) -> list[dict]:
    """
    Rank terms from ``(text, created_at)`` pairs.

    importance = 0.6 * min(1, count / 10) + 0.4 * recency, where recency
    falls linearly from 1 (first seen now) to 0 (first seen a full window ago).
    """
    top_n = config.PROFILE_TOP_CONCEPTS if top_n is None else top_n
    seen: dict[str, dict] = {}
    for text, created_at in items:
        for term in _terms(text or ""):
            entry = seen.get(term)
            if entry is None:
                seen[term] = {"count": 1, "first_seen": created_at, "last_seen": created_at}
                continue
            entry["count"] += 1
            entry["first_seen"] = min(entry["first_seen"], created_at)
            entry["last_seen"] = max(entry["last_seen"], created_at)

    concepts = []
    for term, entry in seen.items():
        days_since_first = (now - entry["first_seen"]).total_seconds() / 86400.0
        recency = max(0.0, 1.0 - days_since_first / lookback_days)
        frequency_score = min(1.0, entry["count"] / FREQUENCY_SATURATION)
        concepts.append({
            "term": term,
            "frequency": entry["count"],
            "importance": round(frequency_score * FREQUENCY_WEIGHT + recency * RECENCY_WEIGHT, 6),
            "first_seen": _isoformat(entry["first_seen"]),
            "last_seen": _isoformat(entry["last_seen"]),
        })
    concepts.sort(key=lambda concept: (-concept["importance"], -concept["frequency"], concept["term"]))
    return concepts[:top_n]


def compute_trends(current: list[dict], previous: list[dict]) -> dict:
    previous_by_term = {concept["term"]: concept for concept in previous}
    current_terms = {concept["term"] for concept in current}

    emerging, declining, stable = [], [], []
    for concept in current:
        before = previous_by_term.get(concept["term"])
        if before is None:
            emerging.append(concept["term"])
        elif concept["frequency"] < before["frequency"] * DECLINE_RATIO:
            declining.append(concept["term"])
        else:
            stable.append(concept["term"])
    for concept in previous:
        if concept["term"] not in current_terms:
            declining.append(concept["term"])
    return {"emerging": emerging, "declining": declining, "stable": stable}


def _window_items(db, owner_id: str, start: datetime, end: Optional[datetime] = None):
    query = (
        db.query(ContentItem, EmbeddingVector.vector)
        .outerjoin(
            EmbeddingVector,
            (EmbeddingVector.item_type == ContentItem.item_type)
            & (EmbeddingVector.item_id == ContentItem.item_id),
        )
        .filter(ContentItem.owner_id == owner_id)
        .filter(ContentItem.item_type.in_(PROFILE_ITEM_TYPES))
        .filter(ContentItem.created_at >= start)
    )
    if end is not None:
        query = query.filter(ContentItem.created_at < end)
    return query.all()


def recompute_profile(
    db,
    owner_id: str,
    lookback_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> InterestProfile:
    """Rebuild the owner's profile from the current window and overwrite it."""
    owner_id = validate_owner_id(owner_id)
    lookback_days = config.PROFILE_LOOKBACK_DAYS if lookback_days is None else lookback_days
    validate_limit(lookback_days, "lookback_days", 3650)
    now = now or _utcnow()
    window_start = now - timedelta(days=lookback_days)

    current_rows = _window_items(db, owner_id, window_start)
    previous_rows = _window_items(db, owner_id, now - timedelta(days=lookback_days * 2), window_start)

    vectors = [vector for _, vector in current_rows if vector is not None]
    aggregate = None
    if vectors:
        aggregate = np.asarray(vectors, dtype=np.float64).mean(axis=0).tolist()

    top_concepts = extract_concepts(
        ((item.text, item.created_at) for item, _ in current_rows), lookback_days, now
    )
    previous_concepts = extract_concepts(
        ((item.text, item.created_at) for item, _ in previous_rows), lookback_days, now
    )
    trends = compute_trends(top_concepts, previous_concepts)

    note_count = sum(1 for item, _ in current_rows if item.item_type == ItemType.note.value)
    highlight_count = sum(1 for item, _ in current_rows if item.item_type == ItemType.highlight.value)

    profile = db.query(InterestProfile).filter(InterestProfile.owner_id == owner_id).first()
    if profile is None:
        profile = InterestProfile(owner_id=owner_id, created_at=now)
        db.add(profile)
    profile.aggregate_vector = aggregate
    profile.top_concepts = top_concepts
    profile.interest_trends = trends
    profile.sample_count = len(vectors)
    profile.note_count = note_count
    profile.highlight_count = highlight_count
    profile.lookback_days = lookback_days
    profile.last_computed_at = now
    profile.updated_at = now

    log_event(
        db,
        event_type=EVENT_PROFILE_RECOMPUTED,
        actor_type="system",
        owner_id=owner_id,
        target_type="profile",
        target_ids=[owner_id],
        count_affected=len(vectors),
        metadata={
            "sample_count": len(vectors),
            "note_count": note_count,
            "highlight_count": highlight_count,
            "lookback_days": lookback_days,
        },
    )
    db.commit()
    logger.info(
        "interest_profile_recomputed",
        extra={"owner_id": owner_id, "sample_count": len(vectors), "concepts": len(top_concepts)},
    )
    return profile


def get_profile(db, owner_id: str) -> Optional[InterestProfile]:
    owner_id = validate_owner_id(owner_id)
    return db.query(InterestProfile).filter(InterestProfile.owner_id == owner_id).first()


def find_similar_owners(
    db,
    owner_id: str,
    threshold: Optional[float] = None,
    limit: Optional[int] = None,
) -> list[dict]:
    """Other owners whose aggregate vector is close to this owner's. Read-only."""
    owner_id = validate_owner_id(owner_id)
    threshold = config.SIMILAR_OWNER_THRESHOLD if threshold is None else threshold
    limit = config.SIMILAR_OWNER_LIMIT if limit is None else limit
    validate_threshold(threshold, "threshold")
    validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)

    profile = get_profile(db, owner_id)
    if profile is None or profile.aggregate_vector is None:
        return []

    if _vector_search_enabled():
        distance = InterestProfile.aggregate_vector.cosine_distance(profile.aggregate_vector)
        rows = (
            db.query(InterestProfile.owner_id, distance.label("distance"))
            .filter(InterestProfile.owner_id != owner_id)
            .filter(InterestProfile.aggregate_vector.isnot(None))
            .filter(distance <= 1.0 - threshold + SIMILARITY_EPSILON)
            .order_by(distance.asc(), InterestProfile.owner_id.asc())
            .limit(limit)
            .all()
        )
        return [
            {"owner_id": row.owner_id, "similarity": round(1.0 - float(row.distance), 6)}
            for row in rows
        ]

    rows = db.query(InterestProfile.owner_id, InterestProfile.aggregate_vector).filter(
        InterestProfile.owner_id != owner_id
    ).all()
    query = np.asarray(profile.aggregate_vector, dtype=np.float64)
    query_norm = np.linalg.norm(query)
    matches = []
    for row in rows:
        if row.aggregate_vector is None:
            continue
        other = np.asarray(row.aggregate_vector, dtype=np.float64)
        denom = query_norm * np.linalg.norm(other)
        if denom == 0:
            continue
        similarity = float(np.dot(query, other) / denom)
        if similarity >= threshold - SIMILARITY_EPSILON:
            matches.append({"owner_id": row.owner_id, "similarity": round(similarity, 6)})
    matches.sort(key=lambda match: (-match["similarity"], match["owner_id"]))
    return matches[:limit]


def serialize_profile(profile: InterestProfile) -> dict:
    vector = profile.aggregate_vector
    return {
        "owner_id": profile.owner_id,
        "has_vector": vector is not None,
        "vector_dimensions": len(vector) if vector is not None else 0,
        "top_concepts": profile.top_concepts or [],
        "interest_trends": profile.interest_trends or {"emerging": [], "declining": [], "stable": []},
        "sample_count": profile.sample_count,
        "note_count": profile.note_count,
        "highlight_count": profile.highlight_count,
        "lookback_days": profile.lookback_days,
        "last_computed_at": _isoformat(profile.last_computed_at),
    }


# =============================================================================
# Service tools
# =============================================================================

@service_tool
def recompute_interest_profile(owner_id: str, lookback_days: Optional[int] = None) -> dict:
    db = DB.SessionLocal()
    try:
        profile = recompute_profile(db, owner_id, lookback_days)
        return {"status": "ok", "profile": serialize_profile(profile)}
    finally:
        db.close()


@service_tool
def get_interest_profile(owner_id: str) -> dict:
    db = DB.SessionLocal()
    try:
        profile = get_profile(db, owner_id)
        if profile is None:
            return {"status": "not_found", "owner_id": owner_id}
        return {"status": "ok", "profile": serialize_profile(profile)}
    finally:
        db.close()


@service_tool
def similar_owners(
    owner_id: str,
    threshold: Optional[float] = None,
    limit: Optional[int] = None,
) -> dict:
    db = DB.SessionLocal()
    try:
        results = find_similar_owners(db, owner_id, threshold, limit)
        return {"status": "ok", "owner_id": owner_id, "count": len(results), "results": results}
    finally:
        db.close()
