import os
from datetime import datetime, timedelta

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "python")

import pytest

from core.models import AuditEvent, ContentItem, EmbeddingVector, InterestProfile
from core.services import interest_profiles
from core.services.interest_profiles import compute_trends, find_similar_owners, recompute_profile

NOW = datetime(2026, 10, 1, 12, 0, 0)


def _content(db, item_type, item_id, text, days_ago, vector=None, owner_id="reader-1"):
    db.add(ContentItem(
        item_type=item_type,
        item_id=item_id,
        owner_id=owner_id,
        text=text,
        created_at=NOW - timedelta(days=days_ago),
    ))
    if vector is not None:
        db.add(EmbeddingVector(item_type=item_type, item_id=item_id, owner_id=owner_id, vector=vector))


@pytest.fixture
def reading_history(db_session):
    _content(db_session, "note", "n1", "Quantum entanglement notes", 5, [1.0, 0.0, 0.0, 0.0])
    _content(db_session, "note", "n2", "quantum computing", 2, [0.0, 1.0, 0.0, 0.0])
    _content(db_session, "highlight", "h1", "Computing history", 1)
    _content(db_session, "document", "doc1", "Quantum quantum quantum", 1, [0.0, 0.0, 0.0, 1.0])
    _content(
        db_session,
        "note",
        "old1",
        "Gardening gardening tips computing quantum quantum quantum quantum quantum",
        40,
        [0.0, 0.0, 1.0, 0.0],
    )
    db_session.commit()
    return db_session


def test_profile_aggregates_window_vectors(reading_history):
    profile = recompute_profile(reading_history, "reader-1", lookback_days=30, now=NOW)

    assert profile.aggregate_vector == pytest.approx([0.5, 0.5, 0.0, 0.0])
    assert profile.sample_count == 2
    assert profile.note_count == 2
    assert profile.highlight_count == 1
    assert profile.lookback_days == 30
    assert profile.last_computed_at == NOW


def test_concept_importance_blends_frequency_and_recency(reading_history):
    profile = recompute_profile(reading_history, "reader-1", lookback_days=30, now=NOW)
    concepts = {concept["term"]: concept for concept in profile.top_concepts}

    quantum = concepts["quantum"]
    assert quantum["frequency"] == 2
    assert quantum["importance"] == pytest.approx(0.453333, abs=1e-6)
    assert "tips" not in concepts
    assert "gardening" not in concepts
    importances = [concept["importance"] for concept in profile.top_concepts]
    assert importances == sorted(importances, reverse=True)


def test_trends_compare_against_previous_window(reading_history):
    profile = recompute_profile(reading_history, "reader-1", lookback_days=30, now=NOW)
    trends = profile.interest_trends

    assert set(trends["emerging"]) == {"entanglement", "notes", "history"}
    assert set(trends["declining"]) == {"quantum", "gardening"}
    assert trends["stable"] == ["computing"]


def test_compute_trends_halving_is_the_decline_line():
    previous = [{"term": "orbit", "frequency": 4}]
    assert compute_trends([{"term": "orbit", "frequency": 2}], previous)["stable"] == ["orbit"]
    assert compute_trends([{"term": "orbit", "frequency": 1}], previous)["declining"] == ["orbit"]


def test_empty_window_yields_empty_profile(db_session):
    profile = recompute_profile(db_session, "reader-9", now=NOW)

    assert profile.aggregate_vector is None
    assert profile.sample_count == 0
    assert profile.top_concepts == []
    assert profile.interest_trends == {"emerging": [], "declining": [], "stable": []}
    assert interest_profiles.serialize_profile(profile)["has_vector"] is False


def test_recompute_overwrites_single_profile(reading_history):
    recompute_profile(reading_history, "reader-1", now=NOW)
    later = NOW + timedelta(days=60)
    profile = recompute_profile(reading_history, "reader-1", now=later)

    assert reading_history.query(InterestProfile).filter(InterestProfile.owner_id == "reader-1").count() == 1
    assert profile.aggregate_vector is None
    assert profile.last_computed_at == later
    assert reading_history.query(AuditEvent).filter(
        AuditEvent.event_type == "profile.recomputed"
    ).count() == 2


def test_similar_owners_filters_by_threshold(db_session):
    db_session.add_all([
        InterestProfile(owner_id="reader-1", aggregate_vector=[0.5, 0.5, 0.0, 0.0]),
        InterestProfile(owner_id="reader-2", aggregate_vector=[1.0, 1.0, 0.0, 0.0]),
        InterestProfile(owner_id="reader-3", aggregate_vector=[1.0, 0.0, 0.0, 0.0]),
        InterestProfile(owner_id="reader-4", aggregate_vector=None),
    ])
    db_session.commit()

    matches = find_similar_owners(db_session, "reader-1")
    assert matches == [{"owner_id": "reader-2", "similarity": pytest.approx(1.0)}]

    looser = find_similar_owners(db_session, "reader-1", threshold=0.7)
    assert [match["owner_id"] for match in looser] == ["reader-2", "reader-3"]
    assert looser[1]["similarity"] == pytest.approx(0.707107, abs=1e-6)

    assert find_similar_owners(db_session, "reader-4") == []
    assert find_similar_owners(db_session, "nobody") == []


def test_profile_tools(server_db):
    missing = interest_profiles.get_interest_profile("reader-1")
    assert missing == {"status": "not_found", "owner_id": "reader-1"}

    created = interest_profiles.recompute_interest_profile("reader-1")
    assert created["status"] == "ok"
    assert created["profile"]["owner_id"] == "reader-1"

    fetched = interest_profiles.get_interest_profile("reader-1")
    assert fetched["status"] == "ok"
    assert fetched["profile"]["sample_count"] == 0

    bad = interest_profiles.similar_owners("reader-1", threshold=2)
    assert bad["status"] == "error"
    assert bad["field"] == "threshold"
