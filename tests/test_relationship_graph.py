import math
import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "python")

import pytest
from sqlalchemy.exc import OperationalError

from core.errors import ValidationIssue, VectorStoreUnavailableError
from core.models import AuditEvent, LibraryItem, RelationshipEdge
from core.services import relationship_graph, vector_store
from core.services.relationship_graph import backfill, classify_strength, discover, get_related_items
from core.services.vector_store import delete_item_vector, upsert_vector

SOURCE = [1.0, 0.0, 0.0, 0.0]


def _at_similarity(similarity):
    """Unit vector whose cosine similarity to SOURCE is ``similarity``."""
    return [similarity, math.sqrt(1.0 - similarity * similarity), 0.0, 0.0]


def _store(db, item_id, vector, owner_id="reader-1", item_type="document"):
    upsert_vector(db, owner_id, item_type, item_id, vector)
    db.commit()


def _edge(db, source, related):
    return db.query(RelationshipEdge).filter(
        RelationshipEdge.source_item_id == source,
        RelationshipEdge.related_item_id == related,
    ).first()


@pytest.mark.parametrize(
    "strength,label",
    [
        (100.0, "Identical"),
        (90.0, "Identical"),
        (89.99, "Extension / Follow-up"),
        (80.0, "Extension / Follow-up"),
        (72.0, "Shared Topic"),
        (70.0, "Shared Topic"),
        (69.99, "Related (Tangential)"),
        (0.0, "Related (Tangential)"),
    ],
)
def test_classify_strength_tiers(strength, label):
    assert classify_strength(strength) == label


def test_labels_follow_similarity_boundaries(db_session):
    _store(db_session, "src", SOURCE)
    for item_id, similarity in [("a", 0.90), ("b", 0.85), ("c", 0.72), ("d", 0.61), ("e", 0.59)]:
        _store(db_session, item_id, _at_similarity(similarity))

    written = discover(db_session, "reader-1", "src", similarity_threshold=0.60)
    assert written == 8

    assert _edge(db_session, "src", "a").relationship_label == "Identical"
    assert _edge(db_session, "src", "a").strength == pytest.approx(90.0)
    assert _edge(db_session, "src", "b").relationship_label == "Extension / Follow-up"
    assert _edge(db_session, "src", "c").relationship_label == "Shared Topic"
    assert _edge(db_session, "src", "d").relationship_label == "Related (Tangential)"
    assert _edge(db_session, "src", "e") is None
    assert _edge(db_session, "e", "src") is None


def test_discover_writes_symmetric_pairs(db_session):
    _store(db_session, "X", SOURCE)
    _store(db_session, "Y", _at_similarity(0.95))
    _store(db_session, "Z", _at_similarity(0.65))

    assert discover(db_session, "reader-1", "X") == 4
    assert db_session.query(RelationshipEdge).count() == 4

    forward = _edge(db_session, "X", "Y")
    backward = _edge(db_session, "Y", "X")
    assert forward.strength == pytest.approx(95.0)
    assert backward.strength == forward.strength
    assert backward.similarity == forward.similarity
    assert backward.relationship_label == forward.relationship_label == "Identical"

    assert _edge(db_session, "X", "Z").strength == pytest.approx(65.0)
    assert _edge(db_session, "Z", "X").relationship_label == "Related (Tangential)"
    assert forward.metadata_["method"] == "vector_similarity"
    assert forward.description == relationship_graph.EDGE_DESCRIPTION


def test_rediscovery_updates_in_place(db_session):
    _store(db_session, "X", SOURCE)
    _store(db_session, "Y", _at_similarity(0.95))
    discover(db_session, "reader-1", "X")
    first_id = _edge(db_session, "X", "Y").id

    _store(db_session, "Y", _at_similarity(0.82))
    assert discover(db_session, "reader-1", "X") == 2
    assert db_session.query(RelationshipEdge).count() == 2

    db_session.expire_all()
    updated = _edge(db_session, "X", "Y")
    assert updated.id == first_id
    assert updated.strength == pytest.approx(82.0)
    assert updated.relationship_label == "Extension / Follow-up"
    assert _edge(db_session, "Y", "X").strength == pytest.approx(82.0)


def test_discover_without_vector_is_noop(db_session):
    _store(db_session, "Y", _at_similarity(0.95))
    assert discover(db_session, "reader-1", "missing") == 0
    assert db_session.query(RelationshipEdge).count() == 0


def test_discover_is_scoped_to_owner_and_type(db_session):
    _store(db_session, "X", SOURCE)
    _store(db_session, "theirs", SOURCE, owner_id="reader-2")
    _store(db_session, "note-twin", SOURCE, item_type="note")

    assert discover(db_session, "reader-1", "X") == 0
    # another owner cannot link from an item they do not own
    assert discover(db_session, "reader-2", "X") == 0
    assert db_session.query(RelationshipEdge).count() == 0


def test_backfill_is_idempotent(db_session):
    _store(db_session, "X", SOURCE)
    _store(db_session, "Y", _at_similarity(0.95))
    _store(db_session, "Z", _at_similarity(0.65))

    first = backfill(db_session, "reader-1")
    assert first["items_processed"] == 3
    assert first["failed_items"] == []
    edge_count = db_session.query(RelationshipEdge).count()
    # X-Y, X-Z and Y-Z, both directions
    assert edge_count == 6

    second = backfill(db_session, "reader-1")
    assert second["items_processed"] == 3
    assert db_session.query(RelationshipEdge).count() == edge_count
    assert db_session.query(AuditEvent).filter(AuditEvent.event_type == "graph.backfilled").count() == 2


def test_deleting_vector_removes_edges_both_ways(db_session):
    _store(db_session, "X", SOURCE)
    _store(db_session, "Y", _at_similarity(0.95))
    _store(db_session, "Z", _at_similarity(0.65))
    backfill(db_session, "reader-1")

    result = delete_item_vector(db_session, "reader-1", "document", "Y")
    db_session.commit()
    assert result == {"vectors_deleted": 1, "edges_deleted": 4}
    assert db_session.query(RelationshipEdge).filter(
        (RelationshipEdge.source_item_id == "Y") | (RelationshipEdge.related_item_id == "Y")
    ).count() == 0
    assert _edge(db_session, "X", "Z") is not None


def test_related_items_strongest_first_with_titles(db_session):
    db_session.add_all([
        LibraryItem(id="Y", owner_id="reader-1", title="Children of Dune"),
        LibraryItem(id="Z", owner_id="reader-1", title="Foundation"),
    ])
    db_session.commit()
    _store(db_session, "X", SOURCE)
    _store(db_session, "Y", _at_similarity(0.95))
    _store(db_session, "Z", _at_similarity(0.65))
    discover(db_session, "reader-1", "X")

    related = get_related_items(db_session, "reader-1", "document", "X")
    assert [edge["related_item_id"] for edge in related] == ["Y", "Z"]
    assert [edge["related_title"] for edge in related] == ["Children of Dune", "Foundation"]
    assert get_related_items(db_session, "reader-2", "document", "X") == []


def test_discover_rejects_bad_threshold(db_session):
    with pytest.raises(ValidationIssue):
        discover(db_session, "reader-1", "X", similarity_threshold=1.5)


def test_discover_tool_returns_validation_payload(server_db):
    result = relationship_graph.discover_relationships("reader-1", "X", similarity_threshold=-0.1)
    assert result["status"] == "error"
    assert result["error_type"] == "validation_error"
    assert result["field"] == "similarity_threshold"

    missing = relationship_graph.discover_relationships("reader-1", "X")
    assert missing == {"status": "ok", "item_id": "X", "edges_written": 0}


def _unreachable_store(failing_items):
    def neighbors(db, owner_id, item_type, item_id, source, threshold, limit):
        if item_id in failing_items:
            raise OperationalError("SELECT embedding_vectors", {}, Exception("database is locked"))
        return real_neighbors(db, owner_id, item_type, item_id, source, threshold, limit)

    real_neighbors = vector_store._python_neighbors
    return neighbors


def test_unreachable_vector_store_is_retryable(db_session, monkeypatch):
    _store(db_session, "X", SOURCE)
    monkeypatch.setattr(vector_store, "_python_neighbors", _unreachable_store({"X"}))

    with pytest.raises(VectorStoreUnavailableError):
        discover(db_session, "reader-1", "X")
    assert db_session.query(RelationshipEdge).count() == 0


def test_backfill_continues_past_failed_item(db_session, monkeypatch):
    _store(db_session, "X", SOURCE)
    _store(db_session, "Y", _at_similarity(0.95))
    _store(db_session, "Z", _at_similarity(0.65))
    monkeypatch.setattr(vector_store, "_python_neighbors", _unreachable_store({"Y"}))

    result = backfill(db_session, "reader-1")

    assert result["items_processed"] == 3
    assert result["failed_items"] == ["Y"]
    assert _edge(db_session, "X", "Z") is not None
    assert _edge(db_session, "Z", "X") is not None
    event = db_session.query(AuditEvent).filter(AuditEvent.event_type == "graph.backfilled").one()
    assert event.metadata_["failed_items"] == 1
