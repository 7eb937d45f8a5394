import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "python")

import pytest

from core.errors import ValidationIssue
from core.models import ContentItem, EmbeddingVector, RelationshipEdge
from core.services import vector_store
from core.services.vector_store import (
    coverage_stats,
    cosine_similarity,
    nearest_neighbors,
    upsert_vector,
    vectors_equal,
)


def test_cosine_similarity_handles_zero_vectors():
    assert cosine_similarity([1, 0, 0, 0], [2, 0, 0, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0, 0, 0], [0, 1, 0, 0]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0, 0, 0], [1, 0, 0, 0]) == 0.0


def test_vectors_equal_compares_at_float32_precision():
    assert vectors_equal([0.1, 0.2], [0.1, 0.2 + 1e-12])
    assert not vectors_equal([0.1, 0.2], [0.1, 0.3])
    assert not vectors_equal([0.1], None)
    assert vectors_equal(None, None)


def test_upsert_reports_changes(db_session):
    assert upsert_vector(db_session, "reader-1", "note", "n1", [1, 0, 0, 0]) is True
    assert upsert_vector(db_session, "reader-1", "note", "n1", [1, 0, 0, 0]) is False
    assert upsert_vector(db_session, "reader-1", "note", "n1", [0, 1, 0, 0]) is True
    db_session.commit()

    stored = vector_store.get_vector(db_session, "note", "n1")
    assert stored.vector == [0.0, 1.0, 0.0, 0.0]


def test_upsert_rejects_wrong_dimension(db_session):
    with pytest.raises(ValidationIssue) as excinfo:
        upsert_vector(db_session, "reader-1", "note", "n1", [1.0, 0.0])
    assert excinfo.value.field == "vector"


def test_nearest_neighbors_orders_and_limits(db_session):
    upsert_vector(db_session, "reader-1", "document", "src", [1, 0, 0, 0])
    upsert_vector(db_session, "reader-1", "document", "close", [0.9, 0.1, 0, 0])
    upsert_vector(db_session, "reader-1", "document", "closer", [1, 0.01, 0, 0])
    upsert_vector(db_session, "reader-1", "document", "far", [0, 1, 0, 0])
    upsert_vector(db_session, "reader-1", "document", "zero", [0, 0, 0, 0])
    db_session.commit()

    matches = nearest_neighbors(db_session, "reader-1", "document", "src", 0.5, 10)
    assert [item_id for item_id, _ in matches] == ["closer", "close"]

    top = nearest_neighbors(db_session, "reader-1", "document", "src", 0.0, 1)
    assert [item_id for item_id, _ in top] == ["closer"]

    assert nearest_neighbors(db_session, "reader-1", "document", "absent", 0.5, 10) is None


def test_coverage_counts_items_and_vectors(db_session):
    db_session.add_all([
        ContentItem(item_type="note", item_id="n1", owner_id="reader-1", text="one"),
        ContentItem(item_type="note", item_id="n2", owner_id="reader-1", text="two"),
    ])
    upsert_vector(db_session, "reader-1", "note", "n1", [1, 0, 0, 0])
    db_session.commit()

    stats = coverage_stats(db_session, "reader-1")
    assert stats["note"] == {"items": 2, "vectors": 1, "coverage": 0.5}
    assert stats["document"]["coverage"] is None


def test_vector_tools(server_db):
    stored = vector_store.store_item_vector("reader-1", "note", "n1", [1, 0, 0, 0])
    assert stored["status"] == "ok"
    assert stored["changed"] is True
    assert stored["vector"]["dimensions"] == 4

    similar = vector_store.similar_items("reader-1", "note", "n1")
    assert similar["status"] == "ok"
    assert similar["results"] == []

    deleted = vector_store.delete_vector("reader-1", "note", "n1")
    assert deleted["vectors_deleted"] == 1

    missing = vector_store.similar_items("reader-1", "note", "n1")
    assert missing["status"] == "not_found"


def test_storing_changed_vector_links_related_items(server_db):
    first = vector_store.store_item_vector("reader-1", "document", "X", [1, 0, 0, 0])
    assert first["edges_written"] == 0

    second = vector_store.store_item_vector("reader-1", "document", "Y", [0.95, 0.31225, 0, 0])
    assert second["changed"] is True
    assert second["edges_written"] == 2

    unchanged = vector_store.store_item_vector("reader-1", "document", "Y", [0.95, 0.31225, 0, 0])
    assert unchanged["changed"] is False
    assert unchanged["edges_written"] == 0

    db = server_db()
    try:
        pairs = {
            (edge.source_item_id, edge.related_item_id)
            for edge in db.query(RelationshipEdge).all()
        }
    finally:
        db.close()
    assert pairs == {("X", "Y"), ("Y", "X")}


def test_delete_is_scoped_to_owner(server_db):
    vector_store.store_item_vector("alice", "document", "X", [1, 0, 0, 0])
    vector_store.store_item_vector("alice", "document", "Y", [1, 0.01, 0, 0])

    foreign = vector_store.delete_vector("mallory", "document", "X")
    assert foreign["status"] == "not_found"
    assert foreign["vectors_deleted"] == 0

    db = server_db()
    try:
        assert db.query(EmbeddingVector).count() == 2
        assert db.query(RelationshipEdge).count() == 2
    finally:
        db.close()

    own = vector_store.delete_vector("alice", "document", "X")
    assert own == {"status": "ok", "vectors_deleted": 1, "edges_deleted": 2}
