import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "python")


def test_core_imports():
    import core.models  # noqa: F401
    import core.services.embedding_worker  # noqa: F401
    import core.services.interest_profiles  # noqa: F401
    import core.services.recommendations  # noqa: F401


def test_core_smoke_lifecycle(server_db):
    from core.models import ContentItem
    from core.services import embedding_worker, job_queue, relationship_graph

    db = server_db()
    try:
        db.add_all([
            ContentItem(item_type="document", item_id="doc-a", owner_id="reader-1", text="alpha"),
            ContentItem(item_type="document", item_id="doc-b", owner_id="reader-1", text="beta"),
        ])
        db.commit()
    finally:
        db.close()

    queued = job_queue.queue_missing_embeddings(owner_id="reader-1")
    assert queued["enqueued"] == 2

    vectors = {"alpha": [1.0, 0.0, 0.0, 0.0], "beta": [0.8, 0.6, 0.0, 0.0]}
    stats = embedding_worker.process_embedding_jobs(embed_fn=vectors.__getitem__)
    assert stats["succeeded"] == 2
    assert stats["edges_written"] == 2

    related = relationship_graph.related_items("reader-1", "doc-a")
    assert related["count"] == 1
    assert related["results"][0]["relationship_label"] == "Extension / Follow-up"

    queue = job_queue.embedding_queue_stats("reader-1")
    assert queue["by_status"]["completed"] == 2


def test_schema_status_reports_unmigrated_database(server_db):
    from core.db import DB, schema_status

    status = schema_status(DB.engine)
    assert status == {
        "revision": None,
        "expected": "0001_readgraph_schema",
        "up_to_date": False,
    }
