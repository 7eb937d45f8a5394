import os
from concurrent.futures import ThreadPoolExecutor

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "python")

from core.services import job_queue


def _enqueue_same_item(priority: int) -> dict:
    return job_queue.enqueue_embedding_job("reader-1", "note", "shared-note", priority)


def test_concurrent_enqueue_keeps_single_active_job(server_db):
    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(_enqueue_same_item, [2, 9, 4, 6]))

    assert all(result["status"] == "ok" for result in results)
    assert len({result["job"]["id"] for result in results}) == 1
    assert sum(1 for result in results if result["created"]) == 1

    stats = job_queue.embedding_queue_stats("reader-1")
    assert stats["by_status"]["pending"] == 1

    leased = job_queue.lease_embedding_jobs(batch_size=5)
    assert leased["jobs"][0]["priority"] == 9
