"""
Embedding worker: lease jobs, compute vectors, store them, link the graph.

The provider call happens after the lease has committed and before the result
transaction opens, so no session or row lock is held while waiting on it.
"""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.db import DB
from core.errors import EmbeddingProviderError, ValidationIssue, VectorStoreUnavailableError
from core.models import ContentItem
from core.services import engine_shared
from core.services import job_queue
from core.services.engine_shared import EMBEDDING_MODEL, embedding_circuit_breaker, logger
from core.services.relationship_graph import discover
from core.services.vector_store import upsert_vector

CONTENT_MISSING_ERROR = "content item not found"


def _default_embed(text: str) -> List[float]:
    return engine_shared.embed_text_sync(text)


def _lease_with_text(batch_size: Optional[int]) -> list[dict]:
    db = DB.SessionLocal()
    try:
        jobs = job_queue.lease_batch(db, batch_size)
        leased = []
        for job in jobs:
            content = db.query(ContentItem).filter(
                ContentItem.item_type == job.item_type,
                ContentItem.item_id == job.item_id,
            ).first()
            leased.append({
                "job_id": job.id,
                "lease_token": job.lease_token,
                "owner_id": job.owner_id,
                "item_type": job.item_type,
                "item_id": job.item_id,
                "text": content.text if content else None,
            })
        return leased
    finally:
        db.close()


def _fail_job(work: dict, error: str, retryable: bool) -> Optional[str]:
    db = DB.SessionLocal()
    try:
        return job_queue.fail(db, work["job_id"], error, work["lease_token"], retryable)
    finally:
        db.close()


def _store_result(work: dict, vector: List[float]) -> dict:
    """Write the vector, complete the job, and rediscover edges when the vector changed."""
    db = DB.SessionLocal()
    try:
        changed = upsert_vector(
            db,
            work["owner_id"],
            work["item_type"],
            work["item_id"],
            vector,
            model_version=EMBEDDING_MODEL,
        )
        completed = job_queue.complete(db, work["job_id"], work["lease_token"])
        edges_written = 0
        discover_failed = False
        if changed:
            try:
                edges_written = discover(db, work["owner_id"], work["item_id"], work["item_type"])
            except (VectorStoreUnavailableError, SQLAlchemyError) as exc:
                db.rollback()
                discover_failed = True
                logger.warning(
                    "discover_after_embedding_failed",
                    extra={"item_type": work["item_type"], "item_id": work["item_id"], "error": str(exc)},
                )
        return {
            "completed": completed,
            "changed": changed,
            "edges_written": edges_written,
            "discover_failed": discover_failed,
        }
    finally:
        db.close()


def process_embedding_jobs(
    batch_size: Optional[int] = None,
    embed_fn: Optional[Callable[[str], List[float]]] = None,
) -> dict:
    """Run one worker pass over a leased batch."""
    if DB.SessionLocal is None:
        return {"status": "skipped", "reason": "db_not_initialized"}
    if embed_fn is None:
        if config.EMBEDDING_PROVIDER == "none":
            return {"status": "skipped", "reason": "embedding_disabled"}
        if embedding_circuit_breaker.is_open():
            return {"status": "skipped", "reason": "circuit_open"}
        embed_fn = _default_embed

    leased = _lease_with_text(batch_size)
    stats = {
        "status": "ok",
        "leased": len(leased),
        "succeeded": 0,
        "failed": 0,
        "requeued": 0,
        "edges_written": 0,
        "discover_failures": 0,
    }

    for work in leased:
        if not work["text"] or not work["text"].strip():
            _fail_job(work, CONTENT_MISSING_ERROR, retryable=False)
            stats["failed"] += 1
            continue
        try:
            vector = embed_fn(work["text"][: config.MAX_EMBEDDING_TEXT_LENGTH])
        except EmbeddingProviderError as exc:
            status = _fail_job(work, str(exc), retryable=True)
            stats["requeued" if status == "pending" else "failed"] += 1
            continue
        except ValidationIssue as exc:
            _fail_job(work, str(exc), retryable=False)
            stats["failed"] += 1
            continue

        try:
            result = _store_result(work, vector)
        except ValidationIssue as exc:
            # provider returned something we cannot store
            _fail_job(work, str(exc), retryable=False)
            stats["failed"] += 1
            continue
        except SQLAlchemyError as exc:
            logger.warning(
                "embedding_store_failed",
                extra={"item_type": work["item_type"], "item_id": work["item_id"], "error": str(exc)},
            )
            status = _fail_job(work, "vector store write failed", retryable=True)
            stats["requeued" if status == "pending" else "failed"] += 1
            continue
        if result["completed"]:
            stats["succeeded"] += 1
        stats["edges_written"] += result["edges_written"]
        if result["discover_failed"]:
            stats["discover_failures"] += 1

    if stats["leased"]:
        logger.info("embedding_worker_pass", extra=stats)
    return stats


def run_lease_sweep() -> dict:
    if DB.SessionLocal is None:
        return {"status": "skipped", "reason": "db_not_initialized"}
    db = DB.SessionLocal()
    try:
        return {"status": "ok", **job_queue.reclaim_expired_leases(db)}
    finally:
        db.close()


def run_missing_embedding_sweep() -> dict:
    if DB.SessionLocal is None:
        return {"status": "skipped", "reason": "db_not_initialized"}
    if config.MISSING_EMBEDDING_SWEEP_LIMIT <= 0:
        return {"status": "skipped", "reason": "sweep_limit_disabled"}
    db = DB.SessionLocal()
    try:
        return {"status": "ok", **job_queue.enqueue_missing_embeddings(db)}
    finally:
        db.close()


async def _periodic(name: str, interval_seconds: int, task: Callable[[], dict]) -> None:
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            stats = await asyncio.to_thread(task)
            logger.debug(f"{name}_complete", extra=stats)
        except Exception as exc:
            logger.warning(f"{name} error: {exc}")


async def _embedding_worker_loop() -> None:
    await _periodic("embedding_worker", config.WORKER_INTERVAL_SECONDS, process_embedding_jobs)


async def _lease_sweep_loop() -> None:
    await _periodic("lease_sweep", config.LEASE_SWEEP_INTERVAL_SECONDS, run_lease_sweep)


async def _missing_embedding_sweep_loop() -> None:
    await _periodic(
        "missing_embedding_sweep",
        config.MISSING_EMBEDDING_SWEEP_INTERVAL_SECONDS,
        run_missing_embedding_sweep,
    )
