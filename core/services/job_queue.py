"""
Embedding job queue: enqueue, leased dequeue, completion and bounded retry.

This module is the only code that mutates ``embedding_jobs`` rows. Each
operation is its own unit of work and commits before returning.

Leasing on Postgres uses ``SELECT ... FOR UPDATE SKIP LOCKED``. SQLite has no
row locks, so leases there go through a process-wide mutex and a conditional
``UPDATE ... WHERE status = 'pending'`` so a row can only be claimed once.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, exists, func
from sqlalchemy.exc import IntegrityError

import core.config as config
from core.audit import log_event
from core.audit_constants import (
    EVENT_JOB_FAILED,
    EVENT_JOB_LEASE_RECLAIMED,
    EVENT_JOBS_ENQUEUED_MISSING,
)
from core.db import DB, is_sqlite
from core.errors import ValidationIssue
from core.models import ContentItem, EmbeddingJob, EmbeddingVector, JobStatus, ACTIVE_JOB_STATUSES
from core.services.engine_shared import _isoformat, _utcnow, logger, service_tool
from core.validators import (
    validate_item_id,
    validate_item_type,
    validate_limit,
    validate_optional_text,
    validate_owner_id,
    validate_priority,
    validate_required_text,
)

LEASE_EXPIRED_ERROR = "lease expired"

_sqlite_lease_lock = threading.Lock()


def _coerce_job_id(job_id):
    try:
        parsed = job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id).strip())
    except (TypeError, ValueError, AttributeError) as exc:
        raise ValidationIssue(
            "job_id must be a UUID",
            field="job_id",
            error_type="invalid_id",
        ) from exc
    return parsed if config.DB_BACKEND_EFFECTIVE == "postgres" else str(parsed)


def _validate_priority_range(priority: int) -> None:
    validate_priority(priority)
    if priority < 0 or priority > config.JOB_MAX_PRIORITY:
        raise ValidationIssue(
            f"priority must be between 0 and {config.JOB_MAX_PRIORITY}",
            field="priority",
            error_type="out_of_range",
        )


def _truncate_error(error: str) -> str:
    return error[: config.MAX_ERROR_MESSAGE_LENGTH]


def _active_job(db, item_type: str, item_id: str) -> Optional[EmbeddingJob]:
    return db.query(EmbeddingJob).filter(
        EmbeddingJob.item_type == item_type,
        EmbeddingJob.item_id == item_id,
        EmbeddingJob.status.in_(ACTIVE_JOB_STATUSES),
    ).first()


def _raise_priority(db, job: EmbeddingJob, priority: int) -> Optional[EmbeddingJob]:
    """
    Refresh an active job and raise its priority to the larger value.

    Returns None when the job left the active states before the update.
    """
    # max() happens in SQL so concurrent enqueues settle on the highest value
    updated = db.query(EmbeddingJob).filter(
        EmbeddingJob.id == job.id,
        EmbeddingJob.status.in_(ACTIVE_JOB_STATUSES),
    ).update(
        {
            "priority": case(
                (EmbeddingJob.priority < priority, priority),
                else_=EmbeddingJob.priority,
            ),
            "updated_at": _utcnow(),
        },
        synchronize_session=False,
    )
    db.commit()
    if not updated:
        return None
    db.refresh(job)
    return job


# =============================================================================
# Enqueue
# =============================================================================

def enqueue(
    db,
    owner_id: str,
    item_type: str,
    item_id: str,
    priority: Optional[int] = None,
) -> tuple[EmbeddingJob, bool]:
    """
    Queue an item for embedding.

    Returns ``(job, created)``. When the item already has a pending or
    processing job, that job keeps its identity, its timestamp is refreshed
    and its priority is raised to the larger of the two values.
    """
    owner_id = validate_owner_id(owner_id)
    item_type = validate_item_type(item_type)
    item_id = validate_item_id(item_id)
    if priority is None:
        priority = config.JOB_DEFAULT_PRIORITY
    _validate_priority_range(priority)

    existing = _active_job(db, item_type, item_id)
    if existing is not None:
        refreshed = _raise_priority(db, existing, priority)
        if refreshed is not None:
            return refreshed, False

    now = _utcnow()
    job = EmbeddingJob(
        owner_id=owner_id,
        item_type=item_type,
        item_id=item_id,
        status=JobStatus.pending.value,
        priority=priority,
        retry_count=0,
        max_retries=config.JOB_MAX_RETRIES,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        # Lost the race on the active-job index; fold into the winner.
        db.rollback()
        existing = _active_job(db, item_type, item_id)
        if existing is None:
            raise
        return _raise_priority(db, existing, priority) or existing, False

    logger.info(
        "embedding_job_enqueued",
        extra={"owner_id": owner_id, "item_type": item_type, "item_id": item_id, "priority": priority},
    )
    return job, True


# =============================================================================
# Lease
# =============================================================================

def _lease_filters(max_priority: int):
    return (
        EmbeddingJob.status == JobStatus.pending.value,
        EmbeddingJob.retry_count < EmbeddingJob.max_retries,
        EmbeddingJob.priority <= max_priority,
    )


def _lease_values(now: datetime, lease_seconds: int) -> dict:
    return {
        "status": JobStatus.processing.value,
        "started_at": now,
        "updated_at": now,
        "lease_token": str(uuid.uuid4()),
        "lease_expires_at": now + timedelta(seconds=lease_seconds),
    }


def _lease_postgres(db, batch_size: int, max_priority: int, lease_seconds: int) -> list[EmbeddingJob]:
    now = _utcnow()
    jobs = (
        db.query(EmbeddingJob)
        .filter(*_lease_filters(max_priority))
        .order_by(EmbeddingJob.priority.desc(), EmbeddingJob.created_at.asc())
        .limit(batch_size)
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in jobs:
        for key, value in _lease_values(now, lease_seconds).items():
            setattr(job, key, value)
    db.commit()
    return jobs


def _lease_sqlite(db, batch_size: int, max_priority: int, lease_seconds: int) -> list[EmbeddingJob]:
    leased_ids = []
    with _sqlite_lease_lock:
        now = _utcnow()
        candidates = (
            db.query(EmbeddingJob.id)
            .filter(*_lease_filters(max_priority))
            .order_by(EmbeddingJob.priority.desc(), EmbeddingJob.created_at.asc())
            .limit(batch_size)
            .all()
        )
        for (job_id,) in candidates:
            claimed = db.query(EmbeddingJob).filter(
                EmbeddingJob.id == job_id,
                EmbeddingJob.status == JobStatus.pending.value,
            ).update(_lease_values(now, lease_seconds), synchronize_session=False)
            if claimed:
                leased_ids.append(job_id)
        db.commit()

    if not leased_ids:
        return []
    return (
        db.query(EmbeddingJob)
        .filter(EmbeddingJob.id.in_(leased_ids))
        .order_by(EmbeddingJob.priority.desc(), EmbeddingJob.created_at.asc())
        .all()
    )


def lease_batch(
    db,
    batch_size: Optional[int] = None,
    max_priority: Optional[int] = None,
    lease_seconds: Optional[int] = None,
) -> list[EmbeddingJob]:
    """
    Claim up to ``batch_size`` pending jobs, highest priority first, oldest
    first within a priority. Concurrent callers never receive the same job.
    """
    batch_size = config.JOB_BATCH_SIZE if batch_size is None else batch_size
    max_priority = config.JOB_MAX_PRIORITY if max_priority is None else max_priority
    lease_seconds = config.JOB_LEASE_SECONDS if lease_seconds is None else lease_seconds
    validate_limit(batch_size, "batch_size", config.MAX_RESULT_LIMIT)
    validate_priority(max_priority, "max_priority")
    validate_limit(lease_seconds, "lease_seconds", 24 * 3600)

    if is_sqlite(db):
        jobs = _lease_sqlite(db, batch_size, max_priority, lease_seconds)
    else:
        jobs = _lease_postgres(db, batch_size, max_priority, lease_seconds)
    if jobs:
        logger.info("embedding_jobs_leased", extra={"count": len(jobs)})
    return jobs


# =============================================================================
# Complete / Fail
# =============================================================================

def _processing_filter(job_id, lease_token: Optional[str]):
    validate_optional_text(lease_token, "lease_token", 36)
    filters = [
        EmbeddingJob.id == job_id,
        EmbeddingJob.status == JobStatus.processing.value,
    ]
    if lease_token is not None:
        filters.append(EmbeddingJob.lease_token == lease_token)
    return filters


def complete(db, job_id, lease_token: Optional[str] = None) -> bool:
    """Mark a processing job completed. False when the job is not ours to complete."""
    job_id = _coerce_job_id(job_id)
    now = _utcnow()
    updated = db.query(EmbeddingJob).filter(*_processing_filter(job_id, lease_token)).update(
        {
            "status": JobStatus.completed.value,
            "completed_at": now,
            "updated_at": now,
            "lease_token": None,
            "lease_expires_at": None,
        },
        synchronize_session=False,
    )
    db.commit()
    if not updated:
        logger.info("embedding_job_complete_noop", extra={"job_id": str(job_id)})
    return bool(updated)


def _record_failure(
    db,
    job: EmbeddingJob,
    error: str,
    retryable: bool,
    now: datetime,
    actor_type: str = "worker",
) -> Optional[str]:
    """Apply retry accounting to one processing job. Returns the new status."""
    next_count = (job.retry_count or 0) + 1
    if retryable and next_count < (job.max_retries or 0):
        values = {
            "status": JobStatus.pending.value,
            "completed_at": None,
        }
    else:
        values = {
            "status": JobStatus.failed.value,
            "completed_at": now,
        }
    values.update({
        "retry_count": next_count,
        "error_message": _truncate_error(error),
        "updated_at": now,
        "lease_token": None,
        "lease_expires_at": None,
    })

    # compare-and-set on the retry count we read
    updated = db.query(EmbeddingJob).filter(
        EmbeddingJob.id == job.id,
        EmbeddingJob.status == JobStatus.processing.value,
        EmbeddingJob.retry_count == job.retry_count,
    ).update(values, synchronize_session=False)
    if not updated:
        return None

    if values["status"] == JobStatus.failed.value:
        log_event(
            db,
            event_type=EVENT_JOB_FAILED,
            actor_type=actor_type,
            owner_id=job.owner_id,
            target_type="job",
            target_ids=[str(job.id)],
            count_affected=1,
            reason="retries_exhausted" if retryable else "non_retryable",
            metadata={
                "item_type": job.item_type,
                "item_id": job.item_id,
                "retry_count": next_count,
                "max_retries": job.max_retries,
            },
        )
        logger.warning(
            "embedding_job_failed",
            extra={"job_id": str(job.id), "item_type": job.item_type, "retry_count": next_count},
        )
    return values["status"]


def fail(
    db,
    job_id,
    error: str,
    lease_token: Optional[str] = None,
    retryable: bool = True,
) -> Optional[str]:
    """
    Record a failed attempt on a processing job.

    Returns ``"pending"`` when the job was requeued, ``"failed"`` when it is
    terminal, and None when the job was not processing (or not ours).
    """
    job_id = _coerce_job_id(job_id)
    validate_required_text(error, "error", 1_000_000)

    job = db.query(EmbeddingJob).filter(*_processing_filter(job_id, lease_token)).first()
    if job is None:
        db.rollback()
        logger.info("embedding_job_fail_noop", extra={"job_id": str(job_id)})
        return None
    status = _record_failure(db, job, error, retryable, _utcnow())
    db.commit()
    return status


def reclaim_expired_leases(db, now: Optional[datetime] = None) -> dict:
    """
    Treat every processing job whose lease has lapsed as a failed attempt.
    """
    now = now or _utcnow()
    lock = _sqlite_lease_lock if is_sqlite(db) else None
    if lock is not None:
        lock.acquire()
    try:
        expired = db.query(EmbeddingJob).filter(
            EmbeddingJob.status == JobStatus.processing.value,
            EmbeddingJob.lease_expires_at.isnot(None),
            EmbeddingJob.lease_expires_at < now,
        ).all()

        requeued = 0
        failed = 0
        reclaimed_ids = []
        owners = set()
        for job in expired:
            status = _record_failure(db, job, LEASE_EXPIRED_ERROR, True, now, actor_type="system")
            if status is None:
                continue
            reclaimed_ids.append(str(job.id))
            owners.add(job.owner_id)
            if status == JobStatus.pending.value:
                requeued += 1
            else:
                failed += 1

        if reclaimed_ids:
            log_event(
                db,
                event_type=EVENT_JOB_LEASE_RECLAIMED,
                actor_type="system",
                owner_id=owners.pop() if len(owners) == 1 else None,
                target_type="job",
                target_ids=reclaimed_ids,
                count_affected=len(reclaimed_ids),
                reason="lease_expired",
                metadata={"requeued": requeued, "failed": failed},
            )
        db.commit()
    finally:
        if lock is not None:
            lock.release()

    if reclaimed_ids:
        logger.warning(
            "embedding_leases_reclaimed",
            extra={"reclaimed": len(reclaimed_ids), "requeued": requeued, "failed": failed},
        )
    return {"reclaimed": len(reclaimed_ids), "requeued": requeued, "failed": failed}


# =============================================================================
# Sweeps and stats
# =============================================================================

def enqueue_missing_embeddings(
    db,
    owner_id: Optional[str] = None,
    limit: Optional[int] = None,
    priority: Optional[int] = None,
) -> dict:
    """Queue content items that have no vector and no active job."""
    limit = config.MISSING_EMBEDDING_SWEEP_LIMIT if limit is None else limit
    validate_limit(limit, "limit", 10_000)
    if owner_id is not None:
        owner_id = validate_owner_id(owner_id)

    has_vector = exists().where(
        EmbeddingVector.item_type == ContentItem.item_type,
        EmbeddingVector.item_id == ContentItem.item_id,
    )
    has_active_job = exists().where(
        EmbeddingJob.item_type == ContentItem.item_type,
        EmbeddingJob.item_id == ContentItem.item_id,
        EmbeddingJob.status.in_(ACTIVE_JOB_STATUSES),
    )
    query = db.query(ContentItem.owner_id, ContentItem.item_type, ContentItem.item_id).filter(
        ~has_vector,
        ~has_active_job,
    )
    if owner_id:
        query = query.filter(ContentItem.owner_id == owner_id)
    rows = query.order_by(ContentItem.created_at.asc()).limit(limit).all()

    enqueued = 0
    for row in rows:
        _, created = enqueue(db, row.owner_id, row.item_type, row.item_id, priority)
        if created:
            enqueued += 1

    if enqueued:
        log_event(
            db,
            event_type=EVENT_JOBS_ENQUEUED_MISSING,
            actor_type="system",
            owner_id=owner_id,
            target_type="job",
            target_ids=[],
            count_affected=enqueued,
            reason="missing_vector",
        )
        db.commit()
        logger.info("missing_embeddings_enqueued", extra={"count": enqueued, "owner_id": owner_id})
    return {"scanned": len(rows), "enqueued": enqueued}


def queue_stats(db, owner_id: Optional[str] = None) -> dict:
    query = db.query(EmbeddingJob.status, func.count()).group_by(EmbeddingJob.status)
    expired_query = db.query(func.count(EmbeddingJob.id)).filter(
        EmbeddingJob.status == JobStatus.processing.value,
        EmbeddingJob.lease_expires_at < _utcnow(),
    )
    if owner_id:
        query = query.filter(EmbeddingJob.owner_id == owner_id)
        expired_query = expired_query.filter(EmbeddingJob.owner_id == owner_id)
    counts = {status.value: 0 for status in JobStatus}
    counts.update(dict(query.all()))
    return {"by_status": counts, "expired_leases": expired_query.scalar() or 0}


def serialize_job(job: EmbeddingJob) -> dict:
    return {
        "id": str(job.id),
        "owner_id": job.owner_id,
        "item_type": job.item_type,
        "item_id": job.item_id,
        "status": job.status,
        "priority": job.priority,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "error_message": job.error_message,
        "lease_token": job.lease_token,
        "lease_expires_at": _isoformat(job.lease_expires_at),
        "created_at": _isoformat(job.created_at),
        "updated_at": _isoformat(job.updated_at),
        "started_at": _isoformat(job.started_at),
        "completed_at": _isoformat(job.completed_at),
    }


# =============================================================================
# Service tools
# =============================================================================

@service_tool
def enqueue_embedding_job(
    owner_id: str,
    item_type: str,
    item_id: str,
    priority: Optional[int] = None,
) -> dict:
    db = DB.SessionLocal()
    try:
        job, created = enqueue(db, owner_id, item_type, item_id, priority)
        return {"status": "ok", "created": created, "job": serialize_job(job)}
    finally:
        db.close()


@service_tool
def lease_embedding_jobs(
    batch_size: Optional[int] = None,
    max_priority: Optional[int] = None,
) -> dict:
    db = DB.SessionLocal()
    try:
        jobs = lease_batch(db, batch_size, max_priority)
        return {"status": "ok", "count": len(jobs), "jobs": [serialize_job(job) for job in jobs]}
    finally:
        db.close()


@service_tool
def complete_embedding_job(job_id: str, lease_token: Optional[str] = None) -> dict:
    db = DB.SessionLocal()
    try:
        if complete(db, job_id, lease_token):
            return {"status": "ok", "job_id": str(job_id), "job_status": JobStatus.completed.value}
        return {"status": "noop", "job_id": str(job_id)}
    finally:
        db.close()


@service_tool
def fail_embedding_job(
    job_id: str,
    error: str,
    lease_token: Optional[str] = None,
    retryable: bool = True,
) -> dict:
    db = DB.SessionLocal()
    try:
        status = fail(db, job_id, error, lease_token, retryable)
        if status is None:
            return {"status": "noop", "job_id": str(job_id)}
        return {"status": "ok", "job_id": str(job_id), "job_status": status}
    finally:
        db.close()


@service_tool
def reclaim_expired_jobs() -> dict:
    db = DB.SessionLocal()
    try:
        return {"status": "ok", **reclaim_expired_leases(db)}
    finally:
        db.close()


@service_tool
def queue_missing_embeddings(owner_id: Optional[str] = None, limit: Optional[int] = None) -> dict:
    db = DB.SessionLocal()
    try:
        return {"status": "ok", **enqueue_missing_embeddings(db, owner_id, limit)}
    finally:
        db.close()


@service_tool
def embedding_queue_stats(owner_id: Optional[str] = None) -> dict:
    if owner_id is not None:
        owner_id = validate_owner_id(owner_id)
    db = DB.SessionLocal()
    try:
        return {"status": "ok", "owner_id": owner_id, **queue_stats(db, owner_id)}
    finally:
        db.close()
