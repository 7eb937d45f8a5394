"""
Embedding job queue endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.deps import get_db_session, tool_response
from core.services import embedding_worker, job_queue
from core.services.vector_store import coverage_stats


router = APIRouter(prefix="/jobs", tags=["jobs"])


class EnqueueRequest(BaseModel):
    owner_id: str
    item_type: str
    item_id: str
    priority: Optional[int] = None


class LeaseRequest(BaseModel):
    batch_size: Optional[int] = None
    max_priority: Optional[int] = None


class CompleteRequest(BaseModel):
    lease_token: Optional[str] = None


class FailRequest(BaseModel):
    error: str = Field(..., min_length=1)
    lease_token: Optional[str] = None
    retryable: bool = True


class ProcessRequest(BaseModel):
    batch_size: Optional[int] = None


@router.post("")
def enqueue_job(request: EnqueueRequest):
    return tool_response(job_queue.enqueue_embedding_job(
        request.owner_id,
        request.item_type,
        request.item_id,
        request.priority,
    ))


@router.post("/lease")
def lease_jobs(request: LeaseRequest):
    return tool_response(job_queue.lease_embedding_jobs(request.batch_size, request.max_priority))


@router.post("/{job_id}/complete")
def complete_job(job_id: str, request: CompleteRequest):
    return tool_response(job_queue.complete_embedding_job(job_id, request.lease_token))


@router.post("/{job_id}/fail")
def fail_job(job_id: str, request: FailRequest):
    return tool_response(job_queue.fail_embedding_job(
        job_id,
        request.error,
        request.lease_token,
        request.retryable,
    ))


@router.post("/reclaim")
def reclaim_jobs():
    return tool_response(job_queue.reclaim_expired_jobs())


@router.post("/enqueue-missing")
def enqueue_missing(owner_id: Optional[str] = None, limit: Optional[int] = None):
    return tool_response(job_queue.queue_missing_embeddings(owner_id, limit))


@router.post("/process")
def process_jobs(request: ProcessRequest):
    """Run one worker pass inline."""
    return embedding_worker.process_embedding_jobs(request.batch_size)


@router.get("/stats")
def job_stats(owner_id: Optional[str] = None, db=Depends(get_db_session)):
    return {
        "status": "ok",
        "owner_id": owner_id,
        **job_queue.queue_stats(db, owner_id),
        "coverage": coverage_stats(db, owner_id),
    }
