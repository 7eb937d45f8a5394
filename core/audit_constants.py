"""
Canonical audit event type strings.
"""

EVENT_JOB_FAILED = "job.failed"
EVENT_JOB_LEASE_RECLAIMED = "job.lease_reclaimed"
EVENT_JOBS_ENQUEUED_MISSING = "job.enqueued_missing"
EVENT_GRAPH_BACKFILLED = "graph.backfilled"
EVENT_VECTOR_DELETED = "vector.deleted"
EVENT_PROFILE_RECOMPUTED = "profile.recomputed"

__all__ = [
    "EVENT_JOB_FAILED",
    "EVENT_JOB_LEASE_RECLAIMED",
    "EVENT_JOBS_ENQUEUED_MISSING",
    "EVENT_GRAPH_BACKFILLED",
    "EVENT_VECTOR_DELETED",
    "EVENT_PROFILE_RECOMPUTED",
]
