"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import core.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "ReadGraph",
        "version": "0.1.0",
        "description": "Embedding-driven relationship and recommendation engine",
        "embedding_provider": config.EMBEDDING_PROVIDER,
        "embedding_model": config.EMBEDDING_MODEL,
        "embedding_dim": config.EMBEDDING_DIM,
        "endpoints": {
            "health": "/health",
            "health_deps": "/health/deps",
            "jobs": "/jobs",
            "graph": "/owners/{owner_id}/graph",
            "recommendations": "/owners/{owner_id}/recommendations",
            "interest_profile": "/owners/{owner_id}/interest-profile",
            "similar_owners": "/owners/{owner_id}/similar-owners",
            "audit_events": "/owners/{owner_id}/audit-events",
        },
    }
