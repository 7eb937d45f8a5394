"""
Health and dependency endpoints.
"""

from __future__ import annotations

import os
import time

from fastapi import APIRouter, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.db import DB, schema_status
from core.errors import EmbeddingProviderError
from core.services import engine_shared


router = APIRouter()


def _vector_required() -> bool:
    return config.DB_BACKEND == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            ext_version = None
            pgvector_installed = True
            if _vector_required():
                ext_version = conn.execute(
                    text("SELECT extversion FROM pg_extension WHERE extname = 'vector'")
                ).scalar()
                pgvector_installed = bool(ext_version)
    except SQLAlchemyError as exc:
        return {"ok": False, "error": str(exc)}

    schema = schema_status(DB.engine)
    return {
        "ok": schema["up_to_date"],
        "pgvector_installed": pgvector_installed,
        "pgvector_version": ext_version,
        "schema": schema,
    }


async def _check_embedding_health(check_external: bool) -> dict:
    breaker_status = engine_shared.embedding_circuit_breaker.status()
    embedding_status = {
        "status": "unknown",
        "provider": config.EMBEDDING_PROVIDER,
        "model": config.EMBEDDING_MODEL,
        "circuit_breaker": breaker_status,
        "checked": False,
    }

    if config.EMBEDDING_PROVIDER == "none":
        embedding_status["status"] = "disabled"
        return embedding_status

    if breaker_status.get("open"):
        embedding_status["status"] = "cooldown"
        return embedding_status

    if check_external and config.EMBEDDING_HEALTHCHECK_ENABLED:
        embedding_status["checked"] = True
        start = time.time()
        try:
            await engine_shared.embed_text("healthcheck")
            embedding_status["status"] = "ok"
            embedding_status["latency_ms"] = int((time.time() - start) * 1000)
        except EmbeddingProviderError as exc:
            embedding_status["status"] = "error"
            embedding_status["error"] = str(exc)
        return embedding_status

    embedding_status["status"] = "skipped" if check_external else "ready"
    return embedding_status


@router.get("/health")
async def health():
    """Health check endpoint."""
    db_health = _check_db_health()
    embedding_status = await _check_embedding_health(check_external=False)
    if not db_health.get("ok") or (_vector_required() and not db_health.get("pgvector_installed")):
        raise HTTPException(
            status_code=503,
            detail={"database": db_health, "embedding_provider": embedding_status},
        )

    return {
        "status": "healthy",
        "service": "ReadGraph",
        "version": "0.1.0",
        "instance_id": os.environ.get("READGRAPH_INSTANCE_ID", "readgraph-1"),
        "database": db_health,
        "embedding_provider": embedding_status,
    }


@router.get("/health/deps")
async def health_deps():
    """Dependency health checks (optional embedding provider probe)."""
    db_health = _check_db_health()
    if not db_health.get("ok") or (_vector_required() and not db_health.get("pgvector_installed")):
        raise HTTPException(status_code=503, detail={"database": db_health})

    embedding_status = await _check_embedding_health(check_external=True)

    return {
        "status": "healthy",
        "service": "ReadGraph",
        "database": db_health,
        "embedding_provider": embedding_status,
    }
