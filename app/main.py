"""
Standalone FastAPI app wiring for ReadGraph.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

import core.config as config
from core.db import DB, init_db
from core.services import embedding_worker, engine_shared
from app.middleware import configure_middleware
from app.routes.audit import router as audit_router
from app.routes.graph import router as graph_router
from app.routes.health import router as health_router
from app.routes.jobs import router as jobs_router
from app.routes.profiles import router as profiles_router
from app.routes.recommendations import router as recommendations_router
from app.routes.root import router as root_router


background_tasks: list[asyncio.Task] = []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    init_db()
    engine_shared.init_http_client()
    if config.WORKER_ENABLED:
        await asyncio.to_thread(embedding_worker.run_lease_sweep)
        background_tasks.extend([
            asyncio.create_task(embedding_worker._embedding_worker_loop()),
            asyncio.create_task(embedding_worker._lease_sweep_loop()),
            asyncio.create_task(embedding_worker._missing_embedding_sweep_loop()),
        ])
    try:
        yield
    finally:
        for task in background_tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        background_tasks.clear()
        engine_shared.cleanup_http_client()
        if DB.engine:
            DB.engine.dispose()


app = FastAPI(title="ReadGraph", redirect_slashes=False, lifespan=lifespan)
configure_middleware(app)

# Health and root endpoints
app.include_router(health_router)
app.include_router(root_router)

# Engine endpoints
app.include_router(jobs_router)
app.include_router(graph_router)
app.include_router(recommendations_router)
app.include_router(profiles_router)
app.include_router(audit_router)
