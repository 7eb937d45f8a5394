"""
Dependency helpers for the standalone FastAPI app.
"""

from __future__ import annotations

from typing import Generator

from fastapi import HTTPException

from core.db import DB


def get_db_session() -> Generator:
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def tool_response(result: dict, not_found_ok: bool = False) -> dict:
    """Map a service tool payload onto HTTP status codes."""
    status = result.get("status")
    if status == "error":
        raise HTTPException(status_code=400, detail=result)
    if status == "not_found" and not not_found_ok:
        raise HTTPException(status_code=404, detail=result)
    return result
