"""
Audit trail reads.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from app.deps import get_db_session
from core.audit import list_audit_events


router = APIRouter(prefix="/owners/{owner_id}", tags=["audit"])


@router.get("/audit-events")
def audit_events(
    owner_id: str,
    event_type: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 100,
    cursor: Optional[str] = None,
    db=Depends(get_db_session),
):
    try:
        return list_audit_events(
            db,
            owner_id=owner_id,
            event_type=event_type,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
