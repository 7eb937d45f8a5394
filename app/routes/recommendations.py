"""
Recommendation endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter

from app.deps import tool_response
from core.services.recommendations import get_recommendations


router = APIRouter(tags=["recommendations"])


@router.get("/owners/{owner_id}/recommendations")
def recommendations(owner_id: str, limit_per_signal: Optional[int] = None):
    return tool_response(get_recommendations(owner_id, limit_per_signal))
