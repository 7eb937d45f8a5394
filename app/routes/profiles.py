"""
Interest profile and similar-owner endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from app.deps import tool_response
from core.services import interest_profiles


router = APIRouter(prefix="/owners/{owner_id}", tags=["profiles"])


class RecomputeRequest(BaseModel):
    lookback_days: Optional[int] = None


@router.post("/interest-profile")
def recompute(owner_id: str, request: RecomputeRequest):
    return tool_response(interest_profiles.recompute_interest_profile(owner_id, request.lookback_days))


@router.get("/interest-profile")
def get_profile(owner_id: str):
    return tool_response(interest_profiles.get_interest_profile(owner_id))


@router.get("/similar-owners")
def similar_owners(owner_id: str, threshold: Optional[float] = None, limit: Optional[int] = None):
    return tool_response(interest_profiles.similar_owners(owner_id, threshold, limit))
