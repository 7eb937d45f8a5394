"""
Relationship graph endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from app.deps import tool_response
from core.models import ItemType
from core.services import relationship_graph, vector_store


router = APIRouter(prefix="/owners/{owner_id}/graph", tags=["graph"])


class DiscoverRequest(BaseModel):
    item_id: str
    item_type: str = ItemType.document.value
    similarity_threshold: Optional[float] = None
    neighbor_limit: Optional[int] = None


class BackfillRequest(BaseModel):
    item_type: Optional[str] = None


@router.post("/discover")
def discover(owner_id: str, request: DiscoverRequest):
    return tool_response(relationship_graph.discover_relationships(
        owner_id,
        request.item_id,
        request.item_type,
        request.similarity_threshold,
        request.neighbor_limit,
    ))


@router.post("/backfill")
def backfill(owner_id: str, request: BackfillRequest):
    return tool_response(relationship_graph.backfill_relationships(owner_id, request.item_type))


@router.get("/items/{item_id}/related")
def related(
    owner_id: str,
    item_id: str,
    item_type: str = ItemType.document.value,
    limit: Optional[int] = None,
):
    return tool_response(relationship_graph.related_items(owner_id, item_id, item_type, limit))


@router.get("/items/{item_id}/similar")
def similar(
    owner_id: str,
    item_id: str,
    item_type: str = ItemType.document.value,
    similarity_threshold: float = 0.0,
    limit: int = 10,
):
    """Raw nearest neighbours from the vector store."""
    return tool_response(vector_store.similar_items(
        owner_id,
        item_type,
        item_id,
        similarity_threshold,
        limit,
    ))


@router.get("/coverage")
def coverage(owner_id: str):
    return tool_response(vector_store.vector_coverage(owner_id))


class VectorRequest(BaseModel):
    vector: list[float]
    item_type: str = ItemType.document.value
    model_version: Optional[str] = None


@router.put("/items/{item_id}/vector")
def store_vector(owner_id: str, item_id: str, request: VectorRequest):
    """Store a precomputed vector and relink the item when it changed."""
    return tool_response(vector_store.store_item_vector(
        owner_id,
        request.item_type,
        item_id,
        request.vector,
        request.model_version,
    ))


@router.delete("/items/{item_id}/vector")
def delete_vector(owner_id: str, item_id: str, item_type: str = ItemType.document.value):
    return tool_response(vector_store.delete_vector(owner_id, item_type, item_id))
