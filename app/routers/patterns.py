# =============================================
# File: app/routers/patterns.py
# Purpose: Semantic search over stored query patterns (similar questions, suggestions)
# =============================================
from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from app.services.models import Identity
from app.utils.identity import require_identity

router = APIRouter(prefix="/patterns", tags=["patterns"])


class PatternSearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=1000)
    database_id: str = Field(..., min_length=1, max_length=100)
    mode: Literal["similar", "suggestions"] = "similar"
    limit: int = Field(5, ge=1, le=20)


@router.post("/search")
def search_patterns(
    req: PatternSearchRequest,
    request: Request,
    identity: Identity = Depends(require_identity),
):
    pipeline = request.app.state.pipeline
    if pipeline.registry.get(req.database_id) is None:
        raise HTTPException(status_code=400, detail=f"Unknown database '{req.database_id}'")
    store = pipeline.patterns
    if store is None:
        return {"mode": req.mode, "results": []}
    if req.mode == "suggestions":
        return {"mode": req.mode, "results": store.suggestions(req.query, req.database_id, limit=req.limit)}
    matches = store.search_similar(req.query, req.database_id, top_k=req.limit)
    return {"mode": req.mode, "results": [m.model_dump() for m in matches]}


@router.get("/stats")
def pattern_stats(request: Request):
    store = request.app.state.pipeline.patterns
    if store is None:
        return {"available": False, "total_patterns": 0}
    return store.stats()
