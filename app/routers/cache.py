# =============================================
# File: app/routers/cache.py
# Purpose: Query-cache statistics and maintenance
# =============================================
from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from app.services.models import Identity
from app.utils.identity import require_identity

router = APIRouter(prefix="/cache", tags=["cache"])


class CacheAction(BaseModel):
    action: Literal["clear", "maintenance"]


@router.get("/stats")
def cache_stats(request: Request):
    return request.app.state.pipeline.cache.stats()


@router.post("")
def cache_action(req: CacheAction, request: Request, identity: Identity = Depends(require_identity)):
    cache = request.app.state.pipeline.cache
    if req.action == "clear":
        cache.clear()
        return {"action": "clear", "stats": cache.stats()}
    evicted = cache.maintain()
    return {"action": "maintenance", "evicted": evicted, "stats": cache.stats()}
