# =============================================
# File: app/routers/history.py
# Purpose: Caller's audit trail (last queries and their outcome)
# =============================================
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from app.services.models import Identity
from app.utils.identity import require_identity

router = APIRouter(tags=["history"])


@router.get("/history")
def get_history(
    request: Request,
    database: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    identity: Identity = Depends(require_identity),
):
    audit = request.app.state.pipeline.audit
    records = audit.history(identity.actor_id, store_id=database, limit=limit, action=action)
    return {"items": [r.model_dump(mode="json") for r in records], "count": len(records)}
