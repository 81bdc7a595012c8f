# =============================================
# File: app/routers/metrics.py
# Purpose: Expose internal metrics as JSON
# =============================================
from __future__ import annotations
from fastapi import APIRouter, Request
from app.utils.metrics import snapshot

router = APIRouter(tags=["metrics"])

@router.get("/metrics")
def get_metrics(request: Request):
    """Return in-process metrics (JSON), plus live cache and background-writer figures."""
    data = snapshot()
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is not None:
        data["cache"] = pipeline.cache.stats()
        bg = pipeline.background
        data["background"] = {"completed": bg.completed, "failed": bg.failed, "dropped": bg.dropped}
    return data
