# =============================================
# File: app/utils/identity.py
# Purpose: Caller identity from the session provider's headers
# =============================================
from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from app.services.models import Identity

USER_HEADER = "X-User-Id"
PERMISSIONS_HEADER = "X-User-Permissions"


def identity_from_headers(request: Request) -> Optional[Identity]:
    actor = (request.headers.get(USER_HEADER) or "").strip()
    if not actor:
        return None
    raw = request.headers.get(PERMISSIONS_HEADER) or ""
    perms = frozenset(p.strip() for p in raw.split(",") if p.strip())
    return Identity(actor_id=actor, permissions=perms)


def require_identity(request: Request) -> Identity:
    """FastAPI dependency: 401 when no session identity is present."""
    ident = identity_from_headers(request)
    if ident is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return ident
