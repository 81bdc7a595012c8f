# =============================================
# File: app/utils/slog.py
# Purpose: One-JSON-object-per-line event log for requests and pipeline transitions
# =============================================
from __future__ import annotations

import hashlib
import json
import logging
import os
import uuid
from typing import Any, Dict, Optional

from .qcache import normalize_text

LOGGER_NAME = "askdb"

# Fields that must never reach the event log verbatim
_REDACTED = frozenset({"query", "question", "previous_query", "rows"})


def _build_logger() -> logging.Logger:
    log = logging.getLogger(LOGGER_NAME)
    if log.handlers:
        return log
    log.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    log.addHandler(handler)
    # caplog hooks the root logger
    log.propagate = True
    return log


_logger = _build_logger()


def qhash(text: str) -> str:
    """10-hex digest of the question, normalized the same way as cache keys."""
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()[:10]


def new_request_id() -> str:
    return uuid.uuid4().hex


def _emit(payload: Dict[str, Any]) -> None:
    clean = {k: v for k, v in payload.items() if k not in _REDACTED}
    _logger.info(json.dumps(clean, ensure_ascii=False, default=str))


def log_event(event: str, **fields: Any) -> None:
    _emit({"event": event, **fields})


def finalize_request_log(
    request_id: str,
    method: str,
    path: str,
    status: int,
    latency_ms: int,
    client_ip: Optional[str],
    ctx: Optional[Dict[str, Any]] = None,
) -> None:
    """Closing line for one HTTP request; router context (actor, qhash, database) is merged in."""
    payload: Dict[str, Any] = {
        "event": "request.completed",
        "request_id": request_id,
        "method": method,
        "path": path,
        "status": status,
        "latency_ms": latency_ms,
        "client_ip": client_ip or "",
    }
    payload.update(ctx or {})
    _emit(payload)
