# =============================================
# File: app/services/audit.py
# Purpose: Durable audit/history trail for query requests (SQLModel)
# =============================================
from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from app.db.models import AuditRecord, AuditStatus
from app.db.repo import init_db, make_engine

QUERY_ACTION = "QUERY_EXECUTE"
EXPLAIN_ACTION = "QUERY_EXPLAIN"


class AuditRecorder:
    """
    PENDING on acceptance, then exactly one of SUCCESS | ERROR.
    Terminal updates are conditional on status = PENDING, so a record is never
    moved twice. Storage failures are logged and swallowed, except for strict
    terminal updates, which raise so a background retry can run them again.
    """

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine
        self._ready = False
        self._lock = threading.Lock()

    def _get_engine(self) -> Engine:
        with self._lock:
            if self._engine is None:
                self._engine = make_engine()
            if not self._ready:
                init_db(self._engine)
                self._ready = True
            return self._engine

    # ---------------- lifecycle ---------------- #

    def start(self, actor_id: str, store_id: str, question: str, details: Optional[Dict[str, Any]] = None) -> Optional[int]:
        try:
            rec = AuditRecord(
                actor_id=actor_id,
                action=QUERY_ACTION,
                resource=f"database:{store_id}",
                store_id=store_id,
                query_text=question,
                details=json.dumps(details or {}, ensure_ascii=False, default=str),
            )
            with Session(self._get_engine()) as session:
                session.add(rec)
                session.commit()
                session.refresh(rec)
                return rec.id
        except Exception as e:
            logger.warning("audit start failed for actor={} store={}: {}", actor_id, store_id, e)
            return None

    def record_action(
        self,
        actor_id: str,
        action: str,
        store_id: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> Optional[int]:
        """One-shot entry for actions with no lifecycle (e.g. an explanation request)."""
        try:
            rec = AuditRecord(
                actor_id=actor_id,
                action=action,
                resource=f"database:{store_id}",
                store_id=store_id,
                details=json.dumps(details or {}, ensure_ascii=False, default=str),
                status=AuditStatus.SUCCESS if success else AuditStatus.ERROR,
                success=success,
                error_message=error_message,
            )
            with Session(self._get_engine()) as session:
                session.add(rec)
                session.commit()
                session.refresh(rec)
                return rec.id
        except Exception as e:
            logger.warning("audit {} failed for actor={} store={}: {}", action, actor_id, store_id, e)
            return None

    def _finish(self, record_id: Optional[int], values: Dict[str, Any], strict: bool = False) -> bool:
        if record_id is None:
            return False
        values["updated_at"] = datetime.now(timezone.utc)
        stmt = (
            update(AuditRecord)
            .where(AuditRecord.id == record_id)
            .where(AuditRecord.status == AuditStatus.PENDING)
            .values(**values)
        )
        try:
            with self._get_engine().begin() as conn:
                moved = conn.execute(stmt).rowcount == 1
        except Exception as e:
            logger.warning("audit update failed for record {}: {}", record_id, e)
            if strict:
                raise
            return False
        if not moved:
            logger.info("audit record {} is not pending; terminal update ignored", record_id)
        return moved

    def complete(
        self,
        record_id: Optional[int],
        *,
        generated_query: str,
        results_summary: str,
        execution_time_ms: int = 0,
        row_count: int = 0,
        pii_types: Optional[List[str]] = None,
    ) -> bool:
        return self._finish(record_id, {
            "status": AuditStatus.SUCCESS,
            "success": True,
            "generated_query": generated_query,
            "results_summary": results_summary,
            "execution_time_ms": int(execution_time_ms),
            "row_count": int(row_count),
            "pii_types": ",".join(pii_types) if pii_types else None,
        })

    def fail(
        self,
        record_id: Optional[int],
        *,
        error_message: str,
        error_kind: str,
        generated_query: Optional[str] = None,
        strict: bool = False,
    ) -> bool:
        return self._finish(record_id, {
            "status": AuditStatus.ERROR,
            "success": False,
            "error_message": (error_message or "")[:2000],
            "error_kind": error_kind,
            "generated_query": generated_query,
        }, strict=strict)

    # ---------------- reads ---------------- #

    def get(self, record_id: int) -> Optional[AuditRecord]:
        try:
            with Session(self._get_engine()) as session:
                return session.get(AuditRecord, record_id)
        except Exception as e:
            logger.warning("audit read failed for record {}: {}", record_id, e)
            return None

    def history(
        self,
        actor_id: str,
        store_id: Optional[str] = None,
        limit: int = 50,
        action: Optional[str] = None,
    ) -> List[AuditRecord]:
        stmt = select(AuditRecord).where(AuditRecord.actor_id == actor_id)
        if store_id:
            stmt = stmt.where(AuditRecord.store_id == store_id.lower())
        if action:
            stmt = stmt.where(AuditRecord.action == action)
        stmt = stmt.order_by(col(AuditRecord.created_at).desc(), col(AuditRecord.id).desc()).limit(max(1, limit))
        try:
            with Session(self._get_engine()) as session:
                return list(session.exec(stmt).all())
        except Exception as e:
            logger.warning("audit history failed for actor={}: {}", actor_id, e)
            return []

    def failed_attempts(
        self,
        actor_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        stmt = select(AuditRecord).where(AuditRecord.status == AuditStatus.ERROR)
        if actor_id:
            stmt = stmt.where(AuditRecord.actor_id == actor_id)
        if since is not None:
            stmt = stmt.where(AuditRecord.created_at >= since)
        stmt = stmt.order_by(col(AuditRecord.created_at).desc(), col(AuditRecord.id).desc()).limit(max(1, limit))
        try:
            with Session(self._get_engine()) as session:
                return list(session.exec(stmt).all())
        except Exception as e:
            logger.warning("audit failed-attempts query failed: {}", e)
            return []
