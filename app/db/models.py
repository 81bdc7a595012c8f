# =============================================
# File: app/db/models.py
# Purpose: SQLModel ORM definition for the query audit trail (one row per accepted request).
# =============================================

from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditStatus:
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class AuditRecord(SQLModel, table=True):
    __tablename__ = "audit_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    actor_id: str = Field(index=True)
    action: str = "QUERY_EXECUTE"
    resource: str = ""                      # "database:<id>"
    store_id: str = Field(default="", index=True)
    query_text: str = ""
    details: str = "{}"                     # JSON text
    status: str = Field(default=AuditStatus.PENDING, index=True)
    success: Optional[bool] = None
    generated_query: Optional[str] = None
    results_summary: Optional[str] = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    execution_time_ms: int = 0
    row_count: int = 0
    pii_types: Optional[str] = None         # comma separated
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    updated_at: datetime = Field(default_factory=_utcnow)
