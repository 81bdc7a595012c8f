# =============================================
# File: app/services/models.py
# Purpose: Typed data passed between pipeline stages
# =============================================
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

UNMASK_PERMISSION = "pii:unmask"


class Identity(BaseModel):
    """Caller identity as supplied by the session provider."""
    actor_id: str = Field(..., min_length=1)
    permissions: FrozenSet[str] = frozenset()

    @property
    def can_unmask(self) -> bool:
        return UNMASK_PERMISSION in self.permissions


class ConversationContext(BaseModel):
    previous_query: str = Field("", max_length=2000)
    previous_sql: str = Field("", max_length=2000)

    @property
    def usable(self) -> bool:
        return bool(self.previous_query.strip() and self.previous_sql.strip())


def normalize_confidence(raw: Any) -> Optional[float]:
    """Wire confidence is a 0–100 score: r -> r/100 clamped to [0, 1]. Non-numeric -> None."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if value != value:  # NaN
        return None
    return max(0.0, min(1.0, value / 100.0))


class Reasoning(BaseModel):
    """Chain-of-thought block returned by the translation service."""
    model_config = ConfigDict(extra="ignore")

    understanding: str = ""
    tables: List[str] = Field(default_factory=list)
    joins: str = ""
    filters: str = ""
    sorting: str = ""
    issue: Optional[str] = None
    confidence: Optional[float] = None

    @field_validator("tables", mode="before")
    @classmethod
    def _coerce_tables(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return [str(t) for t in v]

    @field_validator("understanding", "joins", "filters", "sorting", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> str:
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)


class TranslationResult(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    reasoning: Optional[Reasoning] = None
    query: Optional[str] = Field(None, validation_alias=AliasChoices("sql", "query"))
    summary: str = ""
    success: bool = False
    error: Optional[str] = None
    # "TranslationParseError" when the payload itself could not be read
    error_kind: Optional[str] = None
    model: Optional[str] = None

    @field_validator("summary", mode="before")
    @classmethod
    def _summary_text(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @property
    def confidence(self) -> Optional[float]:
        return self.reasoning.confidence if self.reasoning else None


class ExecutionResult(BaseModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    execution_time_ms: int = 0
    column_types: Dict[str, str] = Field(default_factory=dict)
    unsafe_fields: List[str] = Field(default_factory=list)
    truncated: bool = False


class EnrichedResult(BaseModel):
    status: str = "success"
    summary: str = ""
    # masked copy for the audit record, never sent to the client
    audit_summary: str = Field(default="", exclude=True)
    query: str = ""
    rows: List[Any] = Field(default_factory=list)
    row_count: int = 0
    execution_time_ms: int = 0
    pii_detected: bool = False
    pii_types: List[str] = Field(default_factory=list)
    next_steps: int = 0
    confidence: float = 0.0
    reasoning: Optional[Reasoning] = None
    suggestions: List[str] = Field(default_factory=list)
    unsafe_fields: List[str] = Field(default_factory=list)
    cached: bool = False


class SemanticPattern(BaseModel):
    query_text: str
    generated_query: str
    store_id: str
    dialect: str
    success: bool = True
    execution_time_ms: int = 0
    row_count: int = 0
    confidence: Optional[float] = None
    actor_id: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    embedding: Optional[List[float]] = None


class PatternMatch(BaseModel):
    id: str
    score: float
    query_text: str
    generated_query: str
    store_id: str
    row_count: int = 0
    confidence: Optional[float] = None
