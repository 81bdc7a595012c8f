# =============================================
# File: app/services/enrichment.py
# Purpose: Post-execution enrichment chain (numeric safety -> PII -> next steps -> confidence)
# =============================================
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from app.utils.next_steps import annotate_rows
from app.utils.numeric import make_json_safe
from app.utils.pii import PII_CATEGORIES, mask_pii, mask_rows

from .models import EnrichedResult, ExecutionResult, Identity, TranslationResult

LOW_CONFIDENCE = 0.5


def result_summary(summary: str, row_count: int) -> str:
    noun = "result" if row_count == 1 else "results"
    if summary:
        return f"{summary} (Found {row_count} {noun})"
    return f"Query executed successfully. Found {row_count} {noun}."


def estimate_confidence(execution: ExecutionResult) -> float:
    """Fallback when the model gave no confidence: rows returned is the only signal we have."""
    score = 0.8 if execution.row_count > 0 else 0.5
    if execution.truncated:
        score -= 0.1
    return max(0.0, min(1.0, score))


@dataclass
class EnrichmentDraft:
    question: str
    query: str
    summary: str
    rows: List[Any]
    execution: ExecutionResult
    translation: TranslationResult
    identity: Identity
    pii_types: List[str] = field(default_factory=list)
    next_steps: int = 0
    confidence: float = 0.0
    suggestions: List[str] = field(default_factory=list)
    # always masked; this is what reaches the audit trail
    audit_summary: str = ""


Stage = Tuple[str, Callable[[EnrichmentDraft], None]]


def numeric_stage(d: EnrichmentDraft) -> None:
    d.rows = make_json_safe(d.rows)


def pii_stage(d: EnrichmentDraft) -> None:
    unmask = d.identity.can_unmask
    rows, row_types = mask_rows(d.rows, unmask=unmask)
    masked_summary, summary_types = mask_pii(d.summary)
    found = set(row_types) | set(summary_types)
    d.rows = rows
    d.audit_summary = masked_summary
    if not unmask:
        d.summary = masked_summary
    d.pii_types = [c for c in PII_CATEGORIES if c in found]


def next_steps_stage(d: EnrichmentDraft) -> None:
    d.rows, d.next_steps = annotate_rows(d.question, d.rows)


def confidence_stage(d: EnrichmentDraft) -> None:
    c = d.translation.confidence
    d.confidence = c if c is not None else estimate_confidence(d.execution)


def suggestions_stage(d: EnrichmentDraft) -> None:
    out: List[str] = []
    q = (d.query or "").lower()
    if d.execution.row_count == 0:
        out.append("No rows matched. Try broadening your filters or checking spelling of names and values.")
    if d.execution.truncated:
        out.append(
            f"Only the first {d.execution.row_count} rows are shown. Add filters or ask for a smaller set."
        )
    if "select *" in q:
        out.append("Consider asking for specific columns instead of every column.")
    if d.confidence < LOW_CONFIDENCE:
        out.append("The translation confidence is low. Rephrasing the question more specifically may help.")
    d.suggestions = out


DEFAULT_STAGES: List[Stage] = [
    ("numeric", numeric_stage),
    ("pii", pii_stage),
    ("next_steps", next_steps_stage),
    ("confidence", confidence_stage),
    ("suggestions", suggestions_stage),
]


class EnrichmentPipeline:
    """
    Runs each stage in order; a stage that raises leaves the draft as it was
    (pass-through) and the chain continues.
    """

    def __init__(self, stages: Optional[List[Stage]] = None):
        self.stages = list(stages) if stages is not None else list(DEFAULT_STAGES)

    def run(
        self,
        question: str,
        translation: TranslationResult,
        execution: ExecutionResult,
        identity: Identity,
        cached: bool = False,
    ) -> EnrichedResult:
        base = "Query translated successfully (cached)" if cached else translation.summary
        d = EnrichmentDraft(
            question=question,
            query=translation.query or "",
            summary=result_summary(base, execution.row_count),
            rows=list(execution.rows),
            execution=execution,
            translation=translation,
            identity=identity,
        )
        failed: Dict[str, str] = {}
        for name, stage in self.stages:
            snapshot = (d.rows, d.summary, d.audit_summary, d.pii_types,
                        d.next_steps, d.confidence, d.suggestions)
            try:
                stage(d)
            except Exception as e:
                (d.rows, d.summary, d.audit_summary, d.pii_types,
                 d.next_steps, d.confidence, d.suggestions) = snapshot
                failed[name] = str(e)
                logger.warning("enrichment stage '{}' failed, passing through: {}", name, e)

        return EnrichedResult(
            status="success",
            summary=d.summary,
            audit_summary=d.audit_summary or mask_pii(d.summary)[0],
            query=d.query,
            rows=d.rows,
            row_count=execution.row_count,
            execution_time_ms=execution.execution_time_ms,
            pii_detected=bool(d.pii_types),
            pii_types=d.pii_types,
            next_steps=d.next_steps,
            confidence=d.confidence,
            reasoning=translation.reasoning,
            suggestions=d.suggestions,
            unsafe_fields=list(execution.unsafe_fields),
            cached=cached,
        )
