# =============================================
# File: app/services/insights.py
# Purpose: Plain-language explanation of a query and a natural-language answer over its rows
# =============================================
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from app.utils.pii import mask_rows
from app.utils.sanitize import sanitize_query_text, sanitize_user_text

from .audit import EXPLAIN_ACTION, AuditRecorder
from .catalog import StoreRegistry
from .errors import TranslationParseError, ValidationError
from .generation import TranslationClient
from .models import Identity

EXPLAIN_MAX_TOKENS = 1500
ANSWER_MAX_TOKENS = 500
ANSWER_TEMPERATURE = 0.7

# Up to this many rows go to the model verbatim; above it, a sample plus column statistics.
FULL_ROWS = 10
SAMPLE_ROWS = 5

NO_DATA = "No data returned"
NO_ANSWER = "Unable to generate answer"

ANSWER_SYSTEM = "You are a helpful data analyst who explains query results in clear, natural language."


class QueryExplanation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    explanation: str = ""
    technical_details: str = ""
    tables_accessed: List[str] = Field(default_factory=list)
    performance_notes: str = ""
    security_notes: str = ""

    @field_validator("tables_accessed", mode="before")
    @classmethod
    def _coerce_tables(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return [str(t) for t in v]

    @field_validator("explanation", "technical_details", "performance_notes", "security_notes", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> str:
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)


def parse_explanation(text: str) -> QueryExplanation:
    raw = (text or "").strip()
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end <= start:
        raise TranslationParseError("AI service returned an unreadable explanation")
    try:
        data = json.loads(raw[start:end + 1])
        result = QueryExplanation.model_validate(data)
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise TranslationParseError(f"AI service returned an unreadable explanation: {e}") from e
    if not result.explanation.strip():
        raise TranslationParseError("AI service returned an empty explanation")
    return result


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def summarize_rows(rows: List[Any]) -> str:
    """Small results verbatim; larger ones as a sample plus min/max/avg per numeric column."""
    if not rows:
        return NO_DATA
    if len(rows) <= FULL_ROWS:
        return json.dumps(rows, indent=2, ensure_ascii=False, default=str)

    first = rows[0] if isinstance(rows[0], dict) else {}
    columns = list(first.keys())
    statistics: Dict[str, Dict[str, float]] = {}
    for c in columns:
        values = [r.get(c) for r in rows if isinstance(r, dict)]
        numbers = [v for v in values if _is_number(v)]
        if numbers:
            statistics[c] = {
                "min": min(numbers),
                "max": max(numbers),
                "avg": sum(numbers) / len(numbers),
            }
    return json.dumps(
        {
            "totalRows": len(rows),
            "columns": columns,
            "sampleRows": rows[:SAMPLE_ROWS],
            "statistics": statistics,
        },
        indent=2,
        ensure_ascii=False,
        default=str,
    )


def build_explain_messages(query: str, store_id: str, question: str = "") -> List[Dict[str, str]]:
    prompt = f"""You are a helpful database expert. Explain the following query in simple terms that a non-technical person can understand.

Database: {store_id}
Natural Language Query: "{sanitize_user_text(question)}"
Query: {sanitize_query_text(query, max_chars=4000)}

Provide a detailed explanation covering:
1. What data is being retrieved
2. What tables are being accessed
3. Any filters or conditions applied
4. How the data is being sorted or grouped
5. Expected performance considerations

Respond in JSON format:
{{
  "explanation": "Simple, easy-to-understand explanation here",
  "technical_details": "More technical details for power users",
  "tables_accessed": ["table1", "table2"],
  "performance_notes": "Performance considerations",
  "security_notes": "Any security considerations"
}}

Respond with raw JSON only."""
    return [{"role": "user", "content": prompt}]


def build_answer_messages(question: str, data_summary: str, query: Optional[str] = None) -> List[Dict[str, str]]:
    used = f"Query Used:\n{sanitize_query_text(query, max_chars=4000)}\n" if query else ""
    prompt = f"""You are a friendly data analyst helping non-technical business users understand their query results in simple, everyday language.

User's Question: "{sanitize_user_text(question)}"

{used}
Data Summary:
{data_summary}

IMPORTANT INSTRUCTIONS:
1. Start with a direct, clear answer to their question, no technical jargon
2. Use friendly, conversational language like you're explaining to a colleague
3. Include specific numbers, names, and values from the data
4. For lists, mention the top 3-5 items with their key details
5. For counts, state the exact number clearly
6. If the data shows patterns or trends, point them out
7. Keep it concise (under 150 words) but informative
8. DON'T mention SQL, databases, or technical terms
9. DO use phrases like "You have...", "There are...", "Your top customers are..."

Answer:"""
    return [
        {"role": "system", "content": ANSWER_SYSTEM},
        {"role": "user", "content": prompt},
    ]


class QueryInsights:
    """Explanations and answers share the translation client (deadline, error mapping) and the audit trail."""

    def __init__(self, translator: TranslationClient, audit: AuditRecorder, registry: StoreRegistry):
        self.translator = translator
        self.audit = audit
        self.registry = registry

    def explain(self, identity: Identity, store_id: str, query: str, question: str = "") -> QueryExplanation:
        store = self.registry.get((store_id or "").strip().lower())
        if store is None:
            raise ValidationError(f"Unknown database '{store_id}'")
        self.audit.record_action(
            identity.actor_id,
            EXPLAIN_ACTION,
            store.id,
            details={"query": query, "question": question},
        )
        text = self.translator.complete(
            build_explain_messages(query, store.id, question),
            max_tokens=EXPLAIN_MAX_TOKENS,
            json_mode=True,
        )
        return parse_explanation(text)

    def answer(self, identity: Identity, question: str, rows: List[Any], query: Optional[str] = None) -> str:
        # rows come back from the client; mask again unless the caller may see raw values
        masked, found = mask_rows(list(rows or []), unmask=identity.can_unmask)
        if found and not identity.can_unmask:
            logger.debug("masked {} before answer generation", ",".join(found))
        text = self.translator.complete(
            build_answer_messages(question, summarize_rows(masked), query),
            max_tokens=ANSWER_MAX_TOKENS,
            temperature=ANSWER_TEMPERATURE,
        )
        return text or NO_ANSWER
