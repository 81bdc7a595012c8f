# =============================================
# File: app/utils/prompting.py
# Purpose: Build dialect/schema-aware, JSON-structured translation messages
# =============================================
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from app.services.dialects import Dialect
from app.services.models import ConversationContext, PatternMatch

# Import sanitizers to neutralize prompt-injection in user text
from .sanitize import sanitize_query_text, sanitize_user_text

MIN_EXAMPLE_SIMILARITY = 0.75
MAX_EXAMPLES = 3

SYS_PROMPT = (
    "You translate natural-language questions into database queries. "
    "Use ONLY the tables and columns listed in the schema. "
    "Output MUST be a single raw JSON object, with no markdown and no extra text."
)

RESPONSE_FORMAT = """Please respond in JSON format:
{
  "reasoning": {
    "understanding": "What the user is asking for",
    "tables": ["list", "of", "tables", "needed"],
    "joins": "Explanation of any JOINs required",
    "filters": "Filtering conditions to apply",
    "sorting": "How to sort the results",
    "confidence": 95
  },
  "sql": "YOUR_GENERATED_QUERY_HERE",
  "summary": "Brief description of what this query returns",
  "success": true
}

If the question cannot be answered from this schema:
{
  "reasoning": {
    "understanding": "What went wrong",
    "issue": "Description of the issue",
    "confidence": 0
  },
  "error": "Error message",
  "success": false
}

Respond with raw JSON only. Do not include code blocks, markdown, or any other formatting."""

REASONING_STEPS = """CHAIN-OF-THOUGHT REASONING INSTRUCTIONS:
Before generating the query, explain your reasoning process step by step:
1. What is the user trying to find?
2. Which tables and columns are needed?
3. What JOINs are required (if any)?
4. What filtering conditions should be applied?
5. How should the results be sorted and limited?
6. What is the confidence level in this approach (0-100)?"""


# ---------------- Query shape (limit + sort direction) ---------------- #

_SQL_LIMIT_RES = [
    re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE),
    re.compile(r"\bTOP\s*\(?\s*(\d+)", re.IGNORECASE),
    re.compile(r"\bFETCH\s+(?:FIRST|NEXT)\s+(\d+)\s+ROWS?", re.IGNORECASE),
]
_MONGO_LIMIT_RES = [
    re.compile(r"\.limit\(\s*(\d+)\s*\)"),
    re.compile(r"\$limit[\"']?\s*:\s*(\d+)"),
]
_ORDER_RE = re.compile(r"\bORDER\s+BY\b", re.IGNORECASE)
_MONGO_SORT_RE = re.compile(r"sort\(\s*\{[^}]*:\s*(-?1)\s*\}")


@dataclass(frozen=True)
class QueryShape:
    limit: Optional[int]
    direction: Optional[str]  # "ASC" | "DESC"

    @property
    def bounded(self) -> bool:
        return self.limit is not None and self.direction is not None


def _paren_depths(q: str) -> List[int]:
    """Parenthesis depth at each character, quoted text ignored."""
    depths: List[int] = []
    depth, quote = 0, None
    for ch in q:
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        depths.append(depth)
    return depths


def _outer(rx: "re.Pattern[str]", q: str, depths: List[int]) -> list:
    # subqueries and window functions (OVER (ORDER BY ...)) sit inside parentheses
    return [m for m in rx.finditer(q) if depths[m.start()] == 0]


def analyze_query_shape(query: str) -> QueryShape:
    q = query or ""
    depths = _paren_depths(q)
    limit: Optional[int] = None
    for rx in _SQL_LIMIT_RES:
        found = _outer(rx, q, depths)
        if found:
            limit = int(found[-1].group(1))
            break
    if limit is None:
        for rx in _MONGO_LIMIT_RES:
            m = rx.search(q)
            if m:
                limit = int(m.group(1))
                break

    direction: Optional[str] = None
    orders = _outer(_ORDER_RE, q, depths)
    if orders:
        # first key of the outermost ORDER BY decides; ascending by default
        end = orders[-1].end()
        while end < len(q) and not (q[end] == "," and depths[end] == 0):
            end += 1
        first_key = q[orders[-1].end():end]
        direction = "DESC" if re.search(r"\bDESC\b", first_key, re.IGNORECASE) else "ASC"
    elif not _ORDER_RE.search(q):
        ms = _MONGO_SORT_RE.search(q)
        if ms:
            direction = "DESC" if ms.group(1) == "-1" else "ASC"
    return QueryShape(limit=limit, direction=direction)


_OPPOSITES = [
    ("highest", "lowest"),
    ("top", "bottom"),
    ("most", "least"),
    ("maximum", "minimum"),
    ("max", "min"),
    ("largest", "smallest"),
    ("biggest", "smallest"),
    ("best", "worst"),
    ("newest", "oldest"),
    ("latest", "earliest"),
    ("first", "last"),
    ("greatest", "least"),
    ("richest", "poorest"),
    ("longest", "shortest"),
]
_FOLLOWUP_RE = re.compile(r"^\s*(and|what about|how about|now|then|also)\b", re.IGNORECASE)


def _opposite_map() -> Dict[str, set]:
    out: Dict[str, set] = {}
    for a, b in _OPPOSITES:
        out.setdefault(a, set()).add(b)
        out.setdefault(b, set()).add(a)
    return out


_OPPOSITE_OF = _opposite_map()
# "at least 3", "at last": quantity and time phrases, not superlatives
_AT_PHRASE_RE = re.compile(r"\bat\s+(least|most|first|last|best|worst)\b")


def _words(text: str) -> List[str]:
    return re.findall(r"[a-z0-9]+", _AT_PHRASE_RE.sub(" ", (text or "").lower()))


def _swapped(prev: List[str], cur: List[str]) -> bool:
    """Same wording with an extreme swapped for its opposite in place (numbers may differ)."""
    if len(prev) != len(cur):
        return False
    swaps = 0
    for p, c in zip(prev, cur):
        if p == c or (p.isdigit() and c.isdigit()):
            continue
        if c not in _OPPOSITE_OF.get(p, ()):
            return False
        swaps += 1
    return swaps > 0


def is_parallel_followup(previous_question: str, question: str) -> bool:
    """
    True when the new question mirrors the previous one with the opposite extreme
    ("highest" -> "lowest", "top 5" -> "bottom 5") or is a short elliptical turn
    ("and the lowest?", "what about the bottom one?").
    """
    prev, cur = _words(previous_question), _words(question)
    elliptical = bool(_FOLLOWUP_RE.match(question or ""))
    if _swapped(prev, cur):
        return True
    prev_set = set(prev)
    for word in cur:
        if _OPPOSITE_OF.get(word, set()) & prev_set and (elliptical or len(cur) <= 3):
            return True
    return elliptical and len(cur) <= 6


def _shape_rule(context: ConversationContext, question: str, dialect: Dialect) -> str:
    shape = analyze_query_shape(context.previous_sql)
    if not shape.bounded or not is_parallel_followup(context.previous_query, question):
        return ""
    inverted = "ASC" if shape.direction == "DESC" else "DESC"
    bound = dialect.limit_clause(shape.limit)
    return (
        "FOLLOW-UP SHAPE RULE (mandatory):\n"
        f"The previous query was bounded with {bound} and sorted {shape.direction}. "
        f"This question is a parallel follow-up, so you MUST keep exactly {bound} "
        f"and ONLY invert the sort direction to {inverted}. "
        "Keep the same columns, joins and filters."
    )


def _context_section(context: Optional[ConversationContext], question: str, dialect: Dialect) -> str:
    if context is None or not context.usable:
        return ""
    prev_q = sanitize_user_text(context.previous_query, max_chars=1000)
    prev_sql = sanitize_query_text(context.previous_sql)
    lines = [
        "IMPORTANT - CONVERSATIONAL CONTEXT:",
        "This is a follow-up question. The previous query was:",
        f'User asked: "{prev_q}"',
        f"You generated: {prev_sql}",
        "",
        "Pay attention to how the previous query was structured:",
        f"- If the previous query limited results (e.g. {dialect.limit_clause(1)}) and the current question asks for "
        "a similar thing (like \"the lowest\" after \"the highest\"), use the same limit",
        "- Follow-up questions like \"And the lowest?\" or \"What about the bottom one?\" mirror the previous structure",
        "- Maintain consistency in column selection and ordering",
    ]
    rule = _shape_rule(context, question, dialect)
    if rule:
        lines.extend(["", rule])
    return "\n".join(lines)


def _examples_section(similar: Optional[Sequence[PatternMatch]]) -> str:
    if not similar:
        return ""
    picked = [p for p in similar if p.score >= MIN_EXAMPLE_SIMILARITY]
    picked.sort(key=lambda p: -p.score)
    picked = picked[:MAX_EXAMPLES]
    if not picked:
        return ""
    blocks = []
    for idx, p in enumerate(picked, start=1):
        blocks.append(
            f"Example {idx} (Similarity: {p.score * 100:.1f}%):\n"
            f'  User Question: "{sanitize_user_text(p.query_text, max_chars=300)}"\n'
            f"  Generated Query: {sanitize_query_text(p.generated_query)}\n"
            f"  Result: Success ({p.row_count} rows returned)"
        )
    return (
        "LEARNED PATTERNS - Similar Successful Queries:\n"
        "These questions were answered successfully on this database before. "
        "Follow similar approaches when applicable.\n\n" + "\n\n".join(blocks)
    )


def build_translation_prompt(
    question: str,
    store_id: str,
    dialect: Dialect,
    schema: str,
    context: Optional[ConversationContext] = None,
    similar: Optional[Sequence[PatternMatch]] = None,
) -> str:
    q = sanitize_user_text(question)
    label = dialect.label
    sections = [
        f"You are a {dialect.expert}. Convert the following natural language question into a valid {label} query.",
        "IMPORTANT: You must provide CHAIN-OF-THOUGHT REASONING to explain your thinking process.",
        f"Database: {store_id}\nDatabase Type: {label}",
        "Available tables and schemas:\n" + (schema or "(schema not available)"),
        _context_section(context, question, dialect),
        _examples_section(similar),
        f'User Question: "{q}"',
        f"CRITICAL RULES FOR {label}:\n" + "\n".join(f"{i}. {r}" for i, r in enumerate(dialect.rules, start=1)),
        "EXAMPLE QUERIES:\n" + "\n".join(f"- {e}" for e in dialect.examples),
        REASONING_STEPS,
        RESPONSE_FORMAT,
    ]
    return "\n\n".join(s for s in sections if s)


def build_messages(
    question: str,
    store_id: str,
    dialect: Dialect,
    schema: str,
    context: Optional[ConversationContext] = None,
    similar: Optional[Sequence[PatternMatch]] = None,
) -> List[Dict[str, str]]:
    """
    Returns messages suitable for OpenAI Chat Completions API.
    The model must return a JSON object with reasoning + sql/summary/success or error/success.
    """
    return [
        {"role": "system", "content": SYS_PROMPT},
        {
            "role": "user",
            "content": build_translation_prompt(question, store_id, dialect, schema, context, similar),
        },
    ]
