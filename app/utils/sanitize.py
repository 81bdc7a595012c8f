# =============================================
# File: app/utils/sanitize.py
# Purpose: Neutralize prompt-injection in text that ends up inside a translation prompt
# =============================================
from __future__ import annotations

import re
from typing import Iterable, List

INJECTION_CUES: List[str] = [
    "ignore previous instruction",
    "ignore the previous instruction",
    "ignore all previous instruction",
    "disregard previous instruction",
    "forget your instructions",
    "system prompt",
    "developer message",
    "you are chatgpt",
    "you are now",
    "do not follow the above",
    "reset the system",
    "jailbreak",
]

_WS = re.compile(r"\s+")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_CUE_RE = re.compile("|".join(re.escape(c) for c in INJECTION_CUES), re.IGNORECASE)


def collapse_ws(text: str) -> str:
    return _WS.sub(" ", text).strip() if text else ""


def _has_cue(text: str, cues: Iterable[str]) -> bool:
    low = text.lower()
    return any(c.lower() in low for c in cues)


def strip_injection_lines(text: str, cues: Iterable[str] = INJECTION_CUES) -> str:
    """Drop whole lines carrying an injection cue (multi-line inputs such as a previous query)."""
    if not text:
        return ""
    cues = list(cues)
    return "\n".join(ln for ln in text.splitlines() if not _has_cue(ln, cues))


def sanitize_user_text(text: str, max_chars: int = 1000) -> str:
    """
    Prepare a question for a quoted prompt line:
    sentences carrying a cue are dropped (unless that would drop everything),
    leftover cue phrases are cut inline, whitespace collapsed, double quotes
    turned into single ones, and the result truncated with an ellipsis.
    """
    if not text:
        return ""
    sentences = [s.strip() for s in _SENTENCE_END.split(text) if s.strip()]
    kept = [s for s in sentences if not _has_cue(s, INJECTION_CUES)]
    t = " ".join(kept) if kept else text
    t = collapse_ws(_CUE_RE.sub("", t)).replace('"', "'")
    if max_chars and len(t) > max_chars:
        t = t[:max_chars].rstrip() + "…"
    return t


def sanitize_query_text(query: str, max_chars: int = 1000) -> str:
    """A previously generated query going back into the prompt: one line, no cue lines, bounded."""
    return collapse_ws(strip_injection_lines(query))[:max_chars]
