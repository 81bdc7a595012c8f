# =============================================
# File: app/utils/pii.py
# Purpose: PII detection & masking for query results
# =============================================
from __future__ import annotations

import re
from typing import Any, List, Set, Tuple

# Order matters: SSN and card numbers are masked before the broader phone pattern.
# Digit runs longer than a phone/card number (stringified big integers) are left alone.
_SSN_RE = re.compile(r"\b\d{3}-\d{2}-\d{4}\b|\b\d{9}\b")
_CARD_RE = re.compile(r"(?<!\d)\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_RE = re.compile(r"(?<![\d+])(\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")

PII_CATEGORIES = ("ssn", "credit_card", "email", "phone")


def _digits(s: str) -> str:
    return re.sub(r"\D", "", s)


def mask_email(email: str) -> str:
    username, _, domain = email.partition("@")
    if len(username) <= 2:
        return f"{username[:1]}***@{domain}"
    return f"{username[:2]}***@{domain}"


def mask_phone(phone: str) -> str:
    digits = _digits(phone)
    if len(digits) >= 10:
        return f"***-***-{digits[-4:]}"
    return "***-****"


def mask_ssn(ssn: str) -> str:
    digits = _digits(ssn)
    if len(digits) == 9:
        return f"***-**-{digits[-4:]}"
    return "***-**-****"


def mask_card(card: str) -> str:
    digits = _digits(card)
    if len(digits) >= 13:
        return f"****-****-****-{digits[-4:]}"
    return "****-****-****-****"


_RULES: List[Tuple[str, "re.Pattern[str]", Any]] = [
    ("ssn", _SSN_RE, mask_ssn),
    ("credit_card", _CARD_RE, mask_card),
    ("email", _EMAIL_RE, mask_email),
    ("phone", _PHONE_RE, mask_phone),
]


def mask_pii(text: str) -> Tuple[str, List[str]]:
    """Return (masked_text, detected_categories) for one string."""
    if not text:
        return text, []
    masked = text
    detected: List[str] = []
    for category, pattern, masker in _RULES:
        masked, n = pattern.subn(lambda m: masker(m.group(0)), masked)
        if n:
            detected.append(category)
    return masked, detected


def mask_rows(data: Any, *, unmask: bool = False) -> Tuple[Any, List[str]]:
    """
    Walk rows (dicts / lists / scalars) and mask PII inside string values.
    With unmask=True values are returned untouched but categories are still reported.
    """
    found: Set[str] = set()

    def _walk(value: Any) -> Any:
        if isinstance(value, str):
            masked, cats = mask_pii(value)
            found.update(cats)
            return value if unmask else masked
        if isinstance(value, dict):
            return {k: _walk(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_walk(v) for v in value]
        return value

    out = _walk(data)
    return out, [c for c in PII_CATEGORIES if c in found]
