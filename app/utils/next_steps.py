# =============================================
# File: app/utils/next_steps.py
# Purpose: Heuristic next-step annotations for login / support-ticket questions
# =============================================
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

MARKER = "[NEXT_STEPS]:"

_LOGIN_CUES = ("login", "log in", "sign in", "couldn't", "can't", "unable", "access")
_SUPPORT_CUES = ("ticket", "issue", "problem", "support")

# (name, resolution/description cues, subject cues, template); first match wins.
_RULES: List[Tuple[str, Tuple[str, ...], Tuple[str, ...], str]] = [
    (
        "session_timeout",
        ("session timeout", "timeout"),
        (),
        "The session timeout is configured correctly. User should try logging in again "
        "and ensure they complete the login process within the session timeout window.",
    ),
    (
        "suspended",
        ("suspended", "payment"),
        (),
        "Account is suspended due to payment issues. Contact the billing department to "
        "resolve payment and reactivate the account.",
    ),
    (
        "expired_password",
        ("expired password",),
        ("expired password",),
        "Password has expired. User needs to use the \"Forgot Password\" link on the login "
        "page to reset their password. If issues persist, IT support can manually reset "
        "the password via the admin console.",
    ),
    (
        "locked",
        ("locked",),
        ("locked",),
        "Account is locked due to multiple failed login attempts. Wait 30 minutes for "
        "automatic unlock, or IT support can manually unlock the account in the admin "
        "console under User Management > Unlock Account.",
    ),
    (
        "wrong_credentials",
        ("credentials", "wrong password"),
        (),
        "User entered incorrect credentials. Verify username/email and password. Use "
        "\"Forgot Password\" if needed. Check for CAPS LOCK being on.",
    ),
]

_OPEN_TICKET = (
    "This ticket is still open. Review the issue details and assign to the appropriate "
    "support team member. Follow up with the user within 24 hours."
)
_CATCH_ALL = (
    "Review this resolution to ensure the issue is fully addressed. If the problem "
    "recurs, create a new ticket with additional details."
)


def detect_intent(question: str) -> Optional[str]:
    q = (question or "").lower()
    if any(c in q for c in _LOGIN_CUES):
        return "login"
    if any(c in q for c in _SUPPORT_CUES):
        return "support"
    return None


def _field(row: Dict[str, Any], name: str) -> Tuple[Optional[str], str]:
    """Case-insensitive lookup -> (actual_key, string_value)."""
    for key, value in row.items():
        if isinstance(key, str) and key.lower() == name:
            return key, value if isinstance(value, str) else ("" if value is None else str(value))
    return None, ""


def recommend(row: Dict[str, Any]) -> Optional[str]:
    """Pick the recommended-action template for one row, or None."""
    _, resolution = _field(row, "resolution")
    _, description = _field(row, "description")
    _, subject = _field(row, "subject")
    _, status = _field(row, "status")

    free_text = f"{resolution} {description}".lower()
    subject_l = subject.lower()

    for _name, cues, subject_cues, template in _RULES:
        if any(c in free_text for c in cues) or any(c in subject_l for c in subject_cues):
            return template
    if status.strip().upper() in ("OPEN", "PENDING"):
        return _OPEN_TICKET
    if resolution.strip():
        return _CATCH_ALL
    return None


def annotate_rows(question: str, rows: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
    """
    Append a next-step template to each row when the question is a login/support one.
    Returns (rows, annotated_count). Rows are copied, never mutated.
    """
    if not rows or detect_intent(question) is None:
        return rows, 0

    out: List[Dict[str, Any]] = []
    annotated = 0
    for row in rows:
        if not isinstance(row, dict):
            out.append(row)
            continue
        template = recommend(row)
        enhanced = dict(row)
        if template:
            key, resolution = _field(row, "resolution")
            if key is not None and resolution.strip():
                enhanced[key] = f"{resolution} {MARKER} {template}"
            else:
                enhanced["next_steps"] = f"{MARKER} {template}"
            annotated += 1
        out.append(enhanced)
    return out, annotated
