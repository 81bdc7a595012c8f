# =============================================
# File: app/services/errors.py
# Purpose: Error taxonomy for the query pipeline + user-facing messages
# =============================================
from __future__ import annotations

import os
from enum import Enum
from typing import List, Optional, Tuple, Union


class ErrorKind(str, Enum):
    UNAUTHORIZED = "Unauthorized"
    VALIDATION = "ValidationError"
    RATE_LIMITED = "RateLimited"
    TRANSLATION_TIMEOUT = "TranslationTimeout"
    TRANSLATION_SERVICE = "TranslationServiceError"
    TRANSLATION_PARSE = "TranslationParseError"
    EXECUTION_SYNTAX = "ExecutionSyntaxError"
    EXECUTION_PERMISSION = "ExecutionPermissionError"
    EXECUTION_TIMEOUT = "ExecutionTimeout"
    EXECUTION_CONNECTION = "ExecutionConnectionError"
    UNKNOWN = "UnknownInternalError"


class QueryPipelineError(Exception):
    """Base class: every pipeline failure carries exactly one ErrorKind."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str = "", *, kind: Optional[ErrorKind] = None):
        super().__init__(message or self.kind.value)
        if kind is not None:
            self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


class Unauthorized(QueryPipelineError):
    kind = ErrorKind.UNAUTHORIZED


class ValidationError(QueryPipelineError):
    kind = ErrorKind.VALIDATION


class RateLimited(QueryPipelineError):
    kind = ErrorKind.RATE_LIMITED


class TranslationTimeout(QueryPipelineError):
    kind = ErrorKind.TRANSLATION_TIMEOUT


class TranslationServiceError(QueryPipelineError):
    kind = ErrorKind.TRANSLATION_SERVICE


class TranslationParseError(QueryPipelineError):
    kind = ErrorKind.TRANSLATION_PARSE


class ExecutionSyntaxError(QueryPipelineError):
    kind = ErrorKind.EXECUTION_SYNTAX


class ExecutionPermissionError(QueryPipelineError):
    kind = ErrorKind.EXECUTION_PERMISSION


class ExecutionTimeout(QueryPipelineError):
    kind = ErrorKind.EXECUTION_TIMEOUT


class ExecutionConnectionError(QueryPipelineError):
    kind = ErrorKind.EXECUTION_CONNECTION


class UnknownInternalError(QueryPipelineError):
    kind = ErrorKind.UNKNOWN


# Ordered: first matching rule wins. A needle that is a tuple needs all of its parts.
_FRIENDLY: List[Tuple[Tuple[Union[str, Tuple[str, ...]], ...], str]] = [
    (
        (("column", "does not exist"), "no such column"),
        "I couldn't find that information in the database. "
        "Try rephrasing your question or asking about different data.",
    ),
    (
        ("syntax error", "invalid"),
        "I had trouble understanding your question. Could you try rephrasing it? "
        "For example: 'Show me customers in California' or 'List all products'",
    ),
    (
        ("timeout", "timed out"),
        "This query is taking too long. Try asking for a smaller dataset or be more specific.",
    ),
    (
        ("permission", "denied"),
        "You don't have permission to access this data. Contact your administrator.",
    ),
    (
        ("connection", "network"),
        "Connection issue. Please check your internet and try again.",
    ),
    (
        ("ai service", "llm"),
        "Our AI service is temporarily unavailable. Please try again in a moment.",
    ),
]

GENERIC_MESSAGE = "Something went wrong while processing your query. Please try again."


def is_production() -> bool:
    return os.getenv("APP_ENV", "development").strip().lower() in ("production", "prod")


def _hit(low: str, needle: Union[str, Tuple[str, ...]]) -> bool:
    if isinstance(needle, tuple):
        return all(part in low for part in needle)
    return needle in low


def friendly_message(message: str) -> str:
    """
    Map a technical error message to one plain-language sentence.
    Unmatched messages pass through raw outside production only.
    """
    low = (message or "").lower()
    for needles, text in _FRIENDLY:
        if any(_hit(low, n) for n in needles):
            return text
    if is_production() or not message:
        return GENERIC_MESSAGE
    return message
