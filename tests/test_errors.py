# =============================================
# File: tests/test_errors.py
# Purpose: Error taxonomy and user-facing message mapping
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import pytest

from app.services.errors import (
    GENERIC_MESSAGE,
    ErrorKind,
    ExecutionTimeout,
    QueryPipelineError,
    RateLimited,
    friendly_message,
)


@pytest.mark.parametrize(
    "raw, starts",
    [
        ('column "nope" does not exist', "I couldn't find that information"),
        ("no such column: nope", "I couldn't find that information"),
        ('syntax error at or near "FROM"', "I had trouble understanding your question"),
        ("canceling statement due to statement timeout", "This query is taking too long"),
        ("permission denied for table salaries", "You don't have permission"),
        ("could not open connection to server", "Connection issue"),
        ("AI service returned an unreadable response", "Our AI service is temporarily unavailable"),
    ],
)
def test_friendly_table(raw, starts, monkeypatch):
    monkeypatch.delenv("APP_ENV", raising=False)
    assert friendly_message(raw).startswith(starts)


def test_first_match_wins():
    # the missing-column rule is checked before "syntax error"
    assert friendly_message("syntax error: column does not exist").startswith("I couldn't find")


def test_missing_relation_is_not_reported_as_missing_information(monkeypatch):
    monkeypatch.delenv("APP_ENV", raising=False)
    assert friendly_message('relation "orders" does not exist') == 'relation "orders" does not exist'
    assert friendly_message("no such table: foo") == "no such table: foo"
    monkeypatch.setenv("APP_ENV", "production")
    assert friendly_message("no such table: foo") == GENERIC_MESSAGE


def test_unmatched_passes_through_outside_production(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")
    assert friendly_message("disk quota exceeded") == "disk quota exceeded"
    monkeypatch.setenv("APP_ENV", "production")
    assert friendly_message("disk quota exceeded") == GENERIC_MESSAGE
    assert friendly_message("") == GENERIC_MESSAGE


def test_every_error_carries_one_kind():
    assert ExecutionTimeout("slow").kind is ErrorKind.EXECUTION_TIMEOUT
    assert RateLimited().message == "RateLimited"
    e = QueryPipelineError("x", kind=ErrorKind.VALIDATION)
    assert e.kind is ErrorKind.VALIDATION
    assert QueryPipelineError("y").kind is ErrorKind.UNKNOWN
