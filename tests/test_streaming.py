# =============================================
# File: tests/test_streaming.py
# Purpose: /query SSE contract: status frames, one terminal frame, [DONE]; cache reuse; error frames
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))

import json

from fastapi.testclient import TestClient

from app.db.models import AuditStatus
from app.main import create_app
from app.services.errors import TranslationTimeout
from app.services.models import Identity, TranslationResult
from _fakes import FakePatterns, FakeTranslator, make_pipeline, match, parse_sse, translation

HEADERS = {"X-User-Id": "tester"}


def _client(tmp_path, **kw):
    pipeline = make_pipeline(tmp_path, **kw)
    return pipeline, TestClient(create_app(pipeline))


def _frames(resp):
    data = parse_sse(resp.text)
    assert data[-1] == "[DONE]"
    frames = [json.loads(d) for d in data[:-1]]
    terminal = [f for f in frames if f["status"] in ("completed", "error")]
    assert len(terminal) == 1
    assert frames[-1] is terminal[0]
    return frames


def test_success_stream_shape(tmp_path):
    pipeline, client = _client(tmp_path)
    r = client.post("/query", json={"query": "Show top 5 customers", "database_id": "sales"}, headers=HEADERS)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert "X-Request-ID" in r.headers

    frames = _frames(r)
    messages = [f["message"] for f in frames if f["status"] == "processing"]
    assert messages == [
        "Converting natural language to SQL...",
        "Analyzing query and generating response...",
        "Executing query...",
    ]
    result = frames[-1]["result"]
    assert frames[-1]["status"] == "completed"
    assert result["status"] == "success"
    assert result["row_count"] == 3
    assert {row["firstName"] for row in result["rows"]} == {"John", "Sarah", "Michael"}
    assert result["summary"].endswith("(Found 3 results)")
    assert result["cached"] is False

    rec = pipeline.audit.history("tester")[0]
    assert rec.status == AuditStatus.SUCCESS
    assert rec.row_count == 3


def test_repeat_question_uses_cache(tmp_path):
    translator = FakeTranslator(translation('SELECT "firstName" FROM sales_customers LIMIT 5'))
    pipeline, client = _client(tmp_path, translator=translator)
    body = {"query": "Show top 5 customers", "database_id": "sales"}

    first = _frames(client.post("/query", json=body, headers=HEADERS))
    second = _frames(client.post("/query", json={**body, "query": "  show TOP 5   customers "}, headers=HEADERS))

    assert translator.calls == 1
    assert second[0]["message"] == "Using cached query translation..."
    assert second[-1]["result"]["query"] == first[-1]["result"]["query"]
    assert second[-1]["result"]["cached"] is True
    assert second[-1]["result"]["summary"].startswith("Query translated successfully (cached)")


def test_success_is_remembered_as_pattern(tmp_path):
    patterns = FakePatterns()
    pipeline, client = _client(tmp_path, patterns=patterns)
    client.post("/query", json={"query": "Show top 5 customers", "database_id": "sales"}, headers=HEADERS)
    assert pipeline.background.drain(timeout=2.0)
    assert len(patterns.upserts) == 1
    p = patterns.upserts[0]
    assert p.query_text == "Show top 5 customers"
    assert p.store_id == "sales" and p.dialect == "sqlite"


def test_similar_patterns_feed_the_prompt(tmp_path):
    translator = FakeTranslator(translation('SELECT "firstName" FROM sales_customers LIMIT 5'))
    patterns = FakePatterns([match("top customers by spend", 'SELECT "firstName" FROM sales_customers', 0.9)])
    _, client = _client(tmp_path, translator=translator, patterns=patterns)
    client.post("/query", json={"query": "Show top 5 customers", "database_id": "sales"}, headers=HEADERS)
    prompt = translator.messages[0][-1]["content"]
    assert "LEARNED PATTERNS" in prompt
    assert "top customers by spend" in prompt


def test_unreadable_translation_gives_error_frame(tmp_path):
    bad = TranslationResult(
        success=False,
        error="AI service returned an unreadable response",
        error_kind="TranslationParseError",
        model="fake-model",
    )
    pipeline, client = _client(tmp_path, translator=FakeTranslator(bad))
    frames = _frames(client.post("/query", json={"query": "Show customers", "database_id": "sales"}, headers=HEADERS))
    result = frames[-1]["result"]
    assert frames[-1]["status"] == "error"
    assert result["error_kind"] == "TranslationParseError"
    assert result["error"] == "Our AI service is temporarily unavailable. Please try again in a moment."
    assert result["summary"] == "Could not complete your request"
    assert result["query"] is None

    assert pipeline.background.drain(timeout=2.0)
    records = pipeline.audit.history("tester")
    assert len(records) == 1
    assert records[0].status == AuditStatus.ERROR
    assert records[0].error_kind == "TranslationParseError"


def test_execution_error_frame_keeps_generated_query(tmp_path, monkeypatch):
    monkeypatch.delenv("APP_ENV", raising=False)
    translator = FakeTranslator(translation("SELECT nope FROM sales_customers"))
    pipeline, client = _client(tmp_path, translator=translator)
    frames = _frames(client.post("/query", json={"query": "Show nope", "database_id": "sales"}, headers=HEADERS))
    result = frames[-1]["result"]
    assert result["error_kind"] == "ExecutionSyntaxError"
    assert result["query"] == "SELECT nope FROM sales_customers"
    assert result["error"].startswith("I couldn't find that information")
    assert "no such column" in result["technical_error"]

    assert pipeline.background.drain(timeout=2.0)
    rec = pipeline.audit.history("tester")[0]
    assert rec.status == AuditStatus.ERROR
    assert rec.generated_query == "SELECT nope FROM sales_customers"


def test_production_hides_technical_error(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    _, client = _client(tmp_path, translator=FakeTranslator(TranslationTimeout("translation exceeded deadline")))
    frames = _frames(client.post("/query", json={"query": "Show customers", "database_id": "sales"}, headers=HEADERS))
    result = frames[-1]["result"]
    assert result["error_kind"] == "TranslationTimeout"
    assert "technical_error" not in result


def test_failed_translation_is_not_cached(tmp_path):
    translator = FakeTranslator(
        TranslationResult(success=False, error="AI service could not translate the question"),
        translation('SELECT "firstName" FROM sales_customers LIMIT 5'),
    )
    pipeline, client = _client(tmp_path, translator=translator)
    body = {"query": "Show top 5 customers", "database_id": "sales"}
    assert _frames(client.post("/query", json=body, headers=HEADERS))[-1]["status"] == "error"
    assert _frames(client.post("/query", json=body, headers=HEADERS))[-1]["status"] == "completed"
    assert translator.calls == 2


def test_alternatives_offered_on_failure(tmp_path):
    patterns = FakePatterns([match("top customers by spend", 'SELECT "firstName" FROM sales_customers', 0.85)])
    translator = FakeTranslator(translation("SELECT nope FROM sales_customers"))
    _, client = _client(tmp_path, translator=translator, patterns=patterns)
    frames = _frames(client.post("/query", json={"query": "best customers", "database_id": "sales"}, headers=HEADERS))
    assert frames[-1]["result"]["alternatives"] == ["top customers by spend"]


# ---------------- rejections before streaming ---------------- #

def test_missing_identity_is_401(tmp_path):
    pipeline, client = _client(tmp_path)
    r = client.post("/query", json={"query": "Show customers", "database_id": "sales"})
    assert r.status_code == 401
    assert pipeline.translator.calls == 0


def test_unknown_database_is_400_without_audit(tmp_path):
    pipeline, client = _client(tmp_path)
    r = client.post("/query", json={"query": "Show customers", "database_id": "nowhere"}, headers=HEADERS)
    assert r.status_code == 400
    assert "nowhere" in r.json()["detail"]
    assert pipeline.audit.history("tester") == []


def test_invalid_payloads_are_422(tmp_path):
    _, client = _client(tmp_path)
    assert client.post("/query", json={"query": "   ", "database_id": "sales"}, headers=HEADERS).status_code == 422
    assert client.post("/query", json={"query": "x" * 1001, "database_id": "sales"}, headers=HEADERS).status_code == 422
    assert client.post("/query", json={"query": "hi"}, headers=HEADERS).status_code == 422
    too_long = {"previous_query": "a" * 1500, "previous_sql": "b" * 600}
    r = client.post(
        "/query", json={"query": "and the lowest?", "database_id": "sales", "context": too_long}, headers=HEADERS
    )
    assert r.status_code == 422


def test_pattern_write_failure_does_not_affect_response(tmp_path):
    pipeline, client = _client(tmp_path, patterns=FakePatterns(fail=True))
    frames = _frames(client.post("/query", json={"query": "Show top 5 customers", "database_id": "sales"}, headers=HEADERS))
    assert frames[-1]["status"] == "completed"
    assert pipeline.background.drain(timeout=2.0)
    assert pipeline.background.failed == 1


# ---------------- result serialization and audit ---------------- #

def test_binary_column_still_ends_with_completed_frame(tmp_path):
    translator = FakeTranslator(translation("SELECT X'FF00' AS blob_col"))
    pipeline, client = _client(tmp_path, translator=translator)
    frames = _frames(client.post("/query", json={"query": "Show the blob", "database_id": "sales"}, headers=HEADERS))
    assert frames[-1]["status"] == "completed"
    assert frames[-1]["result"]["rows"] == [{"blob_col": "/wA="}]
    assert pipeline.audit.history("tester")[0].status == AuditStatus.SUCCESS


def test_audit_summary_masked_for_unmasking_caller(tmp_path):
    translator = FakeTranslator(
        translation("SELECT email FROM sales_customers WHERE id = 1", summary="Email of john@example.com")
    )
    pipeline, client = _client(tmp_path, translator=translator)
    headers = {**HEADERS, "X-User-Permissions": "pii:unmask"}
    frames = _frames(client.post("/query", json={"query": "Email of John", "database_id": "sales"}, headers=headers))
    result = frames[-1]["result"]
    assert result["rows"] == [{"email": "john@example.com"}]
    assert "john@example.com" in result["summary"]
    assert "audit_summary" not in result

    rec = pipeline.audit.history("tester")[0]
    assert rec.status == AuditStatus.SUCCESS
    assert "john@example.com" not in rec.results_summary
    assert rec.results_summary.endswith("(Found 1 result)")


# ---------------- client disconnect ---------------- #

def test_disconnect_mid_stream_closes_audit_record(tmp_path):
    pipeline = make_pipeline(tmp_path)
    ctx = pipeline.admit(Identity(actor_id="tester"), "Show top 5 customers", "sales")
    frames = pipeline.stream(ctx)
    assert next(frames) == {"status": "processing", "message": "Converting natural language to SQL..."}
    frames.close()

    assert ctx.state.value == "FAILED"
    assert pipeline.translator.calls == 0
    assert pipeline.background.drain(timeout=2.0)
    rec = pipeline.audit.get(ctx.audit_id)
    assert rec.status == AuditStatus.ERROR
    assert rec.error_kind == "UnknownInternalError"
    assert "disconnected" in rec.error_message


def test_close_after_terminal_frame_keeps_success(tmp_path):
    pipeline = make_pipeline(tmp_path)
    ctx = pipeline.admit(Identity(actor_id="tester"), "Show top 5 customers", "sales")
    frames = pipeline.stream(ctx)
    for frame in frames:
        if frame["status"] == "completed":
            break
    frames.close()

    assert pipeline.background.drain(timeout=2.0)
    assert pipeline.audit.get(ctx.audit_id).status == AuditStatus.SUCCESS
