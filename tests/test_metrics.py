# =============================================
# File: tests/test_metrics.py
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))

from fastapi.testclient import TestClient

from app.main import create_app
from app.utils.metrics import reset as metrics_reset
from app.utils.ratelimit import RateLimiter
from _fakes import FakeTranslator, make_pipeline, translation

HEADERS = {"X-User-Id": "u1"}


def _mount_client(tmp_path, **kw):
    metrics_reset()
    return TestClient(create_app(make_pipeline(tmp_path, **kw)))


def test_metrics_counts_and_models(tmp_path):
    client = _mount_client(tmp_path)
    body = {"query": "Show top 5 customers", "database_id": "sales"}
    for _ in range(2):
        assert client.post("/query", json=body, headers=HEADERS).status_code == 200

    m = client.get("/metrics").json()
    assert m["counters"]["requests_total"] == 2
    assert m["counters"]["translations_total"] == 1
    assert m["counters"]["cache_hits_total"] == 1
    assert m["counters"]["cache_misses_total"] == 1
    assert m["model_usage"] == {"fake-model": 1, "cache": 1}
    # histogram consistency: sum of buckets equals requests_total
    assert sum(m["latency_ms"]["counts"]) == m["counters"]["requests_total"]
    assert m["cache"]["size"] == 1
    assert "POST /query" in m["performance"]["endpoints"]


def test_failures_counted_by_kind(tmp_path):
    client = _mount_client(tmp_path, translator=FakeTranslator(translation("SELECT nope FROM sales_customers")))
    client.post("/query", json={"query": "Show nope", "database_id": "sales"}, headers=HEADERS)
    m = client.get("/metrics").json()
    assert m["counters"]["failures_total"] == 1
    assert m["error_kinds"] == {"ExecutionSyntaxError": 1}


def test_rate_limit_is_counted(tmp_path):
    client = _mount_client(tmp_path, limiter=RateLimiter(max_requests=1, window_seconds=60))
    client.post("/query", json={"query": "Ping?", "database_id": "sales"}, headers=HEADERS)
    client.post("/query", json={"query": "Ping again?", "database_id": "sales"}, headers=HEADERS)
    m = client.get("/metrics").json()
    assert m["counters"]["rate_limit_hits_total"] == 1
    # the rejected call never reached the pipeline
    assert m["counters"]["requests_total"] == 1
