# =============================================
# File: tests/test_routers.py
# Purpose: History, pattern search, cache admin and health endpoints
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))

from fastapi.testclient import TestClient

from app.main import create_app
from _fakes import FakePatterns, FakeTranslator, make_pipeline, match, translation

HEADERS = {"X-User-Id": "tester"}


def test_health(tmp_path):
    client = TestClient(create_app(make_pipeline(tmp_path)))
    assert client.get("/health").json() == {"status": "ok"}


def test_history_lists_own_records(tmp_path):
    translator = FakeTranslator(translation('SELECT "firstName" FROM sales_customers LIMIT 5'))
    pipeline = make_pipeline(tmp_path, translator=translator)
    client = TestClient(create_app(pipeline))
    client.post("/query", json={"query": "Show top 5 customers", "database_id": "sales"}, headers=HEADERS)
    client.post("/query", json={"query": "Open tickets", "database_id": "customer_support"}, headers=HEADERS)
    client.post("/query", json={"query": "Someone else", "database_id": "sales"}, headers={"X-User-Id": "other"})

    body = client.get("/history", headers=HEADERS).json()
    assert body["count"] == 2
    assert [i["query_text"] for i in body["items"]] == ["Open tickets", "Show top 5 customers"]
    assert all(i["status"] == "SUCCESS" for i in body["items"])

    sales = client.get("/history", params={"database": "sales"}, headers=HEADERS).json()
    assert sales["count"] == 1

    assert client.get("/history").status_code == 401
    assert client.get("/history", params={"limit": 0}, headers=HEADERS).status_code == 422


def test_pattern_search(tmp_path):
    patterns = FakePatterns([
        match("top customers by spend", "SELECT 1", 0.9),
        match("open tickets", "SELECT 2", 0.75, store_id="customer_support"),
    ])
    client = TestClient(create_app(make_pipeline(tmp_path, patterns=patterns)))

    r = client.post("/patterns/search", json={"query": "top customers", "database_id": "sales"}, headers=HEADERS)
    assert r.status_code == 200
    results = r.json()["results"]
    assert [m["query_text"] for m in results] == ["top customers by spend"]
    assert results[0]["score"] == 0.9

    r = client.post(
        "/patterns/search",
        json={"query": "top cust", "database_id": "sales", "mode": "suggestions"},
        headers=HEADERS,
    )
    assert r.json() == {"mode": "suggestions", "results": ["top customers by spend"]}

    r = client.post("/patterns/search", json={"query": "x", "database_id": "nowhere"}, headers=HEADERS)
    assert r.status_code == 400
    assert client.get("/patterns/stats").json()["available"] is True


def test_cache_stats_and_clear(tmp_path):
    pipeline = make_pipeline(tmp_path)
    client = TestClient(create_app(pipeline))
    client.post("/query", json={"query": "Show top 5 customers", "database_id": "sales"}, headers=HEADERS)

    assert client.get("/cache/stats").json()["size"] == 1
    assert client.post("/cache", json={"action": "maintenance"}, headers=HEADERS).json()["evicted"] == 0
    assert client.post("/cache", json={"action": "clear"}).status_code == 401
    cleared = client.post("/cache", json={"action": "clear"}, headers=HEADERS).json()
    assert cleared["stats"]["size"] == 0
    assert client.post("/cache", json={"action": "explode"}, headers=HEADERS).status_code == 422
