# =============================================
# File: tests/test_rate_limit.py
# Purpose: Sliding-window limiter semantics + 429 on /query
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
sys.path.append(os.path.dirname(__file__))

from fastapi.testclient import TestClient

from app.utils.ratelimit import RateLimiter


class Clock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def test_eleventh_request_blocked_then_allowed_after_window():
    clock = Clock()
    rl = RateLimiter(max_requests=10, window_seconds=60, clock=clock)
    for i in range(10):
        d = rl.check("alice")
        assert not d.blocked
        assert d.remaining == 9 - i
        clock.t += 1

    d = rl.check("alice")
    assert d.blocked
    assert d.remaining == 0
    assert d.reset_time > clock.t
    assert d.retry_after(now=clock.t) > 0

    clock.t = 1000.0 + 60
    assert not rl.check("alice").blocked


def test_blocked_calls_are_not_counted():
    clock = Clock()
    rl = RateLimiter(max_requests=1, window_seconds=10, clock=clock)
    assert not rl.check("u").blocked
    for _ in range(5):
        clock.t += 1
        assert rl.check("u").blocked
    # window is measured from the one admitted call, not the rejected ones
    clock.t = 1000.0 + 10
    assert not rl.check("u").blocked


def test_identities_are_independent():
    rl = RateLimiter(max_requests=1, window_seconds=60, clock=Clock())
    assert not rl.check("a").blocked
    assert not rl.check("b").blocked
    assert rl.check("a").blocked


def test_env_limits_read_at_construction(monkeypatch):
    monkeypatch.setenv("RL_MAX_REQS", "3")
    monkeypatch.setenv("RL_WINDOW_SECONDS", "5")
    rl = RateLimiter()
    assert rl.max_requests == 3
    assert rl.window_seconds == 5


def test_reset_clears_state():
    rl = RateLimiter(max_requests=1, window_seconds=60, clock=Clock())
    rl.check("x")
    assert rl.check("x").blocked
    rl.reset()
    assert not rl.check("x").blocked


def test_zero_limit_blocks_without_raising():
    clock = Clock()
    rl = RateLimiter(max_requests=0, window_seconds=30, clock=clock)
    d = rl.check("a")
    assert d.blocked
    assert d.remaining == 0
    assert d.reset_time == clock.t + 30
    assert d.retry_after(now=clock.t) == 30


def test_idle_identities_are_swept_during_checks():
    clock = Clock()
    rl = RateLimiter(max_requests=5, window_seconds=10, clock=clock, prune_every=4)
    for key in ("a", "b", "c"):
        rl.check(key)
    assert rl.tracked() == 3

    clock.t += 11
    rl.check("d")  # fourth check sweeps a, b and c
    assert rl.tracked() == 1


def test_prune_keeps_active_identities():
    clock = Clock()
    rl = RateLimiter(max_requests=5, window_seconds=10, clock=clock)
    rl.check("old")
    clock.t += 8
    rl.check("new")
    clock.t += 3
    assert rl.prune() == 1
    assert rl.tracked() == 1
    assert rl.check("new").remaining == 3


def test_query_endpoint_returns_429_with_headers(tmp_path):
    from _fakes import make_pipeline
    from app.main import create_app

    pipeline = make_pipeline(tmp_path, limiter=RateLimiter(max_requests=1, window_seconds=60))
    client = TestClient(create_app(pipeline))
    headers = {"X-User-Id": "tester"}

    r1 = client.post("/query", json={"query": "Show top 5 customers", "database_id": "sales"}, headers=headers)
    assert r1.status_code == 200

    r2 = client.post("/query", json={"query": "Show top 5 customers", "database_id": "sales"}, headers=headers)
    assert r2.status_code == 429
    assert int(r2.headers["Retry-After"]) > 0
    assert r2.headers["X-RateLimit-Limit"] == "1"
    assert r2.headers["X-RateLimit-Remaining"] == "0"
    assert "X-RateLimit-Reset" in r2.headers
    assert r2.json()["error_kind"] == "RateLimited"

    # rejected request leaves no audit record
    assert len(pipeline.audit.history("tester")) == 1
