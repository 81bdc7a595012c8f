# =============================================
# File: tests/test_cache.py
# Purpose: Query cache: normalization, TTL, bounded eviction, stats
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from app.utils.qcache import QueryCache, make_key


class Clock:
    def __init__(self, t=0.0):
        self.t = t

    def __call__(self):
        return self.t


def test_key_normalizes_case_and_whitespace():
    assert make_key("  Show TOP 5   customers ", "sales") == make_key("show top 5 customers", "sales")
    assert make_key("show", "sales") != make_key("show", "hr")


def test_hit_within_ttl_and_miss_after():
    clock = Clock()
    c = QueryCache(ttl_seconds=3600, max_entries=10, clock=clock)
    c.put("Show top 5 customers", "sales", "SELECT 1")
    clock.t = 3599
    assert c.get("show top 5 customers", "sales") == "SELECT 1"
    clock.t = 3601
    assert c.get("show top 5 customers", "sales") is None
    assert len(c) == 0


def test_overflow_keeps_capacity_and_most_recent():
    clock = Clock()
    c = QueryCache(ttl_seconds=3600, max_entries=10, clock=clock)
    for i in range(25):
        clock.t = float(i)
        c.put(f"q{i}", "sales", f"SELECT {i}")
        assert len(c) <= 10
    assert c.get("q24", "sales") == "SELECT 24"
    assert c.get("q0", "sales") is None


def test_oldest_fifth_evicted_on_overflow():
    clock = Clock()
    c = QueryCache(ttl_seconds=3600, max_entries=10, clock=clock)
    for i in range(11):
        clock.t = float(i)
        c.put(f"q{i}", "sales", f"SELECT {i}")
    # 11 entries -> drop max(1, int(11 * 0.2)) = 2 oldest
    assert len(c) == 9
    assert c.get("q0", "sales") is None
    assert c.get("q1", "sales") is None
    assert c.get("q2", "sales") == "SELECT 2"


def test_expired_entries_go_first():
    clock = Clock()
    c = QueryCache(ttl_seconds=10, max_entries=5, clock=clock)
    for i in range(5):
        c.put(f"old{i}", "sales", "SELECT old")
    clock.t = 20
    c.put("fresh", "sales", "SELECT fresh")
    assert len(c) == 1
    assert c.get("fresh", "sales") == "SELECT fresh"


def test_maintain_and_stats():
    clock = Clock()
    c = QueryCache(ttl_seconds=10, max_entries=100, clock=clock)
    c.put("a", "sales", "SELECT a")
    c.put("b", "sales", "SELECT b")
    c.get("a", "sales")
    c.get("zzz", "sales")
    clock.t = 11
    assert c.maintain() == 2
    s = c.stats()
    assert s["size"] == 0
    assert s["hits"] == 1 and s["misses"] == 1
    assert s["evictions"] == 2
    assert s["hit_rate"] == 0.5


def test_clear():
    c = QueryCache(ttl_seconds=10, max_entries=10)
    c.put("a", "sales", "SELECT a")
    c.clear()
    assert len(c) == 0


def test_env_configuration(monkeypatch):
    monkeypatch.setenv("QUERY_CACHE_TTL_SECONDS", "5")
    monkeypatch.setenv("QUERY_CACHE_MAX_ENTRIES", "7")
    c = QueryCache()
    assert c.ttl_seconds == 5
    assert c.max_entries == 7
