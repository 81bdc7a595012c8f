# =============================================
# File: app/utils/metrics.py
# Purpose: In-process pipeline counters, latency histogram and endpoint timings for /metrics
# =============================================
from __future__ import annotations

import bisect
import threading
import time
from collections import Counter, deque
from typing import Any, Deque, Dict, List, Optional

COUNTERS = (
    "requests_total",
    "rate_limit_hits_total",
    "cache_hits_total",
    "cache_misses_total",
    "translations_total",
    "failures_total",
)

# Upper bounds in ms; translation alone may take up to LLM_TIMEOUT_SECONDS
LATENCY_BUCKETS_MS: List[int] = [100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000]
MAX_ENDPOINT_SAMPLES = 1000


class _Histogram:
    def __init__(self, bounds: List[int]):
        self.bounds = list(bounds)
        self.counts = [0] * (len(bounds) + 1)  # last slot is +Inf

    def observe(self, value: float) -> None:
        self.counts[bisect.bisect_left(self.bounds, value)] += 1

    def clear(self) -> None:
        self.counts = [0] * (len(self.bounds) + 1)


class _Registry:
    def __init__(self):
        self.lock = threading.Lock()
        self.counters: Counter = Counter({name: 0 for name in COUNTERS})
        self.models: Counter = Counter()
        self.error_kinds: Counter = Counter()
        self.latency = _Histogram(LATENCY_BUCKETS_MS)
        self.endpoint_samples: Dict[str, Deque[float]] = {}
        self.endpoint_counts: Counter = Counter()

    def clear(self) -> None:
        self.counters = Counter({name: 0 for name in COUNTERS})
        self.models.clear()
        self.error_kinds.clear()
        self.latency.clear()
        self.endpoint_samples.clear()
        self.endpoint_counts.clear()


_reg = _Registry()


def _p95(values: List[float]) -> float:
    if not values:
        return 0.0
    xs = sorted(values)
    return xs[int(0.95 * (len(xs) - 1))]


def record_request(latency_ms: int, model: Optional[str], error_kind: Optional[str] = None) -> None:
    """One finished pipeline run, success or failure."""
    with _reg.lock:
        _reg.counters["requests_total"] += 1
        if model:
            _reg.models[model] += 1
        if error_kind:
            _reg.counters["failures_total"] += 1
            _reg.error_kinds[error_kind] += 1
        _reg.latency.observe(int(latency_ms))


def record_rate_limit_hit() -> None:
    with _reg.lock:
        _reg.counters["rate_limit_hits_total"] += 1


def record_cache(hit: bool) -> None:
    with _reg.lock:
        _reg.counters["cache_hits_total" if hit else "cache_misses_total"] += 1


def record_translation() -> None:
    with _reg.lock:
        _reg.counters["translations_total"] += 1


def record_endpoint(method: str, path: str, latency_ms: float) -> None:
    key = f"{method.upper()} {path}"
    with _reg.lock:
        _reg.endpoint_counts[key] += 1
        samples = _reg.endpoint_samples.get(key)
        if samples is None:
            samples = _reg.endpoint_samples[key] = deque(maxlen=MAX_ENDPOINT_SAMPLES)
        samples.append(float(latency_ms))


def snapshot() -> Dict[str, Any]:
    with _reg.lock:
        endpoints = {}
        for key, samples in _reg.endpoint_samples.items():
            xs = list(samples)
            endpoints[key] = {
                "count": float(_reg.endpoint_counts[key]),
                "avg_latency_ms": sum(xs) / len(xs) if xs else 0.0,
                "p95_latency_ms": _p95(xs),
            }
        return {
            "counters": dict(_reg.counters),
            "model_usage": dict(_reg.models),
            "error_kinds": dict(_reg.error_kinds),
            "latency_ms": {
                "buckets": list(_reg.latency.bounds) + ["+Inf"],
                "counts": list(_reg.latency.counts),
            },
            "performance": {"endpoints": endpoints, "generated_at": time.time()},
        }


def reset() -> None:
    with _reg.lock:
        _reg.clear()
