# =============================================
# File: app/utils/ratelimit.py
# Purpose: In-memory per-identity rate limiter (sliding window)
# =============================================
from __future__ import annotations

import math
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional


def _get_limits() -> tuple[int, int]:
    """Read limits at construction time so tests/env overrides take effect."""
    max_reqs = int(os.getenv("RL_MAX_REQS", "10"))
    window_s = int(os.getenv("RL_WINDOW_SECONDS", "60"))
    return max_reqs, window_s


# idle identities are swept once every this many checks
PRUNE_EVERY = 256


@dataclass(frozen=True)
class RateLimitDecision:
    blocked: bool
    remaining: int
    reset_time: float  # epoch seconds at which a slot frees up
    limit: int

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(0, int(math.ceil(self.reset_time - now)))


class RateLimiter:
    """
    Sliding-window limiter keyed by caller identity.
    check() never raises; a block is just a decision with a retry hint.
    Identities idle for a whole window are forgotten every `prune_every` checks.
    """

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        prune_every: int = PRUNE_EVERY,
    ):
        env_max, env_window = _get_limits()
        self.max_requests = int(max_requests if max_requests is not None else env_max)
        self.window_seconds = float(window_seconds if window_seconds is not None else env_window)
        self._clock = clock
        self.prune_every = max(1, int(prune_every))
        self._checks = 0
        self._store: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            self._checks += 1
            if self._checks % self.prune_every == 0:
                self._drop_idle(cutoff)
            dq = self._store.setdefault(key or "anon", deque())

            # Drop timestamps outside the window
            while dq and dq[0] <= cutoff:
                dq.popleft()

            if len(dq) >= self.max_requests:
                return RateLimitDecision(
                    blocked=True,
                    remaining=0,
                    # a zero limit blocks with nothing in the window
                    reset_time=(dq[0] if dq else now) + self.window_seconds,
                    limit=self.max_requests,
                )

            dq.append(now)
            return RateLimitDecision(
                blocked=False,
                remaining=max(0, self.max_requests - len(dq)),
                reset_time=dq[0] + self.window_seconds,
                limit=self.max_requests,
            )

    def prune(self) -> int:
        """Forget identities with no requests inside the window."""
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            return self._drop_idle(cutoff)

    def _drop_idle(self, cutoff: float) -> int:
        idle = [k for k, dq in self._store.items() if not dq or dq[-1] <= cutoff]
        for k in idle:
            del self._store[k]
        return len(idle)

    def tracked(self) -> int:
        with self._lock:
            return len(self._store)

    def reset(self) -> None:
        """For tests: clear in-memory counters."""
        with self._lock:
            self._store.clear()
