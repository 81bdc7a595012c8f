# =============================================
# File: app/services/background.py
# Purpose: Fire-and-forget writes (audit-on-failure, pattern upserts) on a worker thread
# =============================================
from __future__ import annotations

import os
import queue
import threading
import time
from typing import Any, Callable, Optional, Tuple

from loguru import logger

_STOP = object()


def _get_retries() -> int:
    try:
        return max(0, int(os.getenv("BG_MAX_RETRIES", "2")))
    except ValueError:
        return 2


class BackgroundWriter:
    """
    Bounded job queue served by one daemon thread, started on first submit.
    Jobs are retried with linear backoff; failures are logged, never raised.
    """

    def __init__(
        self,
        max_retries: Optional[int] = None,
        backoff_s: float = 0.5,
        maxsize: int = 1000,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries if max_retries is not None else _get_retries()
        self.backoff_s = backoff_s
        self._sleep = sleep
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._loop, name="askdb-bg", daemon=True)
                self._thread.start()

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        self._ensure_worker()
        try:
            self._queue.put_nowait((name, fn, args, kwargs))
            return True
        except queue.Full:
            self.dropped += 1
            logger.error("background queue full; dropped job '{}'", name)
            return False

    def _run(self, job: Tuple[str, Callable[..., Any], tuple, dict]) -> None:
        name, fn, args, kwargs = job
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                fn(*args, **kwargs)
                self.completed += 1
                return
            except Exception as e:
                if attempt >= attempts:
                    self.failed += 1
                    logger.error("background job '{}' failed after {} attempt(s): {}", name, attempt, e)
                    return
                logger.warning("background job '{}' attempt {} failed: {}", name, attempt, e)
                self._sleep(self.backoff_s * attempt)

    def _loop(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                self._run(job)
            finally:
                self._queue.task_done()

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait until every queued job has run. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
        if thread is None or not thread.is_alive():
            return
        self._queue.put(_STOP)
        thread.join(timeout)
