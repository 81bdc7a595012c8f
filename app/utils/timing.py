import time
from contextlib import contextmanager

def ms_since(t0: float) -> int:
    """Whole milliseconds elapsed since a time.perf_counter() reading."""
    return int((time.perf_counter() - t0) * 1000)

@contextmanager
def timer():
    # with timer() as elapsed: ... ; elapsed() -> ms so far
    t0 = time.perf_counter()
    yield lambda: ms_since(t0)
