import contextlib
import time
from collections import defaultdict


class Timer:
    """Accumulates wall-clock time per named section."""

    def __init__(self):
        self.seconds: dict[str, float] = defaultdict(float)
        self.counts: dict[str, int] = defaultdict(int)

    @contextlib.contextmanager
    def scope(self, key: str):
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.seconds[key] += time.perf_counter() - t0
            self.counts[key] += 1

    def summary(self) -> dict[str, dict[str, float]]:
        return {
            key: {"seconds": self.seconds[key], "calls": self.counts[key]}
            for key in self.seconds
        }
