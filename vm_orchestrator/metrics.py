import time
from collections import Counter
from threading import Lock


class Metrics:
    """Process-local counters and gauges served by ``/metrics``.

    Counters only grow. Gauges hold the last value written.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter()
        self._gauges: dict[str, int] = {}

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += amount

    def set(self, key: str, value: int) -> None:
        with self._lock:
            self._gauges[key] = value

    def mark(self, key: str) -> None:
        self.set(key, int(time.time()))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            values = dict(self._counters)
            values.update(self._gauges)
            return values


metrics = Metrics()
