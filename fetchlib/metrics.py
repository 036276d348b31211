import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, List, Optional


FetchListener = Callable[[bool, int, float], None]


@dataclass
class Totals:
    fetches: int = 0
    bytes: int = 0
    errors: int = 0
    fetch_ms_sum: float = 0.0


class Metrics:
    """Thread-safe totals over finished fetches.

    Listeners are called with ``(ok, bytes_read, fetch_ms)`` for every fetch
    recorded, outside the lock.
    """

    def __init__(self):
        self._totals = Totals()
        self._lock = threading.Lock()
        self._start = time.time()
        self._listeners: List[FetchListener] = []

    def add_listener(self, listener: FetchListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: FetchListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def record_fetch(self, ok: bool, bytes_read: int, fetch_ms: float) -> None:
        bytes_read = max(0, bytes_read)
        with self._lock:
            self._totals.fetches += 1
            self._totals.bytes += bytes_read
            if not ok:
                self._totals.errors += 1
            self._totals.fetch_ms_sum += fetch_ms
            listeners = list(self._listeners)
        for listener in listeners:
            listener(ok, bytes_read, fetch_ms)

    def snapshot(self) -> tuple[Totals, float]:
        with self._lock:
            t = replace(self._totals)
        elapsed = max(1e-6, time.time() - self._start)
        return t, elapsed


class StatsLogger(threading.Thread):
    """Logs a perf line every ``interval_s``.

    ``live_bytes`` reports bytes of a stream still in flight, which the
    totals only include once its fetch has finished. The rate covers the
    time since the previous line.
    """

    daemon = True

    def __init__(self, metrics: Metrics, interval_s: float, log_fn, live_bytes: Optional[Callable[[], int]] = None):
        super().__init__(name="stats-logger")
        self._metrics = metrics
        self._interval = max(0.5, interval_s)
        self._log = log_fn
        self._live_bytes = live_bytes
        self._stop_event = threading.Event()
        self._last_bytes = 0
        self._last_at = time.monotonic()

    def run(self) -> None:
        while not self._stop_event.wait(self._interval):
            self.log_once()

    def log_once(self) -> None:
        totals, _ = self._metrics.snapshot()
        streamed = totals.bytes + (self._live_bytes() if self._live_bytes else 0)
        now = time.monotonic()
        window = max(1e-6, now - self._last_at)
        rate_kb = max(0, streamed - self._last_bytes) / 1024 / window
        self._last_bytes, self._last_at = streamed, now
        self._log(
            "Perf: fetches=%d, errors=%d, MB=%.2f, avg_fetch_ms=%.1f, KB/sec=%.1f",
            totals.fetches,
            totals.errors,
            streamed / (1024 * 1024),
            totals.fetch_ms_sum / max(1, totals.fetches),
            rate_kb,
        )

    def stop(self) -> None:
        self._stop_event.set()
