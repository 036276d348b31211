import logging
from typing import Callable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, REGISTRY, start_http_server

from .metrics import Metrics


logger = logging.getLogger(__name__)


class PrometheusExporter:
    """Publishes every fetch recorded in ``metrics`` to ``prometheus_client``.

    Finished fetches are counted by outcome as they are recorded. An optional
    ``live_bytes`` callable backs a gauge read at scrape time, so bytes of a
    stream still in flight are visible before its fetch finishes.
    """

    def __init__(
        self,
        metrics: Metrics,
        port: int = 8000,
        registry: CollectorRegistry = REGISTRY,
        live_bytes: Optional[Callable[[], int]] = None,
    ) -> None:
        self.metrics = metrics
        self.port = port
        self.registry = registry

        self.fetches_total = Counter(
            "streamfetch_fetches_total",
            "Finished fetches by outcome",
            ["outcome"],  # outcome: ok, error
            registry=registry,
        )
        self.bytes_total = Counter(
            "streamfetch_bytes_total", "Body bytes streamed by finished fetches", registry=registry
        )
        self.last_fetch_duration_seconds = Gauge(
            "streamfetch_last_fetch_duration_seconds", "Duration of the latest finished fetch", registry=registry
        )
        self.live_bytes = Gauge(
            "streamfetch_live_bytes", "Body bytes streamed by the fetch in flight", registry=registry
        )
        self.live_bytes.set_function(live_bytes or (lambda: 0))

        metrics.add_listener(self.observe_fetch)

    def observe_fetch(self, ok: bool, bytes_read: int, fetch_ms: float) -> None:
        self.fetches_total.labels(outcome="ok" if ok else "error").inc()
        if bytes_read:
            self.bytes_total.inc(bytes_read)
        self.last_fetch_duration_seconds.set(fetch_ms / 1000.0)

    def start(self) -> None:
        start_http_server(self.port, registry=self.registry)
        logger.info("Prometheus metrics server started on port %d", self.port)

    def stop(self) -> None:
        self.metrics.remove_listener(self.observe_fetch)
