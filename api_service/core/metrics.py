"""Prometheus metrics for api-service.

All HTTP metrics live on one MetricsRegistry object that is built once
at startup (see create_app) and handed to whoever needs it: the
instrumentation middleware writes to it, the /metrics endpoint reads
from it.  Nothing here touches prometheus_client's global REGISTRY, so
tests can build a fresh registry per app and assert exact counts.

THE TWO HTTP METRICS
----------------------
Both are labeled by (method, route, status_code).  The names are part of
the external contract: dashboards and alert rules query them directly.

  http_request_duration_seconds  (histogram)
    One observation per completed request.  From the bucket counts
    Prometheus derives percentiles:
      histogram_quantile(0.95, rate(http_request_duration_seconds_bucket[5m]))

  http_requests_total  (counter)
    +1 per completed request.  Only ever goes up; use rate() for RPS:
      rate(http_requests_total[5m])

Buckets are spread over 100ms..10s.  The simulated data endpoint answers
somewhere in 0-500ms, so the 0.1/0.3/0.5 buckets carry most of the
signal; anything past 1s means the event loop is starving.

DEFAULT METRICS
-----------------
Process (CPU, RSS, open fds), platform (python version) and GC
collectors are registered alongside, the same set the default
prometheus_client registry would expose.

prometheus_client guards every metric child with a lock, so concurrent
observations from many in-flight requests are never lost.
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

from api_service.models.request_log import RequestLabels

LABEL_NAMES = ("method", "route", "status_code")

DURATION_BUCKETS = (0.1, 0.3, 0.5, 0.7, 1.0, 3.0, 5.0, 7.0, 10.0)


class MetricsRegistry:
    """Request duration histogram + request counter on a private registry."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        *,
        default_metrics: bool = True,
    ) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        if default_metrics:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)

        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "Duration of HTTP requests in seconds",
            LABEL_NAMES,
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.request_count = Counter(
            "http_requests_total",
            "Total number of HTTP requests",
            LABEL_NAMES,
            registry=self.registry,
        )

    def record_duration(self, labels: RequestLabels, seconds: float) -> None:
        self.request_duration.labels(**labels.as_dict()).observe(seconds)

    def increment_counter(self, labels: RequestLabels) -> None:
        self.request_count.labels(**labels.as_dict()).inc()

    def serialize(self) -> bytes:
        """Render every collector in Prometheus text exposition format."""
        return generate_latest(self.registry)

    def sample_value(self, name: str, labels: dict[str, str] | None = None) -> float:
        """Current value of one sample, 0.0 if it has never been written."""
        value = self.registry.get_sample_value(name, labels=labels or {})
        return value if value is not None else 0.0
