"""Prometheus metrics endpoint.

Prometheus scrapes this every N seconds (the pod carries
prometheus.io/scrape annotations pointing at port 3000, path /metrics).
It returns plain text in Prometheus exposition format, NOT JSON:

  # HELP http_requests_total Total number of HTTP requests
  # TYPE http_requests_total counter
  http_requests_total{method="GET",route="/health",status_code="200"} 1432.0

The registry is the one create_app() built and stored on app.state;
scrapes go through the instrumentation middleware like any other
request, so they show up under route="/metrics".
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import Response

from api_service.core.metrics import MetricsRegistry

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request) -> Response:
    """Expose the current registry state in text exposition format."""
    registry: MetricsRegistry = request.app.state.metrics_registry
    return Response(
        content=registry.serialize(),
        media_type=registry.content_type,
    )
