"""Instrumentation middleware: times, counts and logs every HTTP request.

For each request, this middleware:
  1. Notes a monotonic start time when the request enters the app
  2. Lets the downstream app run untouched, forwarding every ASGI
     message (status, headers, body) exactly as the handler produced it
  3. Once the final body message has been handed to the server:
       - computes elapsed = now - start
       - observes elapsed in http_request_duration_seconds
       - increments http_requests_total
       - emits one access-log record
     all under the same (method, route, status_code) labels, in that
     order, before the send call returns.

WHY PURE ASGI (NOT BaseHTTPMiddleware)
----------------------------------------
BaseHTTPMiddleware hands back the Response object as soon as the
handler returns it, before the body has been streamed to the client.
Timing at that point under-reports streaming responses.  Wrapping the
ASGI ``send`` callable lets us observe the exact moment the response is
finalized (the ``http.response.body`` message with ``more_body`` false)
without replacing any method on the response.

EXACTLY ONCE PER REQUEST
--------------------------
A request is recorded the first time it is finalized; a second final
body message for the same request is forwarded but not re-counted.  A
request whose handler raises before finalizing is recorded as a 500 and
the exception is re-raised for the framework's error handler.  If the
client disconnects mid-request the handler still runs to completion and
the request is recorded when its response is handed to the server.

The registry and request logger are injected by create_app(), so tests
can observe a private registry instead of process-wide globals.
"""

from __future__ import annotations

import logging
import time

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from api_service.core.logging import RequestLogger
from api_service.core.metrics import MetricsRegistry
from api_service.models.request_log import (
    RequestLogRecord,
    RequestRecord,
    ResponseOutcome,
    labels_for,
)


class InstrumentationMiddleware:
    """Collect Prometheus metrics and an access log line for every request."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        registry: MetricsRegistry,
        request_logger: RequestLogger,
    ) -> None:
        self.app = app
        self.registry = registry
        self.request_logger = request_logger

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = RequestRecord.from_scope(scope)
        start = time.monotonic()
        status_code = 500
        recorded = False

        def finalize(level: int = logging.INFO) -> None:
            nonlocal recorded
            if recorded:
                return
            recorded = True
            outcome = ResponseOutcome(
                status_code=status_code,
                elapsed_seconds=time.monotonic() - start,
            )
            self.record(request, outcome, level=level)

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code

            if message["type"] == "http.response.start":
                status_code = int(message["status"])

            await send(message)

            if message["type"] == "http.response.body" and not message.get(
                "more_body", False
            ):
                finalize()

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            # ServerErrorMiddleware (outside us) turns this into a 500.
            status_code = 500
            finalize(logging.ERROR)
            raise

    def record(
        self,
        request: RequestRecord,
        outcome: ResponseOutcome,
        *,
        level: int = logging.INFO,
    ) -> None:
        labels = labels_for(request, outcome)
        self.registry.record_duration(labels, outcome.elapsed_seconds)
        self.registry.increment_counter(labels)
        self.request_logger.log(RequestLogRecord.new(request, outcome, level=level))
