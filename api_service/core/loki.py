"""Remote log sink: push log lines to Grafana Loki.

HOW LOKI INGESTS LOGS
-----------------------
Loki has no agent-side parsing.  Clients POST batches of "streams" to
/loki/api/v1/push.  A stream is a set of labels plus a list of
[timestamp_ns, line] pairs:

  {"streams": [{
      "stream": {"job": "api-service", "level": "info"},
      "values": [["1718000000123000000", "{\\"message\\": ...}"], ...]
  }]}

Labels are indexed and should stay low-cardinality (job, level).  The
request fields stay inside the JSON line and are extracted at query
time with `| json`.

KEEPING THE REQUEST PATH NON-BLOCKING
---------------------------------------
An HTTP POST must not run on the event loop.  The root logger gets a
QueueHandler, which only appends to an in-memory queue.  A background
thread drains the queue and ships what it finds in one push, up to
_BATCH_SIZE records at a time, waiting at most _FLUSH_INTERVAL_SECONDS
for the first one.

BOUNDED BACKLOG
-----------------
The queue holds at most _MAX_QUEUED records.  While Loki is slow or
down, records that do not fit are dropped and counted instead of
growing memory without limit.  On shutdown the thread ships one last
batch and gives up after a fixed deadline; whatever is still queued is
reported as dropped.

FAILURE ISOLATION
-------------------
A failed push is reported on stderr and the batch is discarded.  There
is no retry.  The stdout handler is a separate handler on the root
logger, so console output is unaffected, and nothing ever raises back
into the middleware.
"""

from __future__ import annotations

import copy
import logging
import queue
import sys
import threading
from collections.abc import Mapping, Sequence
from logging.handlers import QueueHandler

import httpx

from api_service.core.config import SERVICE_NAME
from api_service.core.logging import _JsonFormatter

PUSH_PATH = "/loki/api/v1/push"

# Loki usually answers in milliseconds; a slow push only delays the
# sink thread, never a request.
_PUSH_TIMEOUT_SECONDS = 5.0
_BATCH_SIZE = 100
_FLUSH_INTERVAL_SECONDS = 1.0
_MAX_QUEUED = 10_000


class LokiHandler(logging.Handler):
    """Pushes records to Loki, one stream per level in each request."""

    def __init__(
        self,
        url: str,
        labels: Mapping[str, str],
        *,
        client: httpx.Client | None = None,
        timeout: float = _PUSH_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__()
        self.push_url = url.rstrip("/") + PUSH_PATH
        self.labels = dict(labels)
        self._client = client if client is not None else httpx.Client(timeout=timeout)

    def build_payload(self, records: Sequence[logging.LogRecord]) -> dict:
        streams: dict[str, list[list[str]]] = {}
        for record in records:
            timestamp_ns = str(int(record.created * 1_000_000_000))
            streams.setdefault(record.levelname.lower(), []).append(
                [timestamp_ns, self.format(record)]
            )
        return {
            "streams": [
                {"stream": {**self.labels, "level": level}, "values": values}
                for level, values in streams.items()
            ]
        }

    def push(self, records: Sequence[logging.LogRecord]) -> None:
        if not records:
            return
        try:
            response = self._client.post(self.push_url, json=self.build_payload(records))
            response.raise_for_status()
        except Exception:
            self.handleError(records[0], count=len(records))

    def emit(self, record: logging.LogRecord) -> None:
        self.push([record])

    def handleError(self, record: logging.LogRecord, count: int = 1) -> None:
        # Local console only.  Routing this through `logging` would feed
        # the failure back into the queue and onto this same handler.
        exc = sys.exc_info()[1]
        sys.stderr.write(
            f"loki push to {self.push_url} failed, {count} record(s) lost: {exc!r}\n"
        )

    def close(self) -> None:
        self._client.close()
        super().close()


class _BoundedQueueHandler(QueueHandler):
    """QueueHandler that drops (and counts) records once the queue is full."""

    def __init__(self, log_queue: queue.Queue) -> None:
        super().__init__(log_queue)
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The stock prepare() folds the traceback into the message.  Keep
        # it separate so Loki lines carry the same "exception" key as stdout.
        record = copy.copy(record)
        record.msg = record.getMessage()
        record.args = None
        if record.exc_info:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        record.exc_info = None
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1


class LokiSink:
    """Owns the queue, the queue handler and the thread that ships batches."""

    def __init__(
        self,
        handler: LokiHandler,
        *,
        max_queued: int = _MAX_QUEUED,
        batch_size: int = _BATCH_SIZE,
        flush_interval: float = _FLUSH_INTERVAL_SECONDS,
    ) -> None:
        self.handler = handler
        self.queue: queue.Queue[logging.LogRecord] = queue.Queue(max_queued)
        self.queue_handler = _BoundedQueueHandler(self.queue)
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self._stopping = threading.Event()
        self._thread = threading.Thread(target=self._run, name="loki-sink", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float) -> None:
        self._stopping.set()
        self._thread.join(timeout)
        lost = self.queue_handler.dropped + self.queue.qsize()
        if lost:
            sys.stderr.write(f"loki sink dropped {lost} record(s)\n")

    def _collect(self, *, block: bool) -> list[logging.LogRecord]:
        batch: list[logging.LogRecord] = []
        if block:
            try:
                batch.append(self.queue.get(timeout=self.flush_interval))
            except queue.Empty:
                return batch
        while len(batch) < self.batch_size:
            try:
                batch.append(self.queue.get_nowait())
            except queue.Empty:
                break
        return batch

    def _run(self) -> None:
        while not self._stopping.is_set():
            self.handler.push(self._collect(block=True))
        # One final batch; the rest is counted as dropped by stop().
        self.handler.push(self._collect(block=False))


def _not_http_client_record(record: logging.LogRecord) -> bool:
    return not record.name.startswith(("httpx", "httpcore"))


def start_loki_sink(
    url: str,
    labels: Mapping[str, str] | None = None,
    *,
    service_name: str = SERVICE_NAME,
    client: httpx.Client | None = None,
    max_queued: int = _MAX_QUEUED,
    batch_size: int = _BATCH_SIZE,
    flush_interval: float = _FLUSH_INTERVAL_SECONDS,
) -> LokiSink:
    """Attach a queue-backed Loki sink to the root logger and start it."""
    handler = LokiHandler(url, labels or {"job": service_name}, client=client)
    handler.setFormatter(_JsonFormatter(service_name))

    sink = LokiSink(
        handler,
        max_queued=max_queued,
        batch_size=batch_size,
        flush_interval=flush_interval,
    )
    sink.start()

    # The push itself goes through httpx; its own records must not loop back.
    sink.queue_handler.addFilter(_not_http_client_record)
    logging.getLogger().addHandler(sink.queue_handler)
    return sink


def stop_loki_sink(sink: LokiSink, timeout: float | None = None) -> None:
    """Detach from the root logger, ship one last batch, close the client.

    Waits at most ``timeout`` seconds (default: one flush interval plus
    two push timeouts, covering an in-flight push and the final one).
    """
    if timeout is None:
        timeout = sink.flush_interval + 2 * _PUSH_TIMEOUT_SECONDS
    logging.getLogger().removeHandler(sink.queue_handler)
    sink.stop(timeout)
    sink.handler.close()
