"""Tests for the Loki push sink.

No Loki runs in the test process: pushes go to httpx.MockTransport,
which either captures the request or fails the way a down Loki would.
"""

from __future__ import annotations

import json
import logging
import threading
import time

import httpx
import pytest

from api_service.core.logging import RequestLogger, _JsonFormatter
from api_service.core.loki import LokiHandler, start_loki_sink, stop_loki_sink
from api_service.models.request_log import RequestLogRecord
from tests.conftest import ListHandler


def _capture_into(pushed: list[dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        pushed.append({"url": str(request.url), "body": json.loads(request.content)})
        return httpx.Response(204)

    return handler


def _capturing_client(pushed: list[dict]) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(_capture_into(pushed)))


def _refusing_client() -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _entry() -> RequestLogRecord:
    return RequestLogRecord(
        method="GET", path="/api/data", status_code=200, response_time_ms=42.0
    )


def test_handler_pushes_stream_with_labels() -> None:
    pushed: list[dict] = []
    handler = LokiHandler(
        "http://loki:3100/", {"job": "api-service"}, client=_capturing_client(pushed)
    )
    handler.setFormatter(_JsonFormatter())
    logger = logging.Logger("test.loki", level=logging.INFO)
    logger.addHandler(handler)

    RequestLogger(logger).log(_entry())

    (push,) = pushed
    assert push["url"] == "http://loki:3100/loki/api/v1/push"
    (stream,) = push["body"]["streams"]
    assert stream["stream"] == {"job": "api-service", "level": "info"}
    ((timestamp_ns, line),) = stream["values"]
    assert timestamp_ns.isdigit()
    parsed = json.loads(line)
    assert parsed["message"] == "Request processed"
    assert parsed["path"] == "/api/data"
    assert parsed["status_code"] == 200


def test_unreachable_loki_reported_on_stderr_not_raised(
    capsys: pytest.CaptureFixture[str],
) -> None:
    handler = LokiHandler(
        "http://loki:3100", {"job": "api-service"}, client=_refusing_client()
    )
    logger = logging.Logger("test.loki", level=logging.INFO)
    logger.addHandler(handler)

    RequestLogger(logger).log(_entry())

    err = capsys.readouterr().err
    assert "loki push to http://loki:3100/loki/api/v1/push failed" in err
    assert "ConnectError" in err


def test_loki_error_status_reported_not_raised(
    capsys: pytest.CaptureFixture[str],
) -> None:
    client = httpx.Client(
        transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )
    handler = LokiHandler("http://loki:3100", {"job": "api-service"}, client=client)
    logger = logging.Logger("test.loki", level=logging.INFO)
    logger.addHandler(handler)

    RequestLogger(logger).log(_entry())

    assert "503" in capsys.readouterr().err


def test_failing_loki_does_not_starve_console_handler() -> None:
    console = ListHandler()
    logger = logging.Logger("test.loki", level=logging.INFO)
    logger.addHandler(
        LokiHandler("http://loki:3100", {"job": "api-service"}, client=_refusing_client())
    )
    logger.addHandler(console)

    RequestLogger(logger).log(_entry())

    assert len(console.records) == 1


def test_sink_ships_root_records_through_queue() -> None:
    pushed: list[dict] = []
    sink = start_loki_sink("http://loki:3100", client=_capturing_client(pushed))
    try:
        logging.getLogger("api_service.test").error("shipped via queue")
    finally:
        stop_loki_sink(sink)

    lines = [
        json.loads(value[1])
        for push in pushed
        for stream in push["body"]["streams"]
        for value in stream["values"]
    ]
    assert any(line["message"] == "shipped via queue" for line in lines)
    assert all(
        stream["stream"]["job"] == "api-service"
        for push in pushed
        for stream in push["body"]["streams"]
    )


def test_sink_skips_http_client_records() -> None:
    pushed: list[dict] = []
    sink = start_loki_sink("http://loki:3100", client=_capturing_client(pushed))
    try:
        logging.getLogger("httpx").error("HTTP Request: POST ...")
    finally:
        stop_loki_sink(sink)

    messages = [
        json.loads(value[1])["message"]
        for push in pushed
        for stream in push["body"]["streams"]
        for value in stream["values"]
    ]
    assert "HTTP Request: POST ..." not in messages


def test_stop_sink_detaches_from_root_logger() -> None:
    sink = start_loki_sink("http://loki:3100", client=_capturing_client([]))
    assert sink.queue_handler in logging.getLogger().handlers
    stop_loki_sink(sink)
    assert sink.queue_handler not in logging.getLogger().handlers


def _lines(pushed: list[dict]) -> list[dict]:
    return [
        json.loads(value[1])
        for push in pushed
        for stream in push["body"]["streams"]
        for value in stream["values"]
    ]


def test_handler_push_sends_one_request_per_batch() -> None:
    pushed: list[dict] = []
    handler = LokiHandler(
        "http://loki:3100", {"job": "api-service"}, client=_capturing_client(pushed)
    )
    handler.setFormatter(_JsonFormatter())
    records = [
        logging.LogRecord("test", level, "x.py", 1, f"line {i}", (), None)
        for i, level in enumerate((logging.INFO, logging.ERROR, logging.INFO))
    ]

    handler.push(records)

    (push,) = pushed
    streams = {s["stream"]["level"]: s["values"] for s in push["body"]["streams"]}
    assert len(streams["info"]) == 2
    assert len(streams["error"]) == 1


def test_sink_batches_queued_records() -> None:
    pushed: list[dict] = []
    all_logged = threading.Event()
    capture = _capture_into(pushed)

    def gated(request: httpx.Request) -> httpx.Response:
        # Hold the first push until every record is queued.
        all_logged.wait(2)
        return capture(request)

    sink = start_loki_sink(
        "http://loki:3100", client=httpx.Client(transport=httpx.MockTransport(gated))
    )
    try:
        for i in range(20):
            logging.getLogger("api_service.test").error("batched %d", i)
        all_logged.set()
    finally:
        stop_loki_sink(sink)

    messages = [line["message"] for line in _lines(pushed)]
    assert [m for m in messages if m.startswith("batched")] == [
        f"batched {i}" for i in range(20)
    ]
    assert len(pushed) <= 2


def test_sink_bounds_backlog_and_shutdown_when_loki_hangs(
    capsys: pytest.CaptureFixture[str],
) -> None:
    release = threading.Event()

    def hanging(request: httpx.Request) -> httpx.Response:
        release.wait(0.5)
        raise httpx.ReadTimeout("timed out", request=request)

    sink = start_loki_sink(
        "http://loki:3100",
        client=httpx.Client(transport=httpx.MockTransport(hanging)),
        max_queued=5,
        batch_size=2,
        flush_interval=0.05,
    )
    try:
        for i in range(50):
            logging.getLogger("api_service.test").error("backlog %d", i)
        assert sink.queue.qsize() <= 5
        assert sink.queue_handler.dropped > 0
    finally:
        started = time.monotonic()
        stop_loki_sink(sink, timeout=1.5)
        elapsed = time.monotonic() - started
        release.set()

    assert elapsed < 2.5
    assert "loki sink dropped" in capsys.readouterr().err


def test_sink_keeps_exception_separate_from_message() -> None:
    pushed: list[dict] = []
    sink = start_loki_sink("http://loki:3100", client=_capturing_client(pushed))
    try:
        try:
            raise ValueError("test error")
        except ValueError:
            logging.getLogger("api_service.test").exception("it broke")
    finally:
        stop_loki_sink(sink)

    (line,) = [line for line in _lines(pushed) if line["message"] == "it broke"]
    assert "ValueError: test error" in line["exception"]
