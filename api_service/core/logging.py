"""Logging configuration for api-service.

Every request produces one access-log line (method, path, status code,
response time).  Those lines go to two places:

  1. stdout, always.  The container runtime captures it, and it is the
     only sink that keeps working when everything else is down.
  2. Loki, when LOKI_HOST is set (see api_service/core/loki.py).
     Loki indexes the stream labels and Grafana queries the JSON fields.

WHY TWO FORMATTERS
--------------------
  _ContainerFormatter: human-readable, single-line, for local dev.
    Request fields are appended as key=value pairs.

  _JsonFormatter: one JSON object per line, for production and Loki.
    Request fields become top-level keys, so LogQL can filter on them:

      {job="api-service"} | json | status_code >= 500

    Set LOG_JSON=false to switch stdout back to plain text.

THE REQUEST LOGGER
--------------------
The instrumentation middleware does not call logging.getLogger() itself.
It gets a RequestLogger injected, which turns a RequestLogRecord into a
stdlib LogRecord carrying the record's own timestamp.  Tests swap in a
RequestLogger wrapping a logger they control.
"""

from __future__ import annotations

import json
import logging
import sys

from api_service.core.config import SERVICE_NAME
from api_service.models.request_log import RequestLogRecord

ACCESS_LOGGER_NAME = "api_service.access"

# Fields the RequestLogger attaches to LogRecords via ``extra``.
_CONTEXT_FIELDS = (
    "method",
    "path",
    "status_code",
    "response_time_ms",
)


class _IsoFormatter(logging.Formatter):
    """ISO-8601 timestamps with millisecond precision."""

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        base = super().formatTime(record, datefmt or self.datefmt)
        ms = int(record.msecs)
        # Insert .NNN before the timezone offset (last 5 chars: +0000)
        return f"{base[:-5]}.{ms:03d}{base[-5:]}"


class _ContainerFormatter(_IsoFormatter):
    """Single-line formatter tuned for container stdout.

    - Always: ISO-8601 timestamp, level, logger name, message
    - Request fields, when present, appended as key=value
    - WARNING+: appends [filename:lineno]
    - ERROR/CRITICAL: stack trace included when exc_info is present
    """

    _BASE_FMT = "%(asctime)s %(levelname)-8s %(name)s  %(message)s"
    _LOC_SUFFIX = "  [%(filename)s:%(lineno)d]"

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.WARNING:
            self._style._fmt = self._BASE_FMT + self._LOC_SUFFIX
        else:
            self._style._fmt = self._BASE_FMT
        line = super().format(record)

        pairs = [
            f"{key}={getattr(record, key)}"
            for key in _CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        ]
        if not pairs:
            return line
        # Keep any traceback on the lines after the summary.
        head, sep, tail = line.partition("\n")
        return f"{head}  {' '.join(pairs)}{sep}{tail}"


class _JsonFormatter(_IsoFormatter):
    """JSON formatter, one object per line (JSON Lines).

    ``service`` mirrors the Loki ``job`` label so lines stay attributable
    after they leave the stream they were pushed to.
    """

    def __init__(self, service: str = SERVICE_NAME) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
        }

        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        # exc_text is all that is left once a QueueHandler has prepared the record.
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        elif record.exc_text:
            log_entry["exception"] = record.exc_text

        return json.dumps(log_entry, default=str)


def setup_logging(
    level_name: str,
    *,
    json_format: bool = False,
    service_name: str = SERVICE_NAME,
) -> None:
    """Configure the root logger with a single stdout handler.

    Args:
        level_name: Log level string (debug/info/warning/error)
        json_format: If True, emit JSON lines. If False, human-readable.
                     Controlled by LOG_JSON env var in Settings.
        service_name: Value of the ``service`` key in JSON output.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        _JsonFormatter(service_name) if json_format else _ContainerFormatter()
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # uvicorn's access log would duplicate the middleware's line.
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "httpcore", "httpx"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


class RequestLogger:
    """Writes RequestLogRecords to a stdlib logger.

    Handler failures are handled by the logging module itself
    (Handler.handleError reports to stderr), so log() never raises into
    the request path.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = (
            logger if logger is not None else logging.getLogger(ACCESS_LOGGER_NAME)
        )

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def log(self, entry: RequestLogRecord) -> None:
        if not self._logger.isEnabledFor(entry.level):
            return
        record = self._logger.makeRecord(
            self._logger.name,
            entry.level,
            "(access)",
            0,
            entry.message,
            (),
            None,
            extra=entry.fields(),
        )
        created = entry.timestamp.timestamp()
        record.created = created
        record.msecs = (created - int(created)) * 1000
        self._logger.handle(record)
