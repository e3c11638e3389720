from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True, slots=True)
class RequestRecord:
    """Read-only view of an inbound request, valid while it is handled."""

    method: str
    path: str

    @staticmethod
    def from_scope(scope: dict) -> RequestRecord:
        return RequestRecord(method=scope.get("method", ""), path=scope.get("path", ""))


@dataclass(frozen=True, slots=True)
class RequestLabels:
    """The (method, route, status_code) triple shared by histogram and counter."""

    method: str
    route: str
    status_code: int

    def as_dict(self) -> dict[str, str]:
        return {
            "method": self.method,
            "route": self.route,
            "status_code": str(self.status_code),
        }


@dataclass(frozen=True, slots=True)
class ResponseOutcome:
    status_code: int
    elapsed_seconds: float

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed_seconds * 1000.0


@dataclass(frozen=True, slots=True)
class RequestLogRecord:
    """One structured access-log entry.

    Built by the instrumentation middleware once a response is final,
    then handed to the RequestLogger.  The logging pipeline owns
    everything after that (formatting, queueing, shipping to Loki).
    """

    method: str
    path: str
    status_code: int
    response_time_ms: float
    message: str = "Request processed"
    level: int = logging.INFO
    timestamp: datetime.datetime = field(default_factory=_utcnow)

    @staticmethod
    def new(
        request: RequestRecord,
        outcome: ResponseOutcome,
        *,
        level: int = logging.INFO,
    ) -> RequestLogRecord:
        return RequestLogRecord(
            method=request.method,
            path=request.path,
            status_code=outcome.status_code,
            response_time_ms=round(outcome.elapsed_ms, 3),
            level=level,
        )

    def fields(self) -> dict[str, object]:
        """Fields attached to the stdlib LogRecord as ``extra``."""
        return {
            "method": self.method,
            "path": self.path,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
        }


def labels_for(request: RequestRecord, outcome: ResponseOutcome) -> RequestLabels:
    return RequestLabels(
        method=request.method,
        route=request.path,
        status_code=outcome.status_code,
    )
