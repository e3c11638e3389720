from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

# Must be set before api_service.core.config builds SETTINGS at import:
# the test process never ships logs to Loki unless a test asks for it.
os.environ.setdefault("APP_ENV", "test")
os.environ["LOKI_HOST"] = ""

# Ensure repo root is on sys.path so `import api_service` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from api_service.core.config import Settings  # noqa: E402
from api_service.core.logging import RequestLogger  # noqa: E402
from api_service.core.metrics import MetricsRegistry  # noqa: E402
from api_service.main import create_app  # noqa: E402


class ListHandler(logging.Handler):
    """Collects every record it sees, in order."""

    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "app_env": "test",
        "log_level": "info",
        "log_json": False,
        "loki_host": None,
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


@pytest.fixture
def registry() -> MetricsRegistry:
    """A private registry per test, so counts start from zero."""
    return MetricsRegistry()


@pytest.fixture
def access_log() -> ListHandler:
    return ListHandler()


@pytest.fixture
def access_logger(access_log: ListHandler) -> logging.Logger:
    # Built directly (not via getLogger) so it has no parent and never
    # reaches the root handlers.
    logger = logging.Logger("test.access", level=logging.DEBUG)
    logger.addHandler(access_log)
    return logger


@pytest.fixture
def app(registry: MetricsRegistry, access_logger: logging.Logger) -> FastAPI:
    return create_app(
        make_settings(),
        registry=registry,
        request_logger=RequestLogger(access_logger),
    )


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture
def no_delay(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make /api/data answer immediately."""
    monkeypatch.setattr("api_service.api.data.MAX_PROCESSING_DELAY_SECONDS", 0.0)
