from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]

# The port is part of the deployment contract (container port, scrape
# annotations, probes) and is not read from the environment.
DEFAULT_PORT = 3000
DEFAULT_LOKI_HOST = "http://loki:3100"
SERVICE_NAME = "api-service"

_TRUTHY = ("true", "1", "yes")
_FALSY = ("false", "0", "no")


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    loki_host: str | None
    port: int = DEFAULT_PORT
    service_name: str = SERVICE_NAME

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    log_json_raw = _getenv("LOG_JSON", "true").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if log_json_raw in _TRUTHY:
        log_json = True
    elif log_json_raw in _FALSY:
        log_json = False
    else:
        raise ValueError(f"LOG_JSON must be true|false (got {log_json_raw!r})")

    # Unset falls back to the in-cluster Loki; an explicit empty value
    # turns the remote sink off.
    loki_host = os.environ.get("LOKI_HOST", DEFAULT_LOKI_HOST).strip() or None
    if loki_host is not None:
        loki_host = loki_host.rstrip("/")

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json,
        loki_host=loki_host,
    )


SETTINGS = load_settings()
