"""Health endpoint.

Kubernetes uses GET /health for both the liveness and the readiness
probe (see deploy/k8s-observability-app.yaml).  The service has no
backing dependencies, so if the process can answer, it is healthy:
the response is static and does not depend on earlier requests.
"""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

router = APIRouter(tags=["health"])


class HealthOut(BaseModel):
    status: str = "ok"


@router.get("/health", response_model=HealthOut)
async def health() -> HealthOut:
    return HealthOut()
