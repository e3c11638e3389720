"""Simulated data endpoint.

GET /api/data stands in for a call to a slow backend: it waits a random
0-500ms and returns a random value.  The variable latency is what makes
the duration histogram interesting to look at.

The wait uses asyncio.sleep, so a slow request only suspends its own
coroutine; the event loop keeps serving everything else meanwhile.
"""

from __future__ import annotations

import asyncio
import datetime
import random

from fastapi import APIRouter
from pydantic import BaseModel

router = APIRouter(prefix="/api", tags=["data"])

MAX_PROCESSING_DELAY_SECONDS = 0.5


class DataOut(BaseModel):
    value: int
    timestamp: str


def _iso_now() -> str:
    # Millisecond precision with a "Z" suffix: 2024-06-01T12:00:00.123Z
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@router.get("/data", response_model=DataOut)
async def get_data() -> DataOut:
    await asyncio.sleep(random.uniform(0, MAX_PROCESSING_DELAY_SECONDS))
    return DataOut(value=random.randint(0, 99), timestamp=_iso_now())
