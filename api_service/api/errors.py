"""Catch-all handler for exceptions no route handled.

Starlette routes handlers registered for ``Exception`` to its outermost
ServerErrorMiddleware, so this runs after the instrumentation middleware
has already counted the request as a 500.  Clients get a fixed JSON body;
the traceback only goes to the log.
"""

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled error on %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})
