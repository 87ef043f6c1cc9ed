"""Request / response logging middleware using structlog.

Binds a request id to the logging context so every event emitted while a
request is handled (including run triggers) carries it, then logs the
method, path, status code and timing.
"""

from __future__ import annotations

import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from stageflow.utils.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "x-request-id"


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every HTTP request and echoes its request id in the response."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            logger.info("request_started", method=request.method, path=request.url.path)
            try:
                response = await call_next(request)
            except Exception:
                logger.error(
                    "request_failed",
                    method=request.method,
                    path=request.url.path,
                    elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
                )
                raise

            elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
            log_fn = logger.info if response.status_code < 400 else logger.warning
            log_fn(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                elapsed_ms=elapsed_ms,
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
