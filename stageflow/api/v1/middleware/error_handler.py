"""Global error-handling middleware.

Catches engine exceptions escaping an endpoint and translates them into
structured JSON error responses with appropriate HTTP status codes.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from stageflow.utils.exceptions import (
    ArtifactStorageError,
    DefinitionNotFoundError,
    OutcomeAlreadyFinalizedError,
    PipelineDefinitionError,
    RunAbortedError,
    RunNotFoundError,
    StageflowError,
)
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)

# Map exception types to HTTP status codes.
_STATUS_MAP: dict[type, int] = {
    DefinitionNotFoundError: 404,
    RunNotFoundError: 404,
    PipelineDefinitionError: 422,
    RunAbortedError: 409,
    OutcomeAlreadyFinalizedError: 409,
    ArtifactStorageError: 500,
}


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Converts :class:`StageflowError` subclasses to JSON error responses.

    Unknown exceptions are logged and returned as HTTP 500.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        try:
            return await call_next(request)

        except StageflowError as exc:
            status_code = _STATUS_MAP.get(type(exc), 500)
            logger.warning(
                "handled_error",
                error_type=type(exc).__name__,
                status_code=status_code,
                detail=str(exc),
                path=request.url.path,
            )
            content = {"error": type(exc).__name__, "detail": str(exc)}
            if isinstance(exc, PipelineDefinitionError):
                content["problems"] = exc.problems
            return JSONResponse(status_code=status_code, content=content)

        except Exception as exc:
            logger.error(
                "unhandled_error",
                error_type=type(exc).__name__,
                detail=str(exc),
                path=request.url.path,
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "detail": "An unexpected error occurred.",
                },
            )
