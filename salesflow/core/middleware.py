"""Middleware for request tracing and error handling."""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    AutomationEngineError,
    ConfigurationError,
    EntityNotFoundError,
    FlowValidationError,
    NodeConfigurationError,
    StorageError,
    TransientError,
    create_error_response,
)
from .logging import get_logger, logging_context

logger = get_logger(__name__)


def get_status_code_for_error(error: AutomationEngineError) -> int:
    """Map an engine error to its HTTP status code."""
    if isinstance(error, (FlowValidationError, NodeConfigurationError)):
        return 400
    if isinstance(error, EntityNotFoundError):
        return 404
    if isinstance(error, TransientError):
        return 503
    if isinstance(error, (StorageError, ConfigurationError)):
        return 500
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an ID and turns uncaught errors into JSON responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        start_time = time.time()

        request_fields = {"request_id": request_id, "method": request.method, "path": request.url.path}

        try:
            response = await call_next(request)
            duration = time.time() - start_time
            with logging_context(**request_fields):
                logger.info(
                    f"{request.method} {request.url.path} - "
                    f"Status: {response.status_code} - Duration: {duration:.3f}s"
                )
            response.headers["X-Request-ID"] = request_id
            return response

        except AutomationEngineError as e:
            with logging_context(**request_fields):
                logger.warning(f"{request.method} {request.url.path} failed: {e.error_code}: {e.message}")
            return JSONResponse(
                status_code=get_status_code_for_error(e),
                content=create_error_response(e),
                headers={"X-Request-ID": request_id}
            )

        except Exception as e:
            with logging_context(**request_fields):
                logger.error(f"Unexpected error: {request.method} {request.url.path} - {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": datetime.now(timezone.utc).isoformat()
                    },
                    "request_id": request_id
                },
                headers={"X-Request-ID": request_id}
            )
