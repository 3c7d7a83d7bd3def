"""
Request ID middleware for correlation tracking.

Every HTTP call gets an id (the caller's ``X-Request-ID`` or a fresh
UUID).  It is echoed in the response headers and stored in
``request_id_context`` so log records from the engine carry it.
"""
import logging
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from facet_core.exceptions import FacetException
from facet_core.logging_setup import request_id_context

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a correlation id to every request and time it."""

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        token = request_id_context.set(request_id)
        request.state.request_id = request_id
        start_time = time.time()

        logger.debug(
            "Request started",
            extra={"method": request.method, "path": request.url.path},
        )
        try:
            response = await call_next(request)
        except FacetException as e:
            logger.error(
                "Request failed: %s",
                e.message,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round((time.time() - start_time) * 1000, 2),
                    "error_id": e.context.error_id,
                },
                exc_info=True,
            )
            raise
        finally:
            request_id_context.reset(token)

        response.headers[self.header_name] = request_id
        logger.info(
            "Request completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.time() - start_time) * 1000, 2),
            },
        )
        return response


def get_request_id() -> Optional[str]:
    """Current request id, or ``None`` outside a request."""
    return request_id_context.get()
