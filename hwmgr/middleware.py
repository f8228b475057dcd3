"""Request tracing for the hwmgr API."""

import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from hwmgr.logging import get_logger, request_context
from hwmgr.metrics import record_request

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


def _route_path(request: Request) -> str:
    """The matched route template, so pool names don't become metric labels."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Binds request ids to the log context and records HTTP metrics.

    The caller's correlation id is echoed back, or a new one is issued.
    Requests to the metrics endpoints are not counted.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = _short_id()
        correlation_id = request.headers.get(CORRELATION_HEADER) or _short_id()

        with request_context(
            request_id,
            correlation_id,
            method=request.method,
            path=request.url.path,
        ):
            start_time = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    "request_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
                raise

            duration = time.perf_counter() - start_time
            log = logger.warning if response.status_code >= 500 else logger.info
            log(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
            )
            if not request.url.path.startswith("/metrics"):
                record_request(request.method, _route_path(request), response.status_code, duration)

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
