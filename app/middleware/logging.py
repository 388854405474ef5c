"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context, and feeds the HTTP
Prometheus metrics.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.routes.metrics import record_request

logger = structlog.get_logger()

UNMATCHED_ENDPOINT = "unmatched"


def endpoint_label(request: Request) -> str:
    """Route template of the matched route, e.g. /api/newsletters/{issue_id}."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ENDPOINT


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: route, method, duration_ms, status to every log. Dependencies
    bind request-scoped fields (the publisher user_id) through structlog
    contextvars; they are cleared at the start of each request.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        # Drop context bound by a previous request on this task
        structlog.contextvars.clear_contextvars()

        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            record_request(request.method, endpoint_label(request), 500, duration)
            request_logger.error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration * 1000, 2),
                error=str(e)
            )
            raise

        duration = time.time() - start_time
        record_request(request.method, endpoint_label(request), response.status_code, duration)

        request_logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )

        return response
