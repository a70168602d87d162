"""
RequestContext Middleware - Adds request tracking to all requests.

Adds to request.state:
- request_id: taken from an incoming X-Request-ID header or generated
- ip_address: Client IP address
- user_agent: Client user agent string

request_id is also bound to structlog contextvars so every log line emitted
while handling the request carries it.
"""

import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Add request context to all incoming HTTP requests."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.ip_address = request.client.host if request.client else None
        request.state.user_agent = request.headers.get("user-agent")

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.debug(
            "Request started",
            method=request.method,
            path=request.url.path,
            ip_address=request.state.ip_address,
        )

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        # Client-side tracing
        response.headers["X-Request-ID"] = request_id
        return response
