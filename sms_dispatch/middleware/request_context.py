"""
RequestContext Middleware - Adds request tracking to all requests.

Every request gets a request_id (echoed back as X-Request-ID) that is bound
into the structlog context, so every log line emitted while handling the
request carries it.

Request.state Namespace Convention:
- request_id, ip_address: Set by RequestContextMiddleware
- rate_limit_info: Set by the SMS send route
"""

import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from sms_dispatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign a request id and client address to request.state."""

    async def dispatch(self, request: Request, call_next):
        # Honour an upstream id so traces line up across services
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.ip_address = request.client.host if request.client else None

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

        response.headers["X-Request-ID"] = request_id
        return response
