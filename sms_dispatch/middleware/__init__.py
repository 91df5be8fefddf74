"""
Middleware components for request processing.

This package contains middleware for:
- CORS headers and preflight handling
- Request context (request ID bound into the log context)
- Rate limit response headers
"""

from sms_dispatch.middleware.cors import CORSMiddleware
from sms_dispatch.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from sms_dispatch.middleware.request_context import RequestContextMiddleware

__all__ = [
    "CORSMiddleware",
    "RequestContextMiddleware",
    "RateLimitHeadersMiddleware",
]
