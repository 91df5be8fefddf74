"""
Rate Limit Headers Middleware - Add rate limit info to responses.

Headers added:
- X-RateLimit-Limit: Maximum requests allowed in the window
- X-RateLimit-Remaining: Remaining requests in current window
- X-RateLimit-Reset: Epoch seconds when the caller may retry (if rate limited)
- Retry-After: Seconds to wait before retrying (if rate limited)

Usage:
    from sms_dispatch.middleware.rate_limit_headers import RateLimitHeadersMiddleware

    app.add_middleware(RateLimitHeadersMiddleware)

Design:
- Reads rate_limit_info from request.state (set by the SMS send route)
- Adds headers to all responses (including 429 errors)
- Graceful if rate_limit_info is missing (no headers added)
"""

import time

from starlette.middleware.base import BaseHTTPMiddleware


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add rate limit headers to responses of admission-checked requests.

    Expects request.state.rate_limit_info as a dict with ``allowed``,
    ``limit``, ``remaining`` and, when rejected, ``retry_after`` (seconds).
    """

    async def dispatch(self, request, call_next):
        response = await call_next(request)

        rate_limit_info = getattr(request.state, "rate_limit_info", None)
        if not rate_limit_info:
            return response

        if "limit" in rate_limit_info:
            response.headers["X-RateLimit-Limit"] = str(rate_limit_info["limit"])

        if "remaining" in rate_limit_info:
            response.headers["X-RateLimit-Remaining"] = str(rate_limit_info["remaining"])

        if not rate_limit_info.get("allowed", True) and "retry_after" in rate_limit_info:
            retry_after = rate_limit_info["retry_after"]
            response.headers["Retry-After"] = str(retry_after)
            response.headers["X-RateLimit-Reset"] = str(int(time.time()) + retry_after)

        return response
