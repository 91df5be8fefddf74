"""
CORS Middleware - cross-origin access for browser dashboards.

By default every origin is allowed (``CORS_ALLOWED_ORIGINS="*"``), which
suits an internal dispatch API called from admin tools. Set a comma
separated list of origins to lock it down.

Headers added:
- Access-Control-Allow-Origin: ``*`` or the matching request origin
- Access-Control-Allow-Methods / Allow-Headers / Max-Age on preflight
- Access-Control-Allow-Credentials when enabled for explicit origins
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from sms_dispatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

WILDCARD = "*"


class CORSMiddleware(BaseHTTPMiddleware):
    """Answers OPTIONS preflight requests and adds CORS headers to responses."""

    def __init__(
        self,
        app,
        allowed_origins: list[str] | None = None,
        allow_credentials: bool = False,
        allow_methods: list[str] | None = None,
        allow_headers: list[str] | None = None,
        max_age: int = 600,
    ):
        super().__init__(app)
        self.allowed_origins = allowed_origins if allowed_origins is not None else [WILDCARD]
        self.allow_all = WILDCARD in self.allowed_origins
        # Browsers refuse credentials with a wildcard origin
        self.allow_credentials = allow_credentials and not self.allow_all
        self.allow_methods = allow_methods or ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
        self.allow_headers = allow_headers or [
            "Origin",
            "Content-Type",
            "Accept",
            "Authorization",
            "X-Request-ID",
            "X-Requested-With",
        ]
        self.max_age = max_age

        logger.info(
            "CORS middleware initialized",
            allowed_origins=self.allowed_origins,
            allow_credentials=self.allow_credentials,
        )

    def _allowed_origin(self, origin: str | None) -> str | None:
        """Value for Access-Control-Allow-Origin, or None when the origin is refused."""
        if self.allow_all:
            return WILDCARD
        if origin and origin in self.allowed_origins:
            return origin
        return None

    async def dispatch(self, request, call_next):
        origin = request.headers.get("origin")
        allow_origin = self._allowed_origin(origin)

        if request.method == "OPTIONS":
            if allow_origin is None:
                logger.warning("CORS preflight rejected - origin not allowed", origin=origin)
                return Response(status_code=403, content="Origin not allowed")
            return self._preflight_response(allow_origin)

        response = await call_next(request)

        if allow_origin is not None:
            response.headers["Access-Control-Allow-Origin"] = allow_origin
            if allow_origin != WILDCARD:
                response.headers["Vary"] = "Origin"
            if self.allow_credentials:
                response.headers["Access-Control-Allow-Credentials"] = "true"
        elif origin:
            logger.warning("CORS request from disallowed origin", origin=origin, path=request.url.path)

        return response

    def _preflight_response(self, allow_origin: str) -> Response:
        headers = {
            "Access-Control-Allow-Origin": allow_origin,
            "Access-Control-Allow-Methods": ", ".join(self.allow_methods),
            "Access-Control-Allow-Headers": ", ".join(self.allow_headers),
            "Access-Control-Max-Age": str(self.max_age),
        }
        if allow_origin != WILDCARD:
            headers["Vary"] = "Origin"
        if self.allow_credentials:
            headers["Access-Control-Allow-Credentials"] = "true"

        return Response(status_code=204, headers=headers)
