"""
FastAPI application: dispatch engine lifecycle, middleware and routers.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sms_dispatch.config import settings
from sms_dispatch.infrastructure.observability.logging import get_logger, log_request, setup_logging
from sms_dispatch.middleware.cors import CORSMiddleware
from sms_dispatch.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from sms_dispatch.middleware.request_context import RequestContextMiddleware
from sms_dispatch.routes import health, queue, rate_limit, sms
from sms_dispatch.services.container import ServiceContainer

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL, json_logs=not settings.debug)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the dispatch engine on startup and tear it down on shutdown."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    container = ServiceContainer(settings)
    try:
        await container.initialize()
    except Exception as e:
        logger.error("Failed to initialize services", error=str(e))
        try:
            await container.close()
        except Exception as cleanup_error:
            logger.error("Error cleaning up services", error=str(cleanup_error))
        raise

    app.state.container = container

    yield

    logger.info("Application shutting down")
    app.state.container = None
    await container.close()


app = FastAPI(
    title="SMS Dispatch Service",
    description="Rate-limited SMS submission with a durable retrying delivery queue",
    version="0.1.0",
    lifespan=lifespan,
)

# Added last runs first: CORS wraps request context, which wraps the rate limit headers
app.add_middleware(RateLimitHeadersMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(CORSMiddleware, allowed_origins=settings.cors_origins())

app.include_router(health.router)
app.include_router(sms.router)
app.include_router(queue.router)
app.include_router(rate_limit.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies as 400, the same as domain validation errors."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "errors": _validation_errors(exc)},
    )


def _validation_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
        request_id=getattr(request.state, "request_id", None),
    )
    return response


@app.get("/")
async def root():
    return {
        "service": "SMS Dispatch Service",
        "version": app.version,
        "endpoints": {
            "send": "POST /api/v1/sms/send",
            "bulk": "POST /api/v1/sms/bulk",
            "status": "GET /api/v1/sms/status/{job_id}",
            "logs": "GET /api/v1/sms/logs",
            "daily_stats": "GET /api/v1/sms/stats/daily",
            "queue_stats": "GET /api/v1/queue/stats",
            "queue_pause": "POST /api/v1/queue/pause",
            "queue_resume": "POST /api/v1/queue/resume",
            "rate_limit_status": "GET /api/v1/rate-limit/{identifier}",
            "rate_limit_reset": "POST /api/v1/rate-limit/{identifier}/reset",
            "health": "GET /healthz",
            "ready": "GET /readyz",
        },
    }


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    main()
