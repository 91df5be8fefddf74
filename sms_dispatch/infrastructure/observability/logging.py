"""
Structured logging for the SMS dispatch service.

Every log line is a JSON object with ``event``, ``level``, ``logger`` and
``timestamp`` plus the keyword fields passed at the call site. Anything bound
with ``structlog.contextvars`` (the request id from RequestContextMiddleware)
is merged in automatically. Set ``json_logs=False`` for human-readable
console output during local development.
"""

import logging
import sys

import structlog
from structlog.stdlib import LoggerFactory

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog on top of stdlib logging. Call once per process.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render JSON (production) or coloured key=value lines
    """
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_health_check(service: str, healthy: bool, latency_ms: float, error: str = None):
    """Log a dependency check from the readiness endpoint."""
    logger = get_logger("health")

    if healthy:
        logger.debug("Health check passed", service=service, latency_ms=latency_ms)
    else:
        logger.error("Health check failed", service=service, latency_ms=latency_ms, error=error)


def log_job_transition(job_id: str, state: str, **fields):
    """Log a job leaving ``active``; failures are raised to warning level."""
    logger = get_logger("sms_dispatch.jobs")

    if state == "completed":
        logger.info("Job transition", job_id=job_id, state=state, **fields)
    else:
        logger.warning("Job transition", job_id=job_id, state=state, **fields)


def log_request(method: str, path: str, status_code: int, duration_ms: float, request_id: str = None):
    """Access log line for one HTTP request."""
    logger = get_logger("http")

    log_data = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }

    if request_id:
        log_data["request_id"] = request_id

    if status_code >= 500:
        logger.error("HTTP request failed", **log_data)
    elif status_code >= 400:
        logger.warning("HTTP request rejected", **log_data)
    else:
        logger.info("HTTP request completed", **log_data)
