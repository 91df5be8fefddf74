"""
Standalone background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and runs it against a freshly built service container. Use this to
run the worker pool in its own process and set WORKER_ENABLED=false on the
API processes.
"""

import asyncio
import os
import signal
import sys
from collections.abc import Awaitable, Callable

from sms_dispatch.config import settings
from sms_dispatch.infrastructure.observability.logging import get_logger, setup_logging
from sms_dispatch.services.container import ServiceContainer

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


def _install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops don't support signal handlers
            pass


async def run_sms_dispatch() -> None:
    """Run the worker pool until SIGINT/SIGTERM, then drain in-flight jobs."""
    container = ServiceContainer(settings)
    stop = asyncio.Event()
    _install_stop_handlers(stop)

    await container.initialize(start_worker=True)
    try:
        await stop.wait()
        logger.info("Shutdown signal received, draining worker pool")
    finally:
        await container.close()


async def run_stalled_sweep() -> None:
    """One stall-recovery pass, for cron-style deployments without a long-lived pool."""
    container = ServiceContainer(settings)
    await container.initialize(start_worker=False)
    try:
        sweep = await container.worker_pool.sweep_stalled()
        logger.info(
            "Stall sweep finished",
            recovered=len(sweep.recovered),
            failed=len(sweep.failed),
        )
    finally:
        await container.close()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "sms_dispatch": run_sms_dispatch,
    "stalled_sweep": run_stalled_sweep,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "sms_dispatch").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL, json_logs=not settings.debug)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
