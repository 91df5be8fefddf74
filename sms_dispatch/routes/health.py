"""
Health check endpoints.
"""

import time

from fastapi import APIRouter, Request

from sms_dispatch.infrastructure.observability.logging import log_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "sms-dispatch"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check: Redis connectivity, queue counts and worker pool state.
    """
    checks = {}
    overall_ok = True

    container = getattr(request.app.state, "container", None)
    if container is None:
        return {
            "overall_ok": False,
            "checks": {"services": {"ok": False, "error": "Dispatch services not initialized"}},
            "timestamp": time.time(),
        }

    # 1) Redis health check
    t0 = time.time()
    try:
        redis_ok = await container.redis.ping()
        checks["redis"] = {
            "ok": bool(redis_ok),
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = overall_ok and bool(redis_ok)
        log_health_check("redis", bool(redis_ok), checks["redis"]["latency_ms"])
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 2) Queue counts
    t0 = time.time()
    try:
        counts = await container.job_store.count_by_state()
        checks["queue"] = {
            "ok": True,
            "latency_ms": round((time.time() - t0) * 1000, 1),
            **counts.to_dict(),
        }
    except Exception as e:
        checks["queue"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 3) Worker pool (informational when the pool runs in a separate process)
    worker = container.worker_pool.stats()
    worker_expected = container.settings.WORKER_ENABLED
    worker_ok = worker["running"] or not worker_expected
    checks["worker"] = {"ok": worker_ok, "expected": worker_expected, **worker}
    overall_ok = overall_ok and worker_ok

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
