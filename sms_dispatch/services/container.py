"""
Service container - explicit construction and lifecycle of the dispatch engine.

Nothing in the engine is a module-level singleton. The FastAPI lifespan and
the standalone worker both build a ``ServiceContainer`` from settings, call
``initialize()`` on startup and ``close()`` on shutdown.
"""

from sms_dispatch.config import Settings
from sms_dispatch.infrastructure.observability.logging import get_logger
from sms_dispatch.services.job_store import RedisJobStore
from sms_dispatch.services.outcome_recorder import OutcomeRecorder
from sms_dispatch.services.rate_limiter import SlidingWindowRateLimiter
from sms_dispatch.services.redis_client import RedisClient
from sms_dispatch.services.sms_gateway import SmsDispatcher, build_dispatcher
from sms_dispatch.services.sms_service import SmsService
from sms_dispatch.services.worker_pool import WorkerPool
from sms_dispatch.utils.time_utils import Clock, now_ms

logger = get_logger(__name__)


class ServiceContainer:
    """Owns the Redis connection, gateway client and every engine component."""

    def __init__(
        self,
        settings: Settings,
        redis_client: RedisClient | None = None,
        dispatcher: SmsDispatcher | None = None,
        clock: Clock = now_ms,
    ):
        self.settings = settings
        self.redis = redis_client or RedisClient(
            settings.redis_url(), max_connections=settings.REDIS_MAX_CONNECTIONS
        )
        self.dispatcher = dispatcher or build_dispatcher(settings)
        prefix = settings.SMS_QUEUE_NAME

        self.rate_limiter = SlidingWindowRateLimiter(
            self.redis,
            key_prefix=prefix,
            clock=clock,
            **settings.get_rate_limits(),
        )
        self.job_store = RedisJobStore(
            self.redis,
            key_prefix=prefix,
            max_attempts=settings.MAX_RETRY_ATTEMPTS,
            keep_completed=settings.QUEUE_KEEP_COMPLETED,
            keep_failed=settings.QUEUE_KEEP_FAILED,
            stalled_interval_ms=settings.STALLED_INTERVAL_MS,
            max_stalled_count=settings.MAX_STALLED_COUNT,
            clock=clock,
        )
        self.recorder = OutcomeRecorder(
            self.redis,
            key_prefix=prefix,
            max_log_entries=settings.DELIVERY_LOG_MAX_ENTRIES,
            max_metric_entries=settings.JOB_METRICS_MAX_ENTRIES,
            retention_days=settings.STATS_RETENTION_DAYS,
            clock=clock,
        )
        self.worker_pool = WorkerPool(
            self.job_store,
            self.dispatcher,
            self.recorder,
            concurrency=settings.WORKER_CONCURRENCY,
            backoff_type=settings.RETRY_BACKOFF_TYPE,
            backoff_delay_ms=settings.RETRY_DELAY_MS,
            poll_interval_ms=settings.WORKER_POLL_INTERVAL_MS,
            stalled_interval_ms=settings.STALLED_INTERVAL_MS,
            dispatch_timeout_ms=settings.DISPATCH_TIMEOUT_MS,
            clock=clock,
        )
        self.sms_service = SmsService(
            self.rate_limiter,
            self.job_store,
            self.recorder,
            worker_pool=self.worker_pool,
            length_warning=settings.SMS_LENGTH_WARNING,
        )

    async def initialize(self, start_worker: bool | None = None) -> None:
        """
        Connect to Redis and optionally start the worker pool.

        Raises:
            RuntimeError: If Redis is unreachable (fatal at startup)
        """
        if self.settings.DISPATCH_TIMEOUT_MS >= self.settings.STALLED_INTERVAL_MS:
            logger.warning(
                "Dispatch timeout is not below the stalled interval, slow sends may be recovered twice",
                dispatch_timeout_ms=self.settings.DISPATCH_TIMEOUT_MS,
                stalled_interval_ms=self.settings.STALLED_INTERVAL_MS,
            )

        await self.redis.initialize()

        if start_worker is None:
            start_worker = self.settings.WORKER_ENABLED
        if start_worker:
            await self.worker_pool.start()

        logger.info("Dispatch services initialized", worker_started=start_worker)

    async def close(self) -> None:
        """Shut down in reverse order: workers, gateway client, Redis."""
        errors = []

        try:
            await self.worker_pool.close()
        except Exception as e:
            logger.error("Error closing worker pool", error=str(e))
            errors.append(f"Worker pool: {e}")

        try:
            await self.dispatcher.close()
        except Exception as e:
            logger.error("Error closing SMS gateway client", error=str(e))
            errors.append(f"Gateway: {e}")

        await self.redis.close()

        if errors:
            logger.warning("Some services had shutdown errors", errors=errors)
        else:
            logger.info("All dispatch services closed")
