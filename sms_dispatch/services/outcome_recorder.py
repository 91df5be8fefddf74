"""
Outcome Recorder - delivery log and daily metrics derived from job outcomes.

Two streams are kept:
- Delivery log: one entry per send attempt (success or failure), newest
  first, capped. Attempt outcomes also feed the per-day success/failure
  counters behind ``query_daily_stats``.
- Job metrics: one sample per terminal job transition, capped, with their
  own per-day completed/failed counters.

Recording never raises. A store outage costs us log lines, never a job
outcome.
"""

import json
from typing import Any

from sms_dispatch.infrastructure.observability.logging import get_logger
from sms_dispatch.models.domain.sms_domain import JobOutcome
from sms_dispatch.services.redis_client import RedisClient
from sms_dispatch.utils.sms_utils import mask_recipient, message_preview
from sms_dispatch.utils.time_utils import Clock, ms_to_date, ms_to_iso, now_ms

logger = get_logger(__name__)

SECONDS_PER_DAY = 86_400


class OutcomeRecorder:
    """Append-only delivery log and rolling daily counters."""

    def __init__(
        self,
        redis_client: RedisClient,
        key_prefix: str = "sms-queue",
        max_log_entries: int = 1000,
        max_metric_entries: int = 1000,
        retention_days: int = 7,
        clock: Clock = now_ms,
    ):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.max_log_entries = max_log_entries
        self.max_metric_entries = max_metric_entries
        self.retention_days = retention_days
        self.clock = clock

    @property
    def _logs_key(self) -> str:
        return f"{self.key_prefix}:delivery_logs"

    @property
    def _metrics_key(self) -> str:
        return f"{self.key_prefix}:job_metrics"

    def _stats_key(self, date: str, status: str) -> str:
        return f"{self.key_prefix}:stats:{date}:{status}"

    def _metric_counter_key(self, date: str, status: str) -> str:
        return f"{self.key_prefix}:job_metrics:{date}:{status}"

    @property
    def _retention_seconds(self) -> int:
        return SECONDS_PER_DAY * self.retention_days

    def _build_log_entry(self, outcome: JobOutcome, now: int) -> dict[str, Any]:
        status = "success" if outcome.success else "failed"
        return {
            "timestamp": ms_to_iso(now),
            "job_id": outcome.job_id,
            "to": mask_recipient(outcome.recipient),
            "message": message_preview(outcome.body),
            "status": status,
            "attempt": outcome.attempt,
            "api_response": outcome.result.raw if outcome.result else None,
            "error": outcome.error,
        }

    async def record(self, outcome: JobOutcome) -> bool:
        """
        Append a delivery log entry for one attempt and bump the day counter.

        Returns:
            bool: False if the store write failed (already logged)
        """
        now = self.clock()
        entry = self._build_log_entry(outcome, now)
        counter_key = self._stats_key(ms_to_date(now), entry["status"])

        try:
            async with self.redis.client.pipeline(transaction=True) as pipe:
                pipe.lpush(self._logs_key, json.dumps(entry))
                pipe.ltrim(self._logs_key, 0, self.max_log_entries - 1)
                pipe.incr(counter_key)
                pipe.expire(counter_key, self._retention_seconds)
                await pipe.execute()
            return True
        except Exception as e:
            logger.error(
                "Failed to log SMS delivery",
                job_id=outcome.job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def record_job_metric(self, outcome: JobOutcome) -> bool:
        """Store a MetricSample for a job that reached a terminal state."""
        now = self.clock()
        status = str(outcome.state)
        sample = {
            "job_id": outcome.job_id,
            "status": status,
            "timestamp": ms_to_iso(now),
            "processing_time_ms": outcome.processing_time_ms,
            "attempts": outcome.attempt,
            "error": outcome.error,
        }
        counter_key = self._metric_counter_key(ms_to_date(now), status)

        try:
            async with self.redis.client.pipeline(transaction=True) as pipe:
                pipe.lpush(self._metrics_key, json.dumps(sample))
                pipe.ltrim(self._metrics_key, 0, self.max_metric_entries - 1)
                pipe.incr(counter_key)
                pipe.expire(counter_key, self._retention_seconds)
                await pipe.execute()
            return True
        except Exception as e:
            logger.error("Failed to update job metrics", job_id=outcome.job_id, error=str(e))
            return False

    async def query_logs(self, limit: int = 50, offset: int = 0) -> list[dict]:
        try:
            raw = await self.redis.client.lrange(self._logs_key, offset, offset + limit - 1)
            return [json.loads(item) for item in raw]
        except Exception as e:
            logger.error("Failed to retrieve delivery logs", error=str(e))
            return []

    async def query_job_metrics(self, limit: int = 50, offset: int = 0) -> list[dict]:
        try:
            raw = await self.redis.client.lrange(self._metrics_key, offset, offset + limit - 1)
            return [json.loads(item) for item in raw]
        except Exception as e:
            logger.error("Failed to get job metrics", error=str(e))
            return []

    async def query_daily_stats(self, date: str | None = None) -> dict:
        """
        Attempt totals for one UTC calendar day.

        Args:
            date: YYYY-MM-DD, defaults to today

        Returns:
            {"date", "total", "successful", "failed"}
        """
        date = date or ms_to_date(self.clock())
        try:
            successful, failed = await self.redis.client.mget(
                self._stats_key(date, "success"), self._stats_key(date, "failed")
            )
        except Exception as e:
            logger.error("Failed to get daily stats", date=date, error=str(e))
            successful, failed = None, None

        successful = int(successful or 0)
        failed = int(failed or 0)
        return {"date": date, "total": successful + failed, "successful": successful, "failed": failed}
