"""
SMS Service - submission and query facade over the dispatch engine.

Submitting a message runs three steps in order: validate the request,
evaluate admission for the caller identifier, then enqueue. A rejected
validation never consumes rate-limit capacity.
"""

import json
from typing import Any

from sms_dispatch.errors import AdmissionRejectedError, SmsDispatchError, ValidationError
from sms_dispatch.infrastructure.observability.logging import get_logger
from sms_dispatch.models.domain.sms_domain import (
    BulkItemResult,
    EnqueuedJob,
    EnqueueOptions,
    RateLimitDecision,
    SmsJob,
)
from sms_dispatch.services.job_store import MAX_PRIORITY, RedisJobStore
from sms_dispatch.services.outcome_recorder import OutcomeRecorder
from sms_dispatch.services.rate_limiter import SlidingWindowRateLimiter
from sms_dispatch.services.worker_pool import WorkerPool
from sms_dispatch.utils.sms_utils import normalize_message, normalize_recipient

logger = get_logger(__name__)

DEFAULT_IDENTIFIER = "api"
DEFAULT_BULK_IDENTIFIER = "bulk-api"


class SmsService:
    """Entry point used by the HTTP routes."""

    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        job_store: RedisJobStore,
        recorder: OutcomeRecorder,
        worker_pool: WorkerPool | None = None,
        length_warning: int = 160,
    ):
        self.rate_limiter = rate_limiter
        self.job_store = job_store
        self.recorder = recorder
        self.worker_pool = worker_pool
        self.length_warning = length_warning

    def _validate(
        self, to: str | None, message: str | None, priority: int, metadata: dict[str, Any] | None = None
    ) -> tuple[str, str]:
        recipient = normalize_recipient(to)
        body = normalize_message(message)
        if not 0 <= priority <= MAX_PRIORITY:
            raise ValidationError(f"Priority must be between 0 and {MAX_PRIORITY}", field="priority")
        try:
            json.dumps(metadata or {})
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Metadata must be JSON serializable: {e}", field="metadata") from e

        if len(body) > self.length_warning:
            logger.warning(
                "Message exceeds standard SMS length",
                length=len(body),
                limit=self.length_warning,
            )
        return recipient, body

    async def submit(
        self,
        to: str | None,
        message: str | None,
        identifier: str | None = None,
        priority: int = 0,
        metadata: dict[str, Any] | None = None,
        delay_ms: int = 0,
    ) -> tuple[EnqueuedJob, RateLimitDecision]:
        """
        Validate, admit and enqueue one message.

        Raises:
            ValidationError: Malformed recipient, empty body or bad priority
            AdmissionRejectedError: Identifier is over its window or blocked
            StoreUnavailableError: Job could not be persisted
        """
        identifier = identifier or DEFAULT_IDENTIFIER
        recipient, body = self._validate(to, message, priority, metadata)

        decision = await self.rate_limiter.evaluate(identifier)
        if not decision.allowed:
            raise AdmissionRejectedError(
                f"Rate limit exceeded. Blocked for {decision.retry_after_seconds()} seconds",
                decision=decision,
            )

        enqueued = await self.job_store.enqueue(
            recipient,
            body,
            identifier,
            metadata=metadata or {},
            options=EnqueueOptions(priority=priority, delay_ms=delay_ms),
        )
        return enqueued, decision

    async def submit_bulk(
        self,
        messages: list[dict[str, Any]],
        identifier: str | None = None,
        priority: int = 0,
    ) -> list[BulkItemResult]:
        """
        Submit each message independently.

        One item failing validation, admission or enqueue is recorded in that
        item's result and never affects the others.
        """
        identifier = identifier or DEFAULT_BULK_IDENTIFIER
        results: list[BulkItemResult] = []

        for index, item in enumerate(messages):
            to = item.get("to")
            try:
                enqueued, _ = await self.submit(
                    to,
                    item.get("message"),
                    identifier=identifier,
                    priority=priority,
                    metadata=item.get("metadata"),
                )
            except SmsDispatchError as e:
                results.append(
                    BulkItemResult(
                        index=index,
                        to=to,
                        success=False,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                )
                continue
            except Exception as e:
                logger.error(
                    "Unexpected error submitting bulk item",
                    index=index,
                    identifier=identifier,
                    error=str(e),
                    exc_info=True,
                )
                results.append(
                    BulkItemResult(
                        index=index,
                        to=to,
                        success=False,
                        error=f"Failed to queue SMS: {e}",
                        error_type=type(e).__name__,
                    )
                )
                continue

            results.append(
                BulkItemResult(
                    index=index,
                    to=to,
                    success=True,
                    job_id=enqueued.job_id,
                    queue_position=enqueued.queue_position,
                )
            )

        logger.info(
            "Bulk SMS submission processed",
            identifier=identifier,
            total=len(results),
            successful=sum(1 for r in results if r.success),
        )
        return results

    async def get_job(self, job_id: str) -> SmsJob | None:
        return await self.job_store.get_job(job_id)

    async def get_queue_stats(self, recent_metrics: int = 10) -> dict:
        counts = await self.job_store.count_by_state()
        return {
            "stats": counts.to_dict(),
            "worker": self.worker_pool.stats() if self.worker_pool else None,
            "recent_metrics": await self.recorder.query_job_metrics(recent_metrics),
        }

    async def get_delivery_logs(self, limit: int = 50, offset: int = 0) -> list[dict]:
        return await self.recorder.query_logs(limit, offset)

    async def get_daily_stats(self, date: str | None = None) -> dict:
        return await self.recorder.query_daily_stats(date)

    async def get_rate_limit_status(self, identifier: str) -> RateLimitDecision:
        return await self.rate_limiter.get_status(identifier)

    async def reset_rate_limit(self, identifier: str) -> bool:
        return await self.rate_limiter.reset(identifier)

    async def pause_worker(self) -> bool:
        if not self.worker_pool:
            return False
        await self.worker_pool.pause()
        return True

    async def resume_worker(self) -> bool:
        if not self.worker_pool:
            return False
        await self.worker_pool.resume()
        return True
