"""
Worker Pool - bounded-concurrency executor for queued SMS jobs.

The pool runs ``concurrency`` slot tasks. Each slot claims one job at a
time from the job store, sends it through the dispatcher and applies the
retry policy, so at most ``concurrency`` jobs are ever in flight. A separate
sweeper task returns stalled jobs to the queue.

Outcomes are returned from ``process_job`` and handed straight to the
outcome recorder by the slot that produced them.
"""

import asyncio

from sms_dispatch.errors import GatewayError, SmsDispatchError, StoreUnavailableError
from sms_dispatch.infrastructure.observability.logging import get_logger
from sms_dispatch.models.domain.sms_domain import JobOutcome, JobState, SmsJob, StalledSweep
from sms_dispatch.services.job_store import RedisJobStore
from sms_dispatch.services.outcome_recorder import OutcomeRecorder
from sms_dispatch.services.sms_gateway import SmsDispatcher
from sms_dispatch.utils.sms_utils import normalize_message, normalize_recipient
from sms_dispatch.utils.time_utils import Clock, ms_to_iso, now_ms

logger = get_logger(__name__)


class WorkerPool:
    """
    Pulls jobs from the store and executes them with retry and backoff.

    Retry policy:
        Errors flagged non-retryable (validation, admission, invalid number
        reported by the gateway) fail the job immediately. Anything else is
        retried while ``attempts < max_attempts`` with a delay of
        ``backoff_delay_ms * 2 ** (attempts - 1)`` (or a flat delay when
        ``backoff_type == "fixed"``).
    """

    def __init__(
        self,
        job_store: RedisJobStore,
        dispatcher: SmsDispatcher,
        recorder: OutcomeRecorder,
        concurrency: int = 5,
        backoff_type: str = "exponential",
        backoff_delay_ms: int = 2000,
        poll_interval_ms: int = 500,
        stalled_interval_ms: int = 30_000,
        dispatch_timeout_ms: int = 20_000,
        clock: Clock = now_ms,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.job_store = job_store
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.concurrency = concurrency
        self.backoff_type = backoff_type
        self.backoff_delay_ms = backoff_delay_ms
        self.poll_interval_ms = poll_interval_ms
        self.stalled_interval_ms = stalled_interval_ms
        self.dispatch_timeout_ms = dispatch_timeout_ms
        self.clock = clock

        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._in_flight = 0
        self._stop_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._resume_event.set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return not self._resume_event.is_set()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def compute_backoff(self, attempts: int) -> int:
        """Delay in ms before the next attempt, given the attempts made so far."""
        if self.backoff_type == "fixed":
            return self.backoff_delay_ms
        return self.backoff_delay_ms * 2 ** max(0, attempts - 1)

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._slot_loop(slot), name=f"sms-worker-{slot}")
            for slot in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._stall_sweep_loop(), name="sms-stall-sweeper"))

        logger.info(
            "Worker pool started",
            concurrency=self.concurrency,
            backoff_type=self.backoff_type,
            backoff_delay_ms=self.backoff_delay_ms,
            stalled_interval_ms=self.stalled_interval_ms,
        )

    async def pause(self) -> None:
        """Stop claiming new jobs. Jobs already in flight run to completion."""
        self._resume_event.clear()
        logger.info("Worker pool paused", in_flight=self._in_flight)

    async def resume(self) -> None:
        self._resume_event.set()
        logger.info("Worker pool resumed")

    async def close(self, timeout: float = 30.0) -> None:
        """Stop the pool, giving in-flight jobs up to ``timeout`` seconds to finish."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        self._resume_event.set()  # wake paused slots so they can exit

        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Worker pool closed with unfinished jobs", unfinished=len(pending))

        self._tasks = []
        logger.info("Worker pool closed")

    def stats(self) -> dict:
        return {
            "running": self._running,
            "paused": self.paused,
            "concurrency": self.concurrency,
            "in_flight": self._in_flight,
        }

    async def _idle(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if the pool is stopping."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except TimeoutError:
            return False

    async def _slot_loop(self, slot: int) -> None:
        poll_seconds = self.poll_interval_ms / 1000

        while self._running:
            await self._resume_event.wait()
            if not self._running:
                break

            try:
                job = await self.job_store.claim_next()
            except StoreUnavailableError as e:
                logger.warning("Job claim failed, backing off", slot=slot, error=str(e))
                await self._idle(poll_seconds)
                continue
            except Exception as e:
                logger.error("Unexpected error claiming job", slot=slot, error=str(e), exc_info=True)
                await self._idle(poll_seconds)
                continue

            if job is None:
                await self._idle(poll_seconds)
                continue

            self._in_flight += 1
            try:
                outcome = await self.process_job(job)
            except StoreUnavailableError as e:
                # Transition not applied; the stall sweep will pick the job up again
                logger.error(
                    "Job transition failed, leaving job for stall recovery",
                    slot=slot,
                    job_id=job.id,
                    error=str(e),
                )
                continue
            except Exception as e:
                logger.error(
                    "Unexpected error processing job",
                    slot=slot,
                    job_id=job.id,
                    error=str(e),
                    exc_info=True,
                )
                outcome = await self._fail_unexpected(job, e)
                if outcome is None:
                    continue
            finally:
                self._in_flight -= 1

            await self.record_outcome(outcome)

    async def _fail_unexpected(self, job: SmsJob, error: Exception) -> JobOutcome | None:
        """
        Move a job whose processing raised to ``failed`` without retrying.

        The send may already have gone out, so re-queueing could deliver twice.
        Returns None when even the failure could not be written.
        """
        started = job.claimed_at or self.clock()
        message = f"Non-retryable error: Unexpected worker error: {type(error).__name__}: {error}"
        try:
            applied = await self.job_store.fail(job, message)
        except Exception as e:
            logger.error("Could not mark job failed", job_id=job.id, error=str(e))
            return None
        return self._outcome(job, JobState.FAILED, started, error=message, claim_lost=not applied)

    async def process_job(self, job: SmsJob) -> JobOutcome:
        """
        Execute one claimed job and apply its state transition.

        Args:
            job: Job returned by ``claim_next`` (already counted as an attempt)

        Returns:
            JobOutcome describing the transition that was applied

        Raises:
            StoreUnavailableError: If the transition could not be written
        """
        started = self.clock()
        log = logger.bind(job_id=job.id, attempt=job.attempts, max_attempts=job.max_attempts)

        try:
            recipient = normalize_recipient(job.recipient)
            body = normalize_message(job.body)
            result = await asyncio.wait_for(
                self.dispatcher.send(recipient, body),
                timeout=self.dispatch_timeout_ms / 1000,
            )
        except TimeoutError:
            error = GatewayError(f"Dispatch timed out after {self.dispatch_timeout_ms}ms")
        except SmsDispatchError as e:
            error = e
        except Exception as e:
            error = GatewayError(f"Unexpected dispatch error: {type(e).__name__}: {e}")
        else:
            processing_time = self.clock() - started
            applied = await self.job_store.complete(
                job,
                {
                    "message_id": result.message_id,
                    "status": result.status,
                    "cost": result.cost,
                    "processing_time_ms": processing_time,
                    "processed_at": ms_to_iso(self.clock()),
                    "metadata": job.metadata,
                },
            )
            log.info("SMS sent", message_id=result.message_id, processing_time_ms=processing_time)
            return self._outcome(job, JobState.COMPLETED, started, result=result, claim_lost=not applied)

        return await self._handle_failure(job, error, started, log)

    async def _handle_failure(self, job: SmsJob, error: SmsDispatchError, started: int, log) -> JobOutcome:
        message = str(error)

        if error.retryable and job.attempts < job.max_attempts:
            delay = self.compute_backoff(job.attempts)
            applied = await self.job_store.retry_later(job, self.clock() + delay, message)
            log.warning("SMS send failed, retry scheduled", error=message, retry_delay_ms=delay)
            return self._outcome(
                job, JobState.DELAYED, started, error=message, retry_delay_ms=delay, claim_lost=not applied
            )

        if not error.retryable:
            message = f"Non-retryable error: {message}"

        applied = await self.job_store.fail(job, message)
        log.error("SMS job failed", error=message, error_type=type(error).__name__)
        return self._outcome(job, JobState.FAILED, started, error=message, claim_lost=not applied)

    def _outcome(self, job: SmsJob, state: JobState, started: int, **fields) -> JobOutcome:
        return JobOutcome(
            job_id=job.id,
            state=state,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            recipient=job.recipient,
            body=job.body,
            processing_time_ms=self.clock() - started,
            **fields,
        )

    async def record_outcome(self, outcome: JobOutcome) -> None:
        if outcome.claim_lost:
            return
        await self.recorder.record(outcome)
        if outcome.terminal:
            await self.recorder.record_job_metric(outcome)

    async def sweep_stalled(self) -> StalledSweep:
        """Run one stall-recovery pass and record the outcome of every job it failed."""
        sweep = await self.job_store.recover_stalled()

        for job_id in sweep.failed:
            job = await self.job_store.get_job(job_id)
            if job is None:
                continue  # already evicted by retention
            outcome = JobOutcome(
                job_id=job.id,
                state=JobState.FAILED,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                recipient=job.recipient,
                body=job.body,
                processing_time_ms=(job.finished_at or 0) - (job.claimed_at or 0),
                error=job.error,
            )
            await self.recorder.record(outcome)
            await self.recorder.record_job_metric(outcome)
        return sweep

    async def _stall_sweep_loop(self) -> None:
        interval = self.stalled_interval_ms / 1000
        while self._running:
            if await self._idle(interval):
                break
            try:
                await self.sweep_stalled()
            except StoreUnavailableError as e:
                logger.warning("Stall sweep failed", error=str(e))
            except Exception as e:
                logger.error("Unexpected error in stall sweep", error=str(e), exc_info=True)
