"""
Tests for the worker pool: retry policy, outcomes and concurrency.
"""

import asyncio
from decimal import Decimal

import pytest

from sms_dispatch.errors import GatewayError
from sms_dispatch.models.domain.sms_domain import DispatchResult, JobState
from sms_dispatch.services.job_store import STALLED_ERROR
from tests.fakes import FakeDispatcher, always_failing

RECIPIENT = "+254711223344"


async def _eventually(check, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not await check():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_exponential_backoff(make_pool, dispatcher):
    pool = make_pool(dispatcher, backoff_delay_ms=2000)

    assert [pool.compute_backoff(n) for n in (1, 2, 3)] == [2000, 4000, 8000]


def test_fixed_backoff(make_pool, dispatcher):
    pool = make_pool(dispatcher, backoff_type="fixed", backoff_delay_ms=1500)

    assert [pool.compute_backoff(n) for n in (1, 2, 3)] == [1500, 1500, 1500]


def test_concurrency_must_be_positive(make_pool, dispatcher):
    with pytest.raises(ValueError):
        make_pool(dispatcher, concurrency=0)


@pytest.mark.asyncio
async def test_successful_send_completes_job(job_store, recorder, make_pool, dispatcher):
    enqueued = await job_store.enqueue(RECIPIENT, "hello", "tenant-a", metadata={"ref": "A1"})
    pool = make_pool(dispatcher)

    outcome = await pool.process_job(await job_store.claim_next())
    await pool.record_outcome(outcome)

    assert outcome.state == JobState.COMPLETED
    assert outcome.success is True
    assert dispatcher.sent == [(RECIPIENT, "hello")]

    job = await job_store.get_job(enqueued.job_id)
    assert job.state == JobState.COMPLETED
    assert job.result["message_id"] == "ATXid_1"
    assert job.result["metadata"] == {"ref": "A1"}

    logs = await recorder.query_logs()
    assert logs[0]["status"] == "success"
    metrics = await recorder.query_job_metrics()
    assert metrics[0]["status"] == "completed"


@pytest.mark.asyncio
async def test_retryable_failures_back_off_then_fail(job_store, recorder, make_pool, clock):
    enqueued = await job_store.enqueue(RECIPIENT, "hello", "tenant-a")
    pool = make_pool(always_failing(), backoff_delay_ms=2000)

    first = await pool.process_job(await job_store.claim_next())
    assert first.state == JobState.DELAYED
    assert first.attempt == 1
    assert first.retry_delay_ms == 2000
    assert await job_store.claim_next() is None

    clock.advance(2000)
    second = await pool.process_job(await job_store.claim_next())
    assert second.state == JobState.DELAYED
    assert second.attempt == 2
    assert second.retry_delay_ms == 4000

    clock.advance(4000)
    third = await pool.process_job(await job_store.claim_next())
    assert third.state == JobState.FAILED
    assert third.attempt == 3

    job = await job_store.get_job(enqueued.job_id)
    assert job.state == JobState.FAILED
    assert job.attempts == job.max_attempts == 3
    assert job.error == "Gateway returned HTTP 502"


@pytest.mark.asyncio
async def test_non_retryable_error_fails_on_first_attempt(job_store, make_pool):
    enqueued = await job_store.enqueue(RECIPIENT, "hello", "tenant-a")
    dispatcher = FakeDispatcher([GatewayError("Gateway rejected message: InvalidPhoneNumber", retryable=False)])
    pool = make_pool(dispatcher)

    outcome = await pool.process_job(await job_store.claim_next())

    assert outcome.state == JobState.FAILED
    job = await job_store.get_job(enqueued.job_id)
    assert job.attempts == 1
    assert job.error == "Non-retryable error: Gateway rejected message: InvalidPhoneNumber"


@pytest.mark.asyncio
async def test_invalid_stored_recipient_is_not_retried(job_store, make_pool, dispatcher):
    enqueued = await job_store.enqueue("0711223344", "hello", "tenant-a")
    pool = make_pool(dispatcher)

    outcome = await pool.process_job(await job_store.claim_next())

    assert outcome.state == JobState.FAILED
    assert outcome.error == "Non-retryable error: Invalid phone number format"
    assert dispatcher.sent == []
    assert (await job_store.get_job(enqueued.job_id)).attempts == 1


@pytest.mark.asyncio
async def test_dispatch_timeout_is_retried(job_store, make_pool):
    await job_store.enqueue(RECIPIENT, "hello", "tenant-a")
    pool = make_pool(FakeDispatcher(delay=0.5), dispatch_timeout_ms=10)

    outcome = await pool.process_job(await job_store.claim_next())

    assert outcome.state == JobState.DELAYED
    assert outcome.error == "Dispatch timed out after 10ms"


@pytest.mark.asyncio
async def test_unexpected_dispatcher_exception_is_retried(job_store, make_pool):
    await job_store.enqueue(RECIPIENT, "hello", "tenant-a")
    pool = make_pool(FakeDispatcher([RuntimeError("socket closed")]))

    outcome = await pool.process_job(await job_store.claim_next())

    assert outcome.state == JobState.DELAYED
    assert "RuntimeError: socket closed" in outcome.error


@pytest.mark.asyncio
async def test_lost_claim_outcome_is_not_recorded(job_store, recorder, make_pool, dispatcher, clock):
    await job_store.enqueue(RECIPIENT, "hello", "tenant-a")
    pool = make_pool(dispatcher)
    stale = await job_store.claim_next()
    clock.advance(30_000)
    await job_store.recover_stalled()

    outcome = await pool.process_job(stale)
    await pool.record_outcome(outcome)

    assert outcome.claim_lost is True
    assert await recorder.query_logs() == []


@pytest.mark.asyncio
async def test_sweep_stalled_records_metric_for_failed_jobs(job_store, recorder, make_pool, dispatcher, clock):
    await job_store.enqueue(RECIPIENT, "hello", "tenant-a")
    pool = make_pool(dispatcher, stalled_interval_ms=30_000)
    for _ in range(2):
        await job_store.claim_next()
        clock.advance(30_000)
        sweep = await pool.sweep_stalled()

    assert len(sweep.failed) == 1
    metrics = await recorder.query_job_metrics()
    assert metrics[0]["status"] == "failed"
    assert metrics[0]["job_id"] == sweep.failed[0]


@pytest.mark.asyncio
async def test_in_flight_jobs_never_exceed_concurrency(job_store, make_pool):
    class GatedDispatcher:
        def __init__(self):
            self.gate = asyncio.Event()
            self.current = 0
            self.max_seen = 0

        async def send(self, recipient, body):
            self.current += 1
            self.max_seen = max(self.max_seen, self.current)
            try:
                await self.gate.wait()
            finally:
                self.current -= 1
            return DispatchResult(message_id=f"ATXid_{body}", status="Success")

        async def close(self):
            return None

    dispatcher = GatedDispatcher()
    for i in range(6):
        await job_store.enqueue(RECIPIENT, f"msg-{i}", "tenant-a")

    pool = make_pool(dispatcher, concurrency=2)
    await pool.start()
    try:

        async def two_in_flight():
            return pool.in_flight == 2

        await _eventually(two_in_flight)
        await asyncio.sleep(0.05)
        assert (await job_store.count_by_state()).active == 2

        dispatcher.gate.set()

        async def all_completed():
            return (await job_store.count_by_state()).completed == 6

        await _eventually(all_completed)
    finally:
        await pool.close(timeout=2)

    assert dispatcher.max_seen == 2
    assert pool.running is False


@pytest.mark.asyncio
async def test_paused_pool_claims_nothing_until_resumed(job_store, make_pool, dispatcher):
    pool = make_pool(dispatcher, concurrency=1)
    await pool.start()
    await pool.pause()
    try:
        await job_store.enqueue(RECIPIENT, "hello", "tenant-a")
        await asyncio.sleep(0.1)
        assert (await job_store.count_by_state()).waiting == 1
        assert pool.stats()["paused"] is True

        await pool.resume()

        async def completed():
            return (await job_store.count_by_state()).completed == 1

        await _eventually(completed)
    finally:
        await pool.close(timeout=2)


@pytest.mark.asyncio
async def test_unserializable_dispatch_result_fails_job_and_slot_keeps_running(job_store, recorder, make_pool):
    first = await job_store.enqueue(RECIPIENT, "first", "tenant-a")
    second = await job_store.enqueue(RECIPIENT, "second", "tenant-a")
    dispatcher = FakeDispatcher([DispatchResult(message_id="ATXid_1", status="Success", cost=Decimal("0.8"))])

    pool = make_pool(dispatcher, concurrency=1)
    await pool.start()
    try:

        async def both_finished():
            counts = await job_store.count_by_state()
            return counts.completed == 1 and counts.failed == 1

        await _eventually(both_finished)
    finally:
        await pool.close(timeout=2)

    failed = await job_store.get_job(first.job_id)
    assert failed.state == JobState.FAILED
    assert failed.error.startswith("Non-retryable error: Unexpected worker error: TypeError")
    assert (await job_store.get_job(second.job_id)).state == JobState.COMPLETED
    assert len(dispatcher.sent) == 2
    assert (await job_store.count_by_state()).active == 0

    metrics = await recorder.query_job_metrics()
    assert sorted(m["status"] for m in metrics) == ["completed", "failed"]


@pytest.mark.asyncio
async def test_sweep_stalled_logs_delivery_failure(job_store, recorder, make_pool, dispatcher, clock):
    await job_store.enqueue(RECIPIENT, "hello", "tenant-a")
    pool = make_pool(dispatcher, stalled_interval_ms=30_000)
    for _ in range(2):
        await job_store.claim_next()
        clock.advance(30_000)
        await pool.sweep_stalled()

    logs = await recorder.query_logs()
    assert len(logs) == 1
    assert logs[0]["status"] == "failed"
    assert logs[0]["error"] == STALLED_ERROR

    stats = await recorder.query_daily_stats()
    assert stats["failed"] == 1
