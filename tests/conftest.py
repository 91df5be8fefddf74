import fakeredis
import pytest

from sms_dispatch.services.job_store import RedisJobStore
from sms_dispatch.services.outcome_recorder import OutcomeRecorder
from sms_dispatch.services.rate_limiter import SlidingWindowRateLimiter
from sms_dispatch.services.redis_client import RedisClient
from sms_dispatch.services.sms_service import SmsService
from sms_dispatch.services.worker_pool import WorkerPool
from tests.fakes import FakeClock, FakeDispatcher


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client():
    return RedisClient.from_client(fakeredis.FakeAsyncRedis(decode_responses=True))


@pytest.fixture
def offline_redis():
    """A client that was never initialized: every call raises StoreUnavailableError."""
    return RedisClient(url="redis://localhost:6390/0")


@pytest.fixture
def rate_limiter(redis_client, clock):
    return SlidingWindowRateLimiter(
        redis_client, window_ms=60_000, max_requests=30, block_duration_ms=300_000, clock=clock
    )


@pytest.fixture
def job_store(redis_client, clock):
    return RedisJobStore(
        redis_client,
        max_attempts=3,
        keep_completed=100,
        keep_failed=50,
        stalled_interval_ms=30_000,
        max_stalled_count=1,
        clock=clock,
    )


@pytest.fixture
def recorder(redis_client, clock):
    return OutcomeRecorder(redis_client, max_log_entries=1000, clock=clock)


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def make_pool(job_store, recorder, clock):
    def _make(dispatcher, **kwargs):
        kwargs.setdefault("backoff_delay_ms", 2000)
        kwargs.setdefault("poll_interval_ms", 10)
        kwargs.setdefault("stalled_interval_ms", 60_000)
        return WorkerPool(job_store, dispatcher, recorder, clock=clock, **kwargs)

    return _make


@pytest.fixture
def sms_service(rate_limiter, job_store, recorder, make_pool, dispatcher):
    return SmsService(rate_limiter, job_store, recorder, worker_pool=make_pool(dispatcher))
