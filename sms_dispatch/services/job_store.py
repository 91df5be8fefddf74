"""
Job Store - durable SMS job queue on Redis.

Key layout (``{prefix}`` is the configured queue name):

    {prefix}:job:{id}     hash with the job fields
    {prefix}:seq          enqueue sequence counter (FIFO tie-break)
    {prefix}:waiting      zset, score = priority * 10**12 + seq
    {prefix}:delayed      zset, score = delay_until (epoch ms)
    {prefix}:active       zset, score = claim time (stall detection)
    {prefix}:completed    zset, score = finish time
    {prefix}:failed       zset, score = finish time

Every state transition is a single Lua script. Transitions out of ``active``
are compare-and-set on the claim token handed out by ``claim_next``, so a
worker whose job was recovered as stalled cannot overwrite the new owner's
result.
"""

import json
import uuid
from contextlib import asynccontextmanager

from redis.exceptions import RedisError

from sms_dispatch.errors import StoreUnavailableError
from sms_dispatch.infrastructure.observability.logging import get_logger, log_job_transition
from sms_dispatch.models.domain.sms_domain import (
    EnqueuedJob,
    EnqueueOptions,
    JobState,
    QueueCounts,
    SmsJob,
    StalledSweep,
)
from sms_dispatch.services.redis_client import RedisClient
from sms_dispatch.utils.time_utils import Clock, now_ms

logger = get_logger(__name__)

PRIORITY_SCORE_FACTOR = 10**12
MAX_PRIORITY = 1000  # keeps priority * factor + seq exact as a double
STALLED_ERROR = "job stalled more than allowable limit"

# Shared helper: drop the oldest members of a finished set beyond ``keep``
# and delete their job hashes.
_TRIM_LUA = """
local function trim(set_key, keep, job_prefix)
    local overflow = redis.call('ZCARD', set_key) - keep
    if overflow > 0 then
        local evicted = redis.call('ZRANGE', set_key, 0, overflow - 1)
        for _, old_id in ipairs(evicted) do
            redis.call('DEL', job_prefix .. old_id)
        end
        redis.call('ZREMRANGEBYRANK', set_key, 0, overflow - 1)
    end
end
"""

ENQUEUE_LUA_SCRIPT = """
local seq = redis.call('INCR', KEYS[1])
local priority = tonumber(ARGV[1])
local delay_until = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local job_id = ARGV[5]
local score = string.format('%.0f', priority * tonumber(ARGV[4]) + seq)

for i = 6, #ARGV, 2 do
    redis.call('HSET', KEYS[2], ARGV[i], ARGV[i + 1])
end

local state = 'waiting'
if delay_until > now then
    state = 'delayed'
    redis.call('ZADD', KEYS[4], ARGV[2], job_id)
else
    redis.call('ZADD', KEYS[3], score, job_id)
end
redis.call('HSET', KEYS[2], 'state', state, 'seq', seq, 'queue_score', score)

local rank = -1
if state == 'waiting' then
    rank = redis.call('ZRANK', KEYS[3], job_id)
end
return {state, rank}
"""

CLAIM_LUA_SCRIPT = """
local now = ARGV[1]
local token = ARGV[2]
local job_prefix = ARGV[3]

-- Promote delayed jobs whose delay has elapsed
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', now, 'LIMIT', 0, 1000)
for _, id in ipairs(due) do
    redis.call('ZREM', KEYS[2], id)
    local job_key = job_prefix .. id
    local score = redis.call('HGET', job_key, 'queue_score')
    if score then
        redis.call('ZADD', KEYS[1], score, id)
        redis.call('HSET', job_key, 'state', 'waiting')
    end
end

local candidates = redis.call('ZRANGE', KEYS[1], 0, 9)
for _, id in ipairs(candidates) do
    redis.call('ZREM', KEYS[1], id)
    local job_key = job_prefix .. id
    if redis.call('EXISTS', job_key) == 1 then
        redis.call('ZADD', KEYS[3], now, id)
        redis.call('HSET', job_key, 'state', 'active', 'claimed_at', now, 'claim_token', token)
        redis.call('HINCRBY', job_key, 'attempts', 1)
        return redis.call('HGETALL', job_key)
    end
end
return false
"""

FINISH_LUA_SCRIPT = _TRIM_LUA + """
local job_key = KEYS[3]
if redis.call('HGET', job_key, 'state') ~= 'active'
    or redis.call('HGET', job_key, 'claim_token') ~= ARGV[1] then
    return 0
end

local job_id = ARGV[8]
redis.call('ZREM', KEYS[1], job_id)
redis.call('HSET', job_key, 'state', ARGV[3], 'finished_at', ARGV[2], 'claim_token', '')
if ARGV[4] ~= '' then
    redis.call('HSET', job_key, 'result', ARGV[4])
end
if ARGV[5] ~= '' then
    redis.call('HSET', job_key, 'error', ARGV[5], 'last_error', ARGV[5])
end
redis.call('ZADD', KEYS[2], ARGV[2], job_id)
trim(KEYS[2], tonumber(ARGV[6]), ARGV[7])
return 1
"""

RETRY_LUA_SCRIPT = """
local job_key = KEYS[3]
if redis.call('HGET', job_key, 'state') ~= 'active'
    or redis.call('HGET', job_key, 'claim_token') ~= ARGV[1] then
    return 0
end

local job_id = ARGV[4]
redis.call('ZREM', KEYS[1], job_id)
redis.call('HSET', job_key, 'state', 'delayed', 'delay_until', ARGV[2],
    'last_error', ARGV[3], 'claim_token', '')
redis.call('ZADD', KEYS[2], ARGV[2], job_id)
return 1
"""

RECOVER_STALLED_LUA_SCRIPT = _TRIM_LUA + """
local cutoff = ARGV[1]
local now = ARGV[2]
local max_stalled = tonumber(ARGV[3])
local keep_failed = tonumber(ARGV[4])
local job_prefix = ARGV[5]
local stalled_error = ARGV[6]

local recovered = {}
local failed = {}
local stalled = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', cutoff)
for _, id in ipairs(stalled) do
    redis.call('ZREM', KEYS[1], id)
    local job_key = job_prefix .. id
    if redis.call('EXISTS', job_key) == 1 then
        local count = redis.call('HINCRBY', job_key, 'stalled_count', 1)
        if count > max_stalled then
            redis.call('HSET', job_key, 'state', 'failed', 'finished_at', now,
                'error', stalled_error, 'last_error', stalled_error, 'claim_token', '')
            redis.call('ZADD', KEYS[3], now, id)
            table.insert(failed, id)
        else
            -- The interrupted attempt does not count against max_attempts
            redis.call('HSET', job_key, 'state', 'waiting', 'claim_token', '')
            redis.call('HINCRBY', job_key, 'attempts', -1)
            redis.call('ZADD', KEYS[2], redis.call('HGET', job_key, 'queue_score'), id)
            table.insert(recovered, id)
        end
    end
end
trim(KEYS[3], keep_failed, job_prefix)
return {recovered, failed}
"""


class RedisJobStore:
    """
    Durable job queue with priority, delayed scheduling and stall recovery.

    The store owns every job lifecycle transition; the worker pool drives
    them but never writes job hashes directly.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        key_prefix: str = "sms-queue",
        max_attempts: int = 3,
        keep_completed: int = 100,
        keep_failed: int = 50,
        stalled_interval_ms: int = 30_000,
        max_stalled_count: int = 1,
        clock: Clock = now_ms,
    ):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.max_attempts = max_attempts
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.stalled_interval_ms = stalled_interval_ms
        self.max_stalled_count = max_stalled_count
        self.clock = clock

    def _key(self, name: str) -> str:
        return f"{self.key_prefix}:{name}"

    @property
    def _job_prefix(self) -> str:
        return self._key("job:")

    def _job_key(self, job_id: str) -> str:
        return f"{self._job_prefix}{job_id}"

    @asynccontextmanager
    async def _store_operation(self, operation: str, **log_fields):
        try:
            yield
        except RedisError as e:
            logger.error(
                "Job store operation failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **log_fields,
            )
            raise StoreUnavailableError(f"Job store {operation} failed: {e}", operation=operation) from e

    async def enqueue(
        self,
        recipient: str,
        body: str,
        identifier: str,
        metadata: dict | None = None,
        options: EnqueueOptions | None = None,
    ) -> EnqueuedJob:
        """
        Persist a new job in ``waiting`` (or ``delayed`` when ``delay_ms`` > 0).

        Returns:
            EnqueuedJob with the new id and its 1-based position among
            waiting jobs (None while delayed).
        """
        options = options or EnqueueOptions()
        if not 0 <= options.priority <= MAX_PRIORITY:
            raise ValueError(f"priority must be between 0 and {MAX_PRIORITY}")

        now = self.clock()
        job = SmsJob(
            id=uuid.uuid4().hex,
            recipient=recipient,
            body=body,
            identifier=identifier,
            priority=options.priority,
            delay_until=now + max(0, options.delay_ms),
            metadata=metadata or {},
            max_attempts=options.max_attempts or self.max_attempts,
            created_at=now,
        )

        fields: list[str] = []
        for name, value in job.to_hash().items():
            fields.extend((name, value))

        async with self._store_operation("enqueue", job_id=job.id):
            state, rank = await self.redis.client.eval(
                ENQUEUE_LUA_SCRIPT,
                4,
                self._key("seq"),
                self._job_key(job.id),
                self._key("waiting"),
                self._key("delayed"),
                str(job.priority),
                str(job.delay_until),
                str(now),
                str(PRIORITY_SCORE_FACTOR),
                job.id,
                *fields,
            )

        rank = int(rank)
        enqueued = EnqueuedJob(
            job_id=job.id,
            state=JobState(state),
            queue_position=rank + 1 if rank >= 0 else None,
        )
        logger.info(
            "SMS job enqueued",
            job_id=job.id,
            identifier=identifier,
            priority=job.priority,
            state=state,
            queue_position=enqueued.queue_position,
        )
        return enqueued

    async def claim_next(self) -> SmsJob | None:
        """
        Atomically claim the highest-priority ready job, or return None.

        Claiming moves the job to ``active``, stamps ``claimed_at``, issues a
        fresh claim token and increments ``attempts``.
        """
        now = self.clock()
        token = uuid.uuid4().hex

        async with self._store_operation("claim"):
            raw = await self.redis.client.eval(
                CLAIM_LUA_SCRIPT,
                3,
                self._key("waiting"),
                self._key("delayed"),
                self._key("active"),
                str(now),
                token,
                self._job_prefix,
            )

        if not raw:
            return None

        data = dict(zip(raw[::2], raw[1::2]))
        return SmsJob.from_hash(data)

    async def _finish(self, job: SmsJob, state: JobState, result: dict | None, error: str | None) -> bool:
        keep = self.keep_completed if state == JobState.COMPLETED else self.keep_failed
        now = self.clock()

        async with self._store_operation(f"mark_{state}", job_id=job.id):
            applied = await self.redis.client.eval(
                FINISH_LUA_SCRIPT,
                3,
                self._key("active"),
                self._key(str(state)),
                self._job_key(job.id),
                job.claim_token or "",
                str(now),
                str(state),
                json.dumps(result) if result is not None else "",
                error or "",
                str(keep),
                self._job_prefix,
                job.id,
            )

        if not int(applied):
            logger.warning("Claim lost before transition", job_id=job.id, target_state=str(state))
            return False

        job.state = state
        job.finished_at = now
        job.result = result
        job.error = error
        log_job_transition(job.id, str(state), attempt=job.attempts, error=error)
        return True

    async def complete(self, job: SmsJob, result: dict) -> bool:
        """Compare-and-set ``active -> completed``. False when the claim was lost."""
        return await self._finish(job, JobState.COMPLETED, result, None)

    async def fail(self, job: SmsJob, error: str) -> bool:
        """Compare-and-set ``active -> failed``. False when the claim was lost."""
        return await self._finish(job, JobState.FAILED, None, error)

    async def retry_later(self, job: SmsJob, delay_until: int, error: str) -> bool:
        """Compare-and-set ``active -> delayed`` until ``delay_until`` (epoch ms)."""
        async with self._store_operation("retry_later", job_id=job.id):
            applied = await self.redis.client.eval(
                RETRY_LUA_SCRIPT,
                3,
                self._key("active"),
                self._key("delayed"),
                self._job_key(job.id),
                job.claim_token or "",
                str(delay_until),
                error,
                job.id,
            )

        if not int(applied):
            logger.warning("Claim lost before retry scheduling", job_id=job.id)
            return False

        job.state = JobState.DELAYED
        job.delay_until = delay_until
        job.last_error = error
        log_job_transition(job.id, str(JobState.DELAYED), attempt=job.attempts, delay_until=delay_until)
        return True

    async def recover_stalled(self) -> StalledSweep:
        """
        Return jobs claimed longer than the stalled interval to ``waiting``.

        A job that stalls more than ``max_stalled_count`` times is failed.
        """
        now = self.clock()
        cutoff = now - self.stalled_interval_ms

        async with self._store_operation("recover_stalled"):
            recovered, failed = await self.redis.client.eval(
                RECOVER_STALLED_LUA_SCRIPT,
                3,
                self._key("active"),
                self._key("waiting"),
                self._key("failed"),
                str(cutoff),
                str(now),
                str(self.max_stalled_count),
                str(self.keep_failed),
                self._job_prefix,
                STALLED_ERROR,
            )

        sweep = StalledSweep(recovered=list(recovered or []), failed=list(failed or []))
        if sweep.recovered or sweep.failed:
            logger.warning(
                "Stalled jobs detected",
                recovered=sweep.recovered,
                failed=sweep.failed,
            )
        return sweep

    async def get_job(self, job_id: str) -> SmsJob | None:
        async with self._store_operation("get_job", job_id=job_id):
            data = await self.redis.client.hgetall(self._job_key(job_id))
        if not data:
            return None
        return SmsJob.from_hash(data)

    async def count_by_state(self) -> QueueCounts:
        async with self._store_operation("count_by_state"):
            async with self.redis.client.pipeline(transaction=True) as pipe:
                for state in JobState:
                    pipe.zcard(self._key(str(state)))
                counts = await pipe.execute()

        return QueueCounts(**{str(state): int(count) for state, count in zip(JobState, counts)})
