"""
Domain models for the SMS dispatch engine.

Jobs are persisted as flat Redis hashes, so ``SmsJob`` knows how to encode
itself into (and decode itself from) a ``dict[str, str]``. The remaining
dataclasses are value objects passed between the admission controller, the
job store, the worker pool and the outcome recorder.
"""

import json
import math
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any


class JobState(StrEnum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


@dataclass(slots=True)
class RateLimitDecision:
    """Result of an admission check for one identifier."""

    allowed: bool
    remaining: int
    reset_time: int  # epoch ms
    blocked: bool
    limit: int
    block_duration_remaining: int | None = None  # ms, only when blocked
    checked_at: int = 0  # epoch ms of the evaluation
    error: str | None = None

    def retry_after_seconds(self) -> int:
        """Seconds until the caller may try again (rounded up, at least 1)."""
        remaining_ms = self.block_duration_remaining or max(0, self.reset_time - self.checked_at)
        return max(1, math.ceil(remaining_ms / 1000))

    def to_dict(self) -> dict:
        info = {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time,
            "blocked": self.blocked,
        }
        if self.block_duration_remaining is not None:
            info["block_duration_remaining"] = self.block_duration_remaining
        if self.error:
            info["error"] = self.error
        return info


@dataclass(slots=True)
class EnqueueOptions:
    priority: int = 0
    delay_ms: int = 0
    max_attempts: int | None = None


@dataclass(slots=True)
class SmsJob:
    """Represents one requested message send as stored under ``{prefix}:job:{id}``."""

    id: str
    recipient: str
    body: str
    identifier: str
    priority: int = 0
    delay_until: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 1
    state: JobState = JobState.WAITING
    seq: int = 0
    created_at: int = 0
    claimed_at: int | None = None
    finished_at: int | None = None
    claim_token: str | None = None
    stalled_count: int = 0
    last_error: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "SmsJob":
        def _opt_int(key: str) -> int | None:
            value = data.get(key)
            return int(value) if value not in (None, "") else None

        return cls(
            id=data["id"],
            recipient=data.get("recipient", ""),
            body=data.get("body", ""),
            identifier=data.get("identifier", ""),
            priority=int(data.get("priority", 0)),
            delay_until=int(data.get("delay_until", 0)),
            metadata=json.loads(data.get("metadata") or "{}"),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 1)),
            state=JobState(data.get("state", JobState.WAITING)),
            seq=int(data.get("seq", 0)),
            created_at=int(data.get("created_at", 0)),
            claimed_at=_opt_int("claimed_at"),
            finished_at=_opt_int("finished_at"),
            claim_token=data.get("claim_token") or None,
            stalled_count=int(data.get("stalled_count", 0)),
            last_error=data.get("last_error") or None,
            result=json.loads(data["result"]) if data.get("result") else None,
            error=data.get("error") or None,
        )

    def to_hash(self) -> dict[str, str]:
        """Encode creation-time fields. Runtime fields are written by the store scripts."""
        return {
            "id": self.id,
            "recipient": self.recipient,
            "body": self.body,
            "identifier": self.identifier,
            "priority": str(self.priority),
            "delay_until": str(self.delay_until),
            "metadata": json.dumps(self.metadata),
            "attempts": str(self.attempts),
            "max_attempts": str(self.max_attempts),
            "created_at": str(self.created_at),
            "stalled_count": str(self.stalled_count),
        }

    def to_view(self) -> dict:
        view = asdict(self)
        view.pop("claim_token")
        view["state"] = str(self.state)
        return view


@dataclass(slots=True)
class EnqueuedJob:
    job_id: str
    state: JobState
    queue_position: int | None


@dataclass(slots=True)
class QueueCounts:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def to_dict(self) -> dict:
        counts = asdict(self)
        counts["total"] = self.total
        return counts


@dataclass(slots=True)
class StalledSweep:
    recovered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DispatchResult:
    """What the gateway returned for one accepted message."""

    message_id: str
    status: str
    cost: str | None = None
    raw: dict[str, Any] | None = None


@dataclass(slots=True)
class JobOutcome:
    """
    Result of one ``WorkerPool.process_job`` call.

    ``state`` is the state the job moved to: COMPLETED, FAILED or DELAYED.
    ``claim_lost`` is set when another sweep took the job away from this
    worker before it could record the transition.
    """

    job_id: str
    state: JobState
    attempt: int
    max_attempts: int
    recipient: str
    body: str
    processing_time_ms: int
    result: DispatchResult | None = None
    error: str | None = None
    retry_delay_ms: int | None = None
    claim_lost: bool = False

    @property
    def success(self) -> bool:
        return self.state == JobState.COMPLETED

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass(slots=True)
class BulkItemResult:
    index: int
    to: str | None
    success: bool
    job_id: str | None = None
    queue_position: int | None = None
    error: str | None = None
    error_type: str | None = None
