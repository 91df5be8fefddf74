"""
SMS API response models.
"""

from typing import Any

from pydantic import BaseModel


class SendSmsResponse(BaseModel):
    success: bool = True
    job_id: str
    message: str = "SMS queued for delivery"
    state: str
    queue_position: int | None = None


class BulkItemResponse(BaseModel):
    index: int
    to: str | None = None
    success: bool
    job_id: str | None = None
    queue_position: int | None = None
    error: str | None = None
    error_type: str | None = None


class BulkSmsResponse(BaseModel):
    success: bool = True
    message: str = "Bulk SMS processing started"
    total: int
    successful: int
    failed: int
    results: list[BulkItemResponse]


class JobResultView(BaseModel):
    message_id: str | None = None
    status: str | None = None
    cost: str | None = None
    processing_time_ms: int | None = None
    processed_at: str | None = None
    metadata: dict[str, Any] | None = None


class JobView(BaseModel):
    id: str
    recipient: str
    body: str
    identifier: str
    priority: int
    delay_until: int
    metadata: dict[str, Any]
    attempts: int
    max_attempts: int
    state: str
    created_at: int
    claimed_at: int | None = None
    finished_at: int | None = None
    stalled_count: int = 0
    last_error: str | None = None
    result: JobResultView | None = None
    error: str | None = None


class JobStatusResponse(BaseModel):
    success: bool = True
    job: JobView


class RateLimitView(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    blocked: bool
    block_duration_remaining: int | None = None
    error: str | None = None


class RateLimitStatusResponse(BaseModel):
    success: bool = True
    identifier: str
    rate_limit: RateLimitView


class DailyStats(BaseModel):
    date: str
    total: int
    successful: int
    failed: int


class DailyStatsResponse(BaseModel):
    success: bool = True
    stats: DailyStats
