"""
SMS API request models.
Used by routes for input shaping; recipient and body rules are enforced by
SmsService so bulk items can fail individually.
"""

from typing import Any

from pydantic import BaseModel, Field


class SendSmsRequest(BaseModel):
    """Request for queuing a single SMS."""

    to: str | None = Field(default=None, description="Recipient phone number in E.164 format")
    message: str | None = Field(default=None, description="Message text")
    identifier: str | None = Field(default=None, description="Caller key used for rate limiting")
    priority: int = Field(default=0, ge=0, le=1000, description="Lower value is dispatched first")
    delay_ms: int = Field(default=0, ge=0, description="Earliest dispatch, relative to now")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Opaque caller data")


class BulkSmsItem(BaseModel):
    """One message in a bulk request. Fields are checked per item, not per batch."""

    to: str | None = None
    message: str | None = None
    metadata: dict[str, Any] | None = None


class BulkSmsRequest(BaseModel):
    """Request for queuing many messages under one identifier."""

    messages: list[BulkSmsItem] = Field(..., min_length=1, description="Messages to queue")
    identifier: str | None = Field(default=None, description="Caller key used for rate limiting")
    priority: int = Field(default=0, ge=0, le=1000)
