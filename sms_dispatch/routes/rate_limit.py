"""
Rate limit inspection and reset endpoints.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from sms_dispatch.dependencies import get_sms_service
from sms_dispatch.models.api.sms_response import RateLimitStatusResponse, RateLimitView
from sms_dispatch.services.sms_service import SmsService

router = APIRouter(prefix="/api/v1/rate-limit", tags=["rate-limit"])


@router.get("/{identifier}", response_model=RateLimitStatusResponse)
async def get_rate_limit_status(identifier: str, service: SmsService = Depends(get_sms_service)):
    """Current window for ``identifier``. Read-only, never counts as a request."""
    decision = await service.get_rate_limit_status(identifier)
    return RateLimitStatusResponse(
        identifier=identifier,
        rate_limit=RateLimitView(**decision.to_dict()),
    )


@router.post("/{identifier}/reset")
async def reset_rate_limit(identifier: str, service: SmsService = Depends(get_sms_service)) -> dict:
    if not await service.reset_rate_limit(identifier):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to reset rate limit"
        )
    return {"success": True, "message": f"Rate limit reset for {identifier}"}
