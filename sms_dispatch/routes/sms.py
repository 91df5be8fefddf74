"""
SMS submission and delivery-reporting endpoints.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from sms_dispatch.errors import AdmissionRejectedError, StoreUnavailableError, ValidationError
from sms_dispatch.dependencies import get_sms_service
from sms_dispatch.infrastructure.observability.logging import get_logger
from sms_dispatch.models.api.sms_request import BulkSmsRequest, SendSmsRequest
from sms_dispatch.models.api.sms_response import (
    BulkItemResponse,
    BulkSmsResponse,
    DailyStats,
    DailyStatsResponse,
    JobStatusResponse,
    JobView,
    SendSmsResponse,
)
from sms_dispatch.services.sms_service import SmsService

router = APIRouter(prefix="/api/v1/sms", tags=["sms"])
logger = get_logger(__name__)


def _rate_limit_info(decision) -> dict:
    info = {"allowed": decision.allowed, "limit": decision.limit, "remaining": decision.remaining}
    if not decision.allowed:
        info["retry_after"] = decision.retry_after_seconds()
    return info


@router.post("/send", response_model=SendSmsResponse, status_code=status.HTTP_202_ACCEPTED)
async def send_sms(
    request: Request,
    payload: SendSmsRequest,
    service: SmsService = Depends(get_sms_service),
):
    """Queue one SMS for delivery."""
    try:
        enqueued, decision = await service.submit(
            payload.to,
            payload.message,
            identifier=payload.identifier,
            priority=payload.priority,
            metadata=payload.metadata,
            delay_ms=payload.delay_ms,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except AdmissionRejectedError as e:
        request.state.rate_limit_info = _rate_limit_info(e.decision)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": str(e), "rate_limit": e.decision.to_dict()},
            headers={"Retry-After": str(e.retry_after_seconds)},
        ) from e
    except StoreUnavailableError as e:
        logger.error("Error queuing SMS", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Failed to queue SMS"
        ) from e

    request.state.rate_limit_info = _rate_limit_info(decision)
    return SendSmsResponse(
        job_id=enqueued.job_id,
        state=str(enqueued.state),
        queue_position=enqueued.queue_position,
    )


@router.post("/bulk", response_model=BulkSmsResponse, status_code=status.HTTP_202_ACCEPTED)
async def send_bulk_sms(
    payload: BulkSmsRequest,
    service: SmsService = Depends(get_sms_service),
):
    """Queue many messages; each item succeeds or fails on its own."""
    results = await service.submit_bulk(
        [item.model_dump() for item in payload.messages],
        identifier=payload.identifier,
        priority=payload.priority,
    )

    successful = sum(1 for r in results if r.success)
    return BulkSmsResponse(
        total=len(results),
        successful=successful,
        failed=len(results) - successful,
        results=[
            BulkItemResponse(
                index=r.index,
                to=r.to,
                success=r.success,
                job_id=r.job_id,
                queue_position=r.queue_position,
                error=r.error,
                error_type=r.error_type,
            )
            for r in results
        ],
    )


@router.get("/status/{job_id}", response_model=JobStatusResponse)
async def get_sms_status(job_id: str, service: SmsService = Depends(get_sms_service)):
    try:
        job = await service.get_job(job_id)
    except StoreUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Failed to get SMS status"
        ) from e

    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    return JobStatusResponse(job=JobView.model_validate(job.to_view()))


@router.get("/logs")
async def get_delivery_logs(
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    service: SmsService = Depends(get_sms_service),
) -> dict:
    logs = await service.get_delivery_logs(limit, offset)
    return {
        "success": True,
        "logs": logs,
        "pagination": {"limit": limit, "offset": offset, "total": len(logs)},
    }


@router.get("/stats/daily", response_model=DailyStatsResponse)
async def get_daily_stats(
    date: str | None = Query(default=None, description="YYYY-MM-DD, defaults to today (UTC)"),
    service: SmsService = Depends(get_sms_service),
):
    if date is not None:
        try:
            datetime.strptime(date, "%Y-%m-%d")
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="date must be YYYY-MM-DD"
            ) from e

    stats = await service.get_daily_stats(date)
    return DailyStatsResponse(stats=DailyStats(**stats))
