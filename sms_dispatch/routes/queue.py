"""
Queue inspection and worker control endpoints.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from sms_dispatch.errors import StoreUnavailableError
from sms_dispatch.dependencies import get_sms_service
from sms_dispatch.infrastructure.observability.logging import get_logger
from sms_dispatch.services.sms_service import SmsService

router = APIRouter(prefix="/api/v1/queue", tags=["queue"])
logger = get_logger(__name__)


@router.get("/stats")
async def get_queue_stats(service: SmsService = Depends(get_sms_service)) -> dict:
    """Job counts per state, worker pool state and the latest job metrics."""
    try:
        stats = await service.get_queue_stats()
    except StoreUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Failed to get queue stats"
        ) from e

    return {"success": True, **stats}


@router.post("/pause")
async def pause_queue(service: SmsService = Depends(get_sms_service)) -> dict:
    if not await service.pause_worker():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Worker pool not running in this process"
        )
    logger.info("Queue paused via API")
    return {"success": True, "message": "Queue paused"}


@router.post("/resume")
async def resume_queue(service: SmsService = Depends(get_sms_service)) -> dict:
    if not await service.resume_worker():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Worker pool not running in this process"
        )
    logger.info("Queue resumed via API")
    return {"success": True, "message": "Queue resumed"}
