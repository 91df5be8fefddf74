"""FastAPI dependencies resolving the services built in the application lifespan."""

from fastapi import HTTPException, Request, status

from sms_dispatch.services.container import ServiceContainer
from sms_dispatch.services.sms_service import SmsService


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dispatch services not initialized",
        )
    return container


def get_sms_service(request: Request) -> SmsService:
    return get_container(request).sms_service
