"""
SMS gateway clients.

The worker pool only depends on the ``SmsDispatcher`` protocol: send one
pre-validated message, get back the gateway message id, status and cost, or
raise ``GatewayError``. ``AfricasTalkingClient`` talks to the Africa's Talking
messaging REST API; ``SimulatedSmsClient`` stands in for it in local runs.
"""

import asyncio
import uuid
from typing import Protocol

import httpx

from sms_dispatch.config import Settings
from sms_dispatch.errors import GatewayError
from sms_dispatch.infrastructure.observability.logging import get_logger
from sms_dispatch.models.domain.sms_domain import DispatchResult

logger = get_logger(__name__)

MESSAGING_PATH = "/version1/messaging"
REQUEST_TIMEOUT = 15  # seconds

# Per-recipient status codes returned by Africa's Talking
SUCCESS_STATUS_CODES = {100, 101, 102}  # Processed, Sent, Queued
NON_RETRYABLE_STATUS_CODES = {403, 404}  # InvalidPhoneNumber, UnsupportedNumberType


class SmsDispatcher(Protocol):
    async def send(self, recipient: str, body: str) -> DispatchResult: ...

    async def close(self) -> None: ...


class AfricasTalkingClient:
    """
    Client for the Africa's Talking bulk messaging endpoint.

    One message is sent per call. The client does not retry on its own;
    retry policy belongs to the worker pool.
    """

    def __init__(
        self,
        username: str,
        api_key: str | None,
        sender: str | None = None,
        base_url: str = "https://api.africastalking.com",
        http_client: httpx.AsyncClient | None = None,
    ):
        self.username = username
        self.api_key = api_key
        self.sender = sender
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=REQUEST_TIMEOUT)
        self._validate_config()

    @classmethod
    def from_settings(cls, settings: Settings) -> "AfricasTalkingClient":
        return cls(
            username=settings.AFRICASTALKING_USERNAME,
            api_key=settings.AFRICASTALKING_API_KEY,
            sender=settings.SMS_SENDER_NAME,
            base_url=settings.africastalking_base_url(),
        )

    def _validate_config(self) -> None:
        if not self.api_key:
            logger.warning("AFRICASTALKING_API_KEY not configured, sends will be rejected by the gateway")

        logger.info(
            "Africa's Talking client initialized",
            username=self.username,
            sender=self.sender,
            base_url=str(self._client.base_url),
        )

    async def send(self, recipient: str, body: str) -> DispatchResult:
        payload = {"username": self.username, "to": recipient, "message": body}
        if self.sender:
            payload["from"] = self.sender

        headers = {
            "apiKey": self.api_key or "",
            "Accept": "application/json",
            "Content-Type": "application/x-www-form-urlencoded",
        }

        try:
            response = await self._client.post(MESSAGING_PATH, data=payload, headers=headers)
        except httpx.RequestError as e:
            logger.warning("SMS gateway request error", error=str(e), error_type=type(e).__name__)
            raise GatewayError(f"Gateway request failed: {type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise GatewayError(
                f"Gateway returned HTTP {response.status_code}",
                status_code=response.status_code,
                response_data={"body": response.text[:500]},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError("Gateway returned a non-JSON response", status_code=response.status_code) from e

        return self._parse_response(data)

    def _parse_response(self, data: dict) -> DispatchResult:
        sms_data = data.get("SMSMessageData") or {}
        recipients = sms_data.get("Recipients") or []
        if not recipients:
            raise GatewayError(
                f"Gateway accepted no recipients: {sms_data.get('Message', 'no message')}",
                response_data=data,
            )

        recipient = recipients[0]
        status_code = int(recipient.get("statusCode", 0))
        status = recipient.get("status", "Unknown")

        if status_code not in SUCCESS_STATUS_CODES:
            raise GatewayError(
                f"Gateway rejected message: {status}",
                status_code=status_code,
                response_data=data,
                retryable=status_code not in NON_RETRYABLE_STATUS_CODES,
            )

        return DispatchResult(
            message_id=recipient.get("messageId", ""),
            status=status,
            cost=recipient.get("cost"),
            raw=data,
        )

    async def close(self) -> None:
        await self._client.aclose()


class SimulatedSmsClient:
    """Pretends to send after a fixed delay. Useful without gateway credentials."""

    def __init__(self, delay_ms: int = 1000):
        self.delay_ms = delay_ms
        self.sent: list[tuple[str, str]] = []

    async def send(self, recipient: str, body: str) -> DispatchResult:
        await asyncio.sleep(self.delay_ms / 1000)
        self.sent.append((recipient, body))
        logger.info("Simulated SMS sent", recipient_suffix=recipient[-4:], length=len(body))
        return DispatchResult(message_id=f"sim-{uuid.uuid4().hex[:16]}", status="Success", cost="0")

    async def close(self) -> None:
        return None


def build_dispatcher(settings: Settings) -> SmsDispatcher:
    if settings.SMS_PROVIDER == "simulated":
        return SimulatedSmsClient(delay_ms=settings.SIMULATED_SEND_DELAY_MS)
    return AfricasTalkingClient.from_settings(settings)
