"""
Tests for the Africa's Talking client using httpx.MockTransport.
"""

from urllib.parse import parse_qs

import httpx
import pytest

from sms_dispatch.config import Settings
from sms_dispatch.errors import GatewayError
from sms_dispatch.services.sms_gateway import AfricasTalkingClient, SimulatedSmsClient, build_dispatcher

BASE_URL = "https://api.sandbox.africastalking.com"


def _recipient_response(status_code: int, status: str) -> dict:
    return {
        "SMSMessageData": {
            "Message": "Sent to 1/1 Total Cost: KES 0.8000",
            "Recipients": [
                {
                    "statusCode": status_code,
                    "number": "+254711223344",
                    "status": status,
                    "cost": "KES 0.8000",
                    "messageId": "ATXid_abc123",
                }
            ],
        }
    }


def _client(handler) -> AfricasTalkingClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return AfricasTalkingClient("sandbox", "test-key", sender="ACME", http_client=http_client)


@pytest.mark.asyncio
async def test_send_success():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["api_key"] = request.headers["apiKey"]
        captured["form"] = parse_qs(request.content.decode())
        return httpx.Response(201, json=_recipient_response(101, "Success"))

    client = _client(handler)
    result = await client.send("+254711223344", "Hello")
    await client.close()

    assert result.message_id == "ATXid_abc123"
    assert result.status == "Success"
    assert result.cost == "KES 0.8000"
    assert captured["path"] == "/version1/messaging"
    assert captured["api_key"] == "test-key"
    assert captured["form"] == {
        "username": ["sandbox"],
        "to": ["+254711223344"],
        "message": ["Hello"],
        "from": ["ACME"],
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, status", [(403, "InvalidPhoneNumber"), (404, "UnsupportedNumberType")])
async def test_invalid_number_is_not_retryable(status_code, status):
    client = _client(lambda request: httpx.Response(201, json=_recipient_response(status_code, status)))

    with pytest.raises(GatewayError) as exc_info:
        await client.send("+254711223344", "Hello")

    assert exc_info.value.retryable is False
    assert exc_info.value.status_code == status_code


@pytest.mark.asyncio
async def test_insufficient_balance_is_retryable():
    client = _client(lambda request: httpx.Response(201, json=_recipient_response(405, "InsufficientBalance")))

    with pytest.raises(GatewayError) as exc_info:
        await client.send("+254711223344", "Hello")

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_http_error_is_retryable():
    client = _client(lambda request: httpx.Response(502, text="Bad Gateway"))

    with pytest.raises(GatewayError) as exc_info:
        await client.send("+254711223344", "Hello")

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_transport_error_is_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)

    with pytest.raises(GatewayError) as exc_info:
        await client.send("+254711223344", "Hello")

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_no_recipients_is_retryable():
    client = _client(
        lambda request: httpx.Response(201, json={"SMSMessageData": {"Message": "InvalidSenderId", "Recipients": []}})
    )

    with pytest.raises(GatewayError, match="InvalidSenderId"):
        await client.send("+254711223344", "Hello")


@pytest.mark.asyncio
async def test_simulated_client_records_sends():
    client = SimulatedSmsClient(delay_ms=0)

    result = await client.send("+254711223344", "Hello")

    assert result.message_id.startswith("sim-")
    assert client.sent == [("+254711223344", "Hello")]


def test_build_dispatcher_selects_provider():
    simulated = build_dispatcher(Settings(SMS_PROVIDER="simulated", _env_file=None))
    assert isinstance(simulated, SimulatedSmsClient)

    live = build_dispatcher(Settings(SMS_PROVIDER="africastalking", AFRICASTALKING_API_KEY="k", _env_file=None))
    assert isinstance(live, AfricasTalkingClient)
    assert str(live._client.base_url).startswith("https://api.sandbox.africastalking.com")
