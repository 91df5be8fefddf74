"""
HTTP contract tests for the /api/v1 routes, with the SMS service swapped out.
"""

import pytest
from fastapi.testclient import TestClient

from sms_dispatch.dependencies import get_sms_service
from sms_dispatch.errors import AdmissionRejectedError, StoreUnavailableError, ValidationError
from sms_dispatch.main import app
from sms_dispatch.models.domain.sms_domain import (
    BulkItemResult,
    EnqueuedJob,
    JobState,
    QueueCounts,
    RateLimitDecision,
    SmsJob,
)
from tests.fakes import START_MS


def _decision(allowed=True, remaining=29, blocked=False, block_remaining=None) -> RateLimitDecision:
    return RateLimitDecision(
        allowed=allowed,
        remaining=remaining,
        reset_time=START_MS + 60_000,
        blocked=blocked,
        limit=30,
        block_duration_remaining=block_remaining,
        checked_at=START_MS,
    )


class FakeSmsService:
    def __init__(self):
        self.submit_error = None
        self.calls = []
        self.jobs = {}
        self.reset_ok = True
        self.has_worker = True

    async def submit(self, to, message, identifier=None, priority=0, metadata=None, delay_ms=0):
        self.calls.append(("submit", to, message, identifier, priority, delay_ms))
        if self.submit_error:
            raise self.submit_error
        return EnqueuedJob(job_id="job-1", state=JobState.WAITING, queue_position=3), _decision()

    async def submit_bulk(self, messages, identifier=None, priority=0):
        self.calls.append(("bulk", len(messages), identifier))
        return [
            BulkItemResult(index=0, to=messages[0]["to"], success=True, job_id="job-1", queue_position=1),
            BulkItemResult(
                index=1,
                to=messages[1]["to"],
                success=False,
                error="Invalid phone number format",
                error_type="ValidationError",
            ),
        ]

    async def get_job(self, job_id):
        if isinstance(self.jobs.get(job_id), Exception):
            raise self.jobs[job_id]
        return self.jobs.get(job_id)

    async def get_queue_stats(self, recent_metrics=10):
        return {
            "stats": QueueCounts(waiting=4, completed=10).to_dict(),
            "worker": {"running": True, "paused": False, "concurrency": 5, "in_flight": 0},
            "recent_metrics": [],
        }

    async def get_delivery_logs(self, limit=50, offset=0):
        self.calls.append(("logs", limit, offset))
        return [{"job_id": "job-1", "status": "success"}]

    async def get_daily_stats(self, date=None):
        return {"date": date or "2023-11-14", "total": 5, "successful": 3, "failed": 2}

    async def get_rate_limit_status(self, identifier):
        return _decision(remaining=12)

    async def reset_rate_limit(self, identifier):
        return self.reset_ok

    async def pause_worker(self):
        return self.has_worker

    async def resume_worker(self):
        return self.has_worker


@pytest.fixture
def service():
    fake = FakeSmsService()
    app.dependency_overrides[get_sms_service] = lambda: fake
    yield fake
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


def test_send_sms_accepted(client, service):
    response = client.post(
        "/api/v1/sms/send",
        json={"to": "+254711223344", "message": "Hello", "identifier": "tenant-a", "priority": 2},
    )

    assert response.status_code == 202
    data = response.json()
    assert data["job_id"] == "job-1"
    assert data["queue_position"] == 3
    assert data["state"] == "waiting"
    assert response.headers["X-RateLimit-Limit"] == "30"
    assert response.headers["X-RateLimit-Remaining"] == "29"
    assert "X-Request-ID" in response.headers
    assert service.calls[0] == ("submit", "+254711223344", "Hello", "tenant-a", 2, 0)


def test_send_sms_validation_error(client, service):
    service.submit_error = ValidationError("Invalid phone number format", field="to")

    response = client.post("/api/v1/sms/send", json={"to": "0711", "message": "Hello"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid phone number format"


def test_send_sms_malformed_body_is_400(client, service):
    response = client.post("/api/v1/sms/send", json={"to": "+254711223344", "message": "Hi", "priority": -1})

    assert response.status_code == 400
    assert service.calls == []


def test_send_sms_rate_limited(client, service):
    decision = _decision(allowed=False, remaining=0, blocked=True, block_remaining=300_000)
    service.submit_error = AdmissionRejectedError("Rate limit exceeded. Blocked for 300 seconds", decision)

    response = client.post("/api/v1/sms/send", json={"to": "+254711223344", "message": "Hello"})

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "300"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    detail = response.json()["detail"]
    assert detail["error"] == "Rate limit exceeded. Blocked for 300 seconds"
    assert detail["rate_limit"]["blocked"] is True


def test_send_sms_store_unavailable(client, service):
    service.submit_error = StoreUnavailableError("Job store enqueue failed", operation="enqueue")

    response = client.post("/api/v1/sms/send", json={"to": "+254711223344", "message": "Hello"})

    assert response.status_code == 503


def test_bulk_sms_reports_per_item_results(client, service):
    response = client.post(
        "/api/v1/sms/bulk",
        json={"messages": [{"to": "+254711223344", "message": "a"}, {"to": "bad", "message": "b"}]},
    )

    assert response.status_code == 202
    data = response.json()
    assert data["total"] == 2
    assert data["successful"] == 1
    assert data["failed"] == 1
    assert data["results"][1]["error_type"] == "ValidationError"
    assert service.calls[0] == ("bulk", 2, None)


def test_bulk_sms_requires_messages(client, service):
    response = client.post("/api/v1/sms/bulk", json={"messages": []})

    assert response.status_code == 400


def test_job_status_found(client, service):
    service.jobs["job-1"] = SmsJob(
        id="job-1",
        recipient="+254711223344",
        body="Hello",
        identifier="tenant-a",
        attempts=1,
        max_attempts=3,
        state=JobState.COMPLETED,
        created_at=START_MS,
        claim_token=None,
        result={"message_id": "ATXid_1", "status": "Success", "cost": "KES 0.8000"},
    )

    response = client.get("/api/v1/sms/status/job-1")

    assert response.status_code == 200
    job = response.json()["job"]
    assert job["state"] == "completed"
    assert job["result"]["message_id"] == "ATXid_1"
    assert "claim_token" not in job


def test_job_status_not_found(client, service):
    response = client.get("/api/v1/sms/status/missing")

    assert response.status_code == 404


def test_job_status_store_unavailable(client, service):
    service.jobs["job-1"] = StoreUnavailableError("down", operation="get_job")

    response = client.get("/api/v1/sms/status/job-1")

    assert response.status_code == 503


def test_delivery_logs_pagination(client, service):
    response = client.get("/api/v1/sms/logs", params={"limit": 10, "offset": 20})

    assert response.status_code == 200
    data = response.json()
    assert data["pagination"] == {"limit": 10, "offset": 20, "total": 1}
    assert service.calls[0] == ("logs", 10, 20)


def test_daily_stats(client, service):
    response = client.get("/api/v1/sms/stats/daily", params={"date": "2023-11-14"})

    assert response.status_code == 200
    assert response.json()["stats"] == {"date": "2023-11-14", "total": 5, "successful": 3, "failed": 2}


def test_daily_stats_rejects_bad_date(client, service):
    response = client.get("/api/v1/sms/stats/daily", params={"date": "14-11-2023"})

    assert response.status_code == 400


def test_queue_stats(client, service):
    response = client.get("/api/v1/queue/stats")

    assert response.status_code == 200
    data = response.json()
    assert data["stats"]["waiting"] == 4
    assert data["stats"]["total"] == 14
    assert data["worker"]["concurrency"] == 5


def test_queue_pause_and_resume(client, service):
    assert client.post("/api/v1/queue/pause").json()["message"] == "Queue paused"
    assert client.post("/api/v1/queue/resume").json()["message"] == "Queue resumed"


def test_queue_pause_without_local_worker(client, service):
    service.has_worker = False

    assert client.post("/api/v1/queue/pause").status_code == 409


def test_rate_limit_status(client, service):
    response = client.get("/api/v1/rate-limit/tenant-a")

    assert response.status_code == 200
    data = response.json()
    assert data["identifier"] == "tenant-a"
    assert data["rate_limit"]["remaining"] == 12
    assert data["rate_limit"]["limit"] == 30


def test_rate_limit_reset(client, service):
    assert client.post("/api/v1/rate-limit/tenant-a/reset").status_code == 200

    service.reset_ok = False
    assert client.post("/api/v1/rate-limit/tenant-a/reset").status_code == 500


def test_routes_unavailable_before_startup(client):
    app.state.container = None

    response = client.get("/api/v1/queue/stats")

    assert response.status_code == 503
