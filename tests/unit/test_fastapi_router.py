"""Unit tests for the FastAPI routers."""

import json
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from fakes import WEBHOOK_SECRET
from survey_jobs.delivery_store import DeliveryStore
from survey_jobs.errors import (
    DeliveryNotFoundError,
    SurveySendError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from survey_jobs.fastapi_router import create_api_router, create_webhook_router
from survey_jobs.models import Delivery, DeliveryStatus
from survey_jobs.rate_limiter import RateLimiter
from survey_jobs.survey_send import SurveySendService
from survey_jobs.webhooks import IngestResult, WebhookIngestor, compute_signature

AUTH = {"Authorization": "Bearer key-123"}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def mock_survey_send_service():
    """Create a mock survey send service."""
    service = MagicMock(spec=SurveySendService)
    service.queue_survey_send = AsyncMock()
    return service


@pytest.fixture
def mock_delivery_store():
    store = MagicMock(spec=DeliveryStore)
    store.require_delivery = AsyncMock()
    return store


@pytest.fixture
def rate_limiter():
    return RateLimiter(limit=2, window_seconds=60, clock=FakeClock())


@pytest.fixture
def app(mock_survey_send_service, mock_delivery_store, rate_limiter):
    """Create FastAPI app with the API router."""

    async def tenant_resolver(api_key):
        return "tenant-123" if api_key == "key-123" else None

    router = create_api_router(
        lambda: mock_survey_send_service,
        lambda: mock_delivery_store,
        rate_limiter,
        tenant_resolver,
    )
    app = FastAPI()
    app.include_router(router)
    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


def test_health(client):
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_send_survey_success(client, mock_survey_send_service):
    """Test successful survey send via HTTP."""
    delivery_id = uuid4()
    survey_id = uuid4()
    mock_survey_send_service.queue_survey_send.return_value = delivery_id

    response = client.post(
        f"/api/v1/surveys/{survey_id}/send",
        json={"phone": "+5511999999999", "metadata": {"order_id": "A-1"}},
        headers=AUTH,
    )

    assert response.status_code == 202
    assert response.json() == {
        "delivery_id": str(delivery_id),
        "status": "queued",
        "message": "Survey send queued successfully",
    }
    assert response.headers["X-RateLimit-Limit"] == "2"
    assert response.headers["X-RateLimit-Remaining"] == "1"
    assert response.headers["X-RateLimit-Reset"] == "1060"
    mock_survey_send_service.queue_survey_send.assert_awaited_once_with(
        tenant_id="tenant-123",
        survey_id=survey_id,
        phone_number="+5511999999999",
        metadata={"order_id": "A-1"},
    )


def test_send_survey_invalid_phone(client, mock_survey_send_service):
    mock_survey_send_service.queue_survey_send.side_effect = SurveySendError(
        "Phone number must be in E.164 format (e.g., +5511999999999)", "INVALID_PHONE"
    )

    response = client.post(
        f"/api/v1/surveys/{uuid4()}/send", json={"phone": "5511999999999"}, headers=AUTH
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_PHONE"


def test_send_survey_not_found(client, mock_survey_send_service):
    mock_survey_send_service.queue_survey_send.side_effect = SurveySendError(
        "Survey not found", "SURVEY_NOT_FOUND"
    )

    response = client.post(
        f"/api/v1/surveys/{uuid4()}/send", json={"phone": "+5511999999999"}, headers=AUTH
    )

    assert response.status_code == 404
    assert response.json() == {"error": "Survey not found", "code": "SURVEY_NOT_FOUND"}


def test_send_survey_malformed_survey_id(client, mock_survey_send_service):
    response = client.post(
        "/api/v1/surveys/not-a-uuid/send", json={"phone": "+5511999999999"}, headers=AUTH
    )

    assert response.status_code == 404
    mock_survey_send_service.queue_survey_send.assert_not_awaited()


def test_send_survey_requires_api_key(client):
    response = client.post(f"/api/v1/surveys/{uuid4()}/send", json={"phone": "+5511999999999"})
    assert response.status_code == 401

    response = client.post(
        f"/api/v1/surveys/{uuid4()}/send",
        json={"phone": "+5511999999999"},
        headers={"Authorization": "Bearer wrong"},
    )
    assert response.status_code == 401


def test_send_survey_rate_limited(client, mock_survey_send_service):
    mock_survey_send_service.queue_survey_send.return_value = uuid4()
    url = f"/api/v1/surveys/{uuid4()}/send"

    for _ in range(2):
        assert client.post(url, json={"phone": "+5511999999999"}, headers=AUTH).status_code == 202

    response = client.post(url, json={"phone": "+5511999999999"}, headers=AUTH)

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    body = response.json()
    assert body["error"] == "Too Many Requests"
    assert body["retry_after"] == 60
    assert mock_survey_send_service.queue_survey_send.await_count == 2


def test_get_delivery(client, mock_delivery_store):
    delivery = Delivery(
        id=uuid4(),
        tenant_id="tenant-123",
        survey_id=uuid4(),
        recipient_address="+5511999999999",
        recipient_address_hash="abc",
        status=DeliveryStatus.SENT,
        provider_delivery_id="wamid-1",
    )
    mock_delivery_store.require_delivery.return_value = delivery

    response = client.get(f"/api/v1/deliveries/{delivery.id}", headers=AUTH)

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == str(delivery.id)
    assert data["status"] == "sent"
    assert data["provider_delivery_id"] == "wamid-1"
    assert "recipient_address" not in data
    assert response.headers["X-RateLimit-Limit"] == "2"
    assert response.headers["X-RateLimit-Remaining"] == "1"
    mock_delivery_store.require_delivery.assert_awaited_once_with(delivery.id, tenant_id="tenant-123")


def test_get_delivery_not_found(client, mock_delivery_store):
    delivery_id = uuid4()
    mock_delivery_store.require_delivery.side_effect = DeliveryNotFoundError(delivery_id)

    response = client.get(f"/api/v1/deliveries/{delivery_id}", headers=AUTH)

    assert response.status_code == 404
    assert response.json()["detail"] == f"Delivery {delivery_id} not found"
    assert response.headers["X-RateLimit-Remaining"] == "1"


def test_get_delivery_invalid_id(client):
    response = client.get("/api/v1/deliveries/not-a-uuid", headers=AUTH)

    assert response.status_code == 400


def test_get_delivery_rate_limited(client, mock_delivery_store):
    mock_delivery_store.require_delivery.side_effect = DeliveryNotFoundError("x")
    url = f"/api/v1/deliveries/{uuid4()}"

    statuses = [client.get(url, headers=AUTH).status_code for _ in range(3)]

    assert statuses == [404, 404, 429]
    response = client.get(url, headers=AUTH)
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    assert response.json()["retry_after"] == 60
    assert mock_delivery_store.require_delivery.await_count == 2


def test_rate_limit_is_shared_across_endpoints(client, mock_survey_send_service, mock_delivery_store):
    mock_survey_send_service.queue_survey_send.return_value = uuid4()
    mock_delivery_store.require_delivery.side_effect = DeliveryNotFoundError("x")

    send = client.post(
        f"/api/v1/surveys/{uuid4()}/send", json={"phone": "+5511999999999"}, headers=AUTH
    )
    lookup = client.get(f"/api/v1/deliveries/{uuid4()}", headers=AUTH)
    throttled = client.post(
        f"/api/v1/surveys/{uuid4()}/send", json={"phone": "+5511999999999"}, headers=AUTH
    )

    assert send.headers["X-RateLimit-Remaining"] == "1"
    assert lookup.headers["X-RateLimit-Remaining"] == "0"
    assert throttled.status_code == 429


class TestWebhookRouter:
    @pytest.fixture
    def mock_ingestor(self):
        ingestor = MagicMock(spec=WebhookIngestor)
        ingestor.ingest = AsyncMock()
        return ingestor

    @pytest.fixture
    def client(self, mock_ingestor):
        app = FastAPI()
        app.include_router(create_webhook_router(lambda: mock_ingestor))
        return TestClient(app)

    def test_processed(self, client, mock_ingestor):
        mock_ingestor.ingest.return_value = IngestResult(
            "processed", [{"message_id": "msg-1", "status": "accepted", "job_id": "j"}]
        )
        raw = json.dumps({"phone_number_id": "p", "message": {"id": "msg-1"}}).encode()
        signature = compute_signature(WEBHOOK_SECRET, raw)

        response = client.post(
            "/webhooks/kapso",
            content=raw,
            headers={"X-Webhook-Signature": signature, "X-Webhook-Event": "whatsapp.message.received"},
        )

        assert response.status_code == 202
        assert response.json()["status"] == "processed"
        mock_ingestor.ingest.assert_awaited_once_with(raw, signature, "whatsapp.message.received")

    def test_ignored(self, client, mock_ingestor):
        mock_ingestor.ingest.return_value = IngestResult("ignored", reason="No inbound messages")

        response = client.post("/webhooks/kapso", content=b"{}", headers={"X-Webhook-Signature": "s"})

        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "reason": "No inbound messages"}

    def test_bad_signature(self, client, mock_ingestor):
        mock_ingestor.ingest.side_effect = WebhookSignatureError("Invalid signature")

        response = client.post("/webhooks/kapso", content=b"{}")

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}

    def test_bad_payload(self, client, mock_ingestor):
        mock_ingestor.ingest.side_effect = WebhookPayloadError("missing required fields")

        response = client.post("/webhooks/kapso", content=b"{}", headers={"X-Webhook-Signature": "s"})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid payload"}
