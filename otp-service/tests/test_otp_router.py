# tests/test_otp_router.py

import uuid
import pytest
from httpx import ASGITransport, AsyncClient

from app.dependencies import get_dispatcher, get_record_store, get_resend_limiter, get_send_limiter
from app.main import app
from app.schemas.otp import Channel
from app.services.delivery import ChannelDispatcher
from app.services.record_store import InMemoryRecordStore
from app.utils.rate_limit import InMemoryCounterStore, RateLimiter
from conftest import EMAIL, PHONE


@pytest.fixture
async def client(adapters):
    store = InMemoryRecordStore()
    counters = InMemoryCounterStore()
    app.dependency_overrides[get_record_store] = lambda: store
    app.dependency_overrides[get_dispatcher] = lambda: ChannelDispatcher(adapters)
    app.dependency_overrides[get_send_limiter] = lambda: RateLimiter(counters, 3, 3600, prefix="otp_send")
    app.dependency_overrides[get_resend_limiter] = lambda: RateLimiter(counters, 10, 3600, prefix="otp_resend")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def send_payload(phone=PHONE, email=None, **extra):
    identifiers = []
    if phone:
        identifiers.append({"kind": "phone", "value": phone})
    if email:
        identifiers.append({"kind": "email", "value": email})
    return {"identifiers": identifiers, "purpose": "signup", **extra}


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"] == "up"
    assert body["in_memory_records"] == 0


async def test_send_and_verify(client, adapters):
    response = await client.post("/otp/send", json=send_payload())
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["channel"] == "sms"
    otp_id = body["otp_id"]

    wrong = await client.post("/otp/verify", json={"otp_id": otp_id, "purpose": "signup", "code": "0000"})
    assert wrong.status_code == 400
    assert wrong.json()["can_retry"] is True
    assert wrong.json()["remaining_attempts"] == 2

    right = await client.post("/otp/verify", json={
        "identifier": {"kind": "phone", "value": PHONE},
        "purpose": "signup",
        "code": adapters[Channel.SMS].last_code,
    })
    assert right.status_code == 200
    assert right.json()["success"] is True

    status = await client.get(f"/otp/{otp_id}/status")
    assert status.status_code == 200
    assert status.json()["verified"] is True
    assert status.json()["attempts"] == 2
    assert status.json()["state"] == "verified"


async def test_resend_too_soon_is_rate_limited(client):
    otp_id = (await client.post("/otp/send", json=send_payload())).json()["otp_id"]

    response = await client.post("/otp/resend", json={"otp_id": otp_id, "channel": "sms"})

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    assert response.json()["code"] == "RATE_LIMITED"
    assert response.json()["success"] is False


async def test_send_is_rate_limited_per_contact(client):
    for _ in range(3):
        assert (await client.post("/otp/send", json=send_payload())).status_code == 200

    response = await client.post("/otp/send", json=send_payload())

    assert response.status_code == 429
    assert "Retry-After" in response.headers


async def test_undeliverable_preferred_channel(client):
    response = await client.post("/otp/send", json=send_payload(preferred_channel="email"))

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


async def test_delivery_failure_maps_to_bad_gateway(client, adapters):
    adapters[Channel.EMAIL].fail = True

    response = await client.post("/otp/send", json=send_payload(phone=None, email=EMAIL))

    assert response.status_code == 502
    assert response.json()["code"] == "DELIVERY_FAILED"
    assert response.json()["details"]["channels"] == {"email": "fake-email unavailable"}


async def test_schema_errors_use_error_body(client):
    response = await client.post("/otp/send", json=send_payload(phone="12ab"))

    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert response.json()["success"] is False


async def test_verify_needs_exactly_one_key(client):
    response = await client.post("/otp/verify", json={"purpose": "signup", "code": "1234"})
    assert response.status_code == 422


async def test_unknown_otp_status_is_not_found(client):
    response = await client.get(f"/otp/{uuid.uuid4()}/status")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


async def test_order_status(client):
    order_id = str(uuid.uuid4())
    payload = send_payload(order_id=order_id)
    payload["purpose"] = "agent_order_verification"
    otp_id = (await client.post("/otp/send", json=payload)).json()["otp_id"]

    response = await client.get(f"/otp/orders/{order_id}/status")

    assert response.status_code == 200
    assert response.json()["otp_id"] == otp_id
    assert (await client.get(f"/otp/orders/{uuid.uuid4()}/status")).status_code == 404
