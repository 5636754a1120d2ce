import json
import logging
from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio
import sqlalchemy as sa

from sp_validator.services.webhook_sender import (
    DELIVERY_ID_HEADER,
    VALIDATION_ID_HEADER,
    WebhookDeliveryEngine,
    WebhookDeliveryError,
    build_fallback_params,
    build_webhook_payload,
    is_wrong_transport,
)
from sp_validator.services.validation_store import ValidationStore

from tests.fakes import SleepRecorder

WEBHOOK_URL = "https://hooks.example.com/validated"
WRONG_TRANSPORT = {"code": 404, "message": 'The requested webhook "validated" is not registered for POST requests.'}

REPORT = {
    "is_valid": True,
    "permissions": {
        "resource_group_create": True,
        "storage_account_create": True,
        "blob_container_create": True,
        "blob_upload": True,
        "static_website_enable": False,
        "storage_account_delete": False,
    },
    "errors": ["Static website enable failed: forbidden"],
    "storage_account_name": "azval1234abcd",
    "website_url": "https://azval1234abcd.z13.web.core.windows.net",
}


def make_payload(validation_id: str, **overrides):
    kwargs = dict(
        validation_id=validation_id,
        status="valid",
        credentials={"tenant_id": "t", "client_id": "c", "client_secret": "s3cret", "display_name": "deployer"},
        subscription_id="sub",
        report=REPORT,
        test_config={"resource_group": "rg", "location": "eastus", "test_files": ["index.html"]},
        timestamp=datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc),
    )
    kwargs.update(overrides)
    return build_webhook_payload(**kwargs)


@pytest_asyncio.fixture
async def validation_id(db):
    record, _ = await ValidationStore(db).create(
        credentials={"tenant_id": "t", "client_id": "c", "client_secret": "s3cret"},
        subscription_id="sub",
        test_config={},
        webhook_url=WEBHOOK_URL,
    )
    return record.id


def test_payload_shape():
    payload = make_payload("v-1")

    assert payload["timestamp"] == "2026-03-01T08:30:00Z"
    assert payload["credentials"] == {
        "tenant_id": "t",
        "client_id": "c",
        "client_secret": "s3cret",
        "display_name": "deployer",
        "subscription_id": "sub",
        "valid": True,
    }
    assert payload["storage_account_created"] == "azval1234abcd"
    assert payload["errors"] == ["Static website enable failed: forbidden"]


def test_fallback_params_flatten_payload():
    params = build_fallback_params(make_payload("v-1"))

    assert params == {
        "validation_id": "v-1",
        "timestamp": "2026-03-01T08:30:00Z",
        "status": "valid",
        "tenant_id": "t",
        "client_id": "c",
        "client_secret": "s3cret",
        "display_name": "deployer",
        "subscription_id": "sub",
        "credentials_valid": "true",
        "resource_group_create": "true",
        "storage_account_create": "true",
        "blob_container_create": "true",
        "blob_upload": "true",
        "static_website_enable": "false",
        "storage_account_delete": "false",
        "storage_account_created": "azval1234abcd",
        "website_url": "https://azval1234abcd.z13.web.core.windows.net",
        "resource_group": "rg",
        "location": "eastus",
        "test_files": '["index.html"]',
        "errors": '["Static website enable failed: forbidden"]',
    }


def test_fallback_params_empty_lists_become_empty_strings():
    report = dict(REPORT, errors=[])
    params = build_fallback_params(make_payload("v-1", report=report, test_config={}))

    assert params["errors"] == ""
    assert params["test_files"] == ""
    assert params["resource_group"] == ""


@pytest.mark.parametrize(
    "response,expected",
    [
        (httpx.Response(404, json=WRONG_TRANSPORT), True),
        (httpx.Response(404, json={"message": "Not Found"}), False),
        (httpx.Response(404, text="webhook is not registered for POST requests"), True),
        (httpx.Response(405, json=WRONG_TRANSPORT), False),
    ],
)
def test_wrong_transport_detection(response, expected):
    assert is_wrong_transport(response) is expected


@pytest.mark.asyncio
async def test_success_on_first_attempt(webhook_engine, webhook_requests, validation_id, sleep_recorder):
    payload = make_payload(validation_id)

    delivery = await webhook_engine.deliver(validation_id=validation_id, webhook_url=WEBHOOK_URL, payload=payload)

    assert delivery.status == "delivered"
    assert delivery.attempts == 1
    assert delivery.response_status == 200
    assert "received" in delivery.response_body
    assert delivery.payload == payload
    assert sleep_recorder.delays == []

    request = webhook_requests[0]
    assert request.method == "POST"
    assert json.loads(request.content) == payload
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers[DELIVERY_ID_HEADER] == delivery.id
    assert request.headers[VALIDATION_ID_HEADER] == validation_id


@pytest.mark.asyncio
async def test_persistent_failure_exhausts_retries(
    webhook_engine, webhook_requests, webhook_responder, validation_id, sleep_recorder
):
    webhook_responder.handler = lambda request: httpx.Response(500, text="boom")
    payload = make_payload(validation_id)

    with pytest.raises(WebhookDeliveryError) as excinfo:
        await webhook_engine.deliver(validation_id=validation_id, webhook_url=WEBHOOK_URL, payload=payload)

    delivery = await webhook_engine.audit.get(excinfo.value.delivery_id)
    assert delivery.status == "failed"
    assert delivery.attempts == 3
    assert delivery.response_status == 500
    assert delivery.response_body == "boom"
    assert excinfo.value.attempts == 3
    assert sleep_recorder.delays == [1.0, 2.0]
    assert [r.method for r in webhook_requests] == ["POST", "POST", "POST"]
    # Every attempt carries the same payload
    assert len({r.content for r in webhook_requests}) == 1


@pytest.mark.asyncio
async def test_attempt_logs_name_the_delivery(webhook_engine, webhook_responder, validation_id, caplog):
    caplog.set_level(logging.INFO, logger="sp_validator")
    webhook_responder.handler = lambda request: httpx.Response(500, text="boom")

    with pytest.raises(WebhookDeliveryError) as excinfo:
        await webhook_engine.deliver(validation_id=validation_id, webhook_url=WEBHOOK_URL, payload=make_payload(validation_id))

    delivery_id = excinfo.value.delivery_id
    messages = [r.getMessage() for r in caplog.records if r.name == "sp_validator.services.webhook_sender"]
    assert f"Webhook {delivery_id} attempt 2 returned non-success status 500" in messages
    assert f"Webhook {delivery_id} failed after 3 attempts: Webhook returned status 500" in messages
    assert all(delivery_id in message for message in messages)


@pytest.mark.asyncio
async def test_backoff_is_capped(session_factory, webhook_client, webhook_responder, validation_id):
    webhook_responder.handler = lambda request: httpx.Response(503)
    sleep = SleepRecorder()
    engine = WebhookDeliveryEngine(
        session_factory,
        max_retries=7,
        backoff_base=1.0,
        backoff_cap=30.0,
        http_client=webhook_client,
        sleep=sleep,
    )

    with pytest.raises(WebhookDeliveryError):
        await engine.deliver(validation_id=validation_id, webhook_url=WEBHOOK_URL, payload={"status": "valid"})

    assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


@pytest.mark.asyncio
async def test_wrong_transport_falls_back_to_get_within_same_attempt(
    webhook_engine, webhook_requests, webhook_responder, validation_id, sleep_recorder
):
    def handler(request):
        if request.method == "POST":
            return httpx.Response(404, json=WRONG_TRANSPORT)
        return httpx.Response(200, text="ok")

    webhook_responder.handler = handler
    payload = make_payload(validation_id)

    delivery = await webhook_engine.deliver(validation_id=validation_id, webhook_url=WEBHOOK_URL, payload=payload)

    assert delivery.status == "delivered"
    assert delivery.attempts == 1
    assert [r.method for r in webhook_requests] == ["POST", "GET"]
    get_request = webhook_requests[1]
    assert get_request.url.params["validation_id"] == validation_id
    assert get_request.url.params["credentials_valid"] == "true"
    assert get_request.url.params["client_secret"] == "s3cret"
    assert sleep_recorder.delays == []


@pytest.mark.asyncio
async def test_plain_404_is_not_retried_as_get(
    webhook_engine, webhook_requests, webhook_responder, validation_id
):
    webhook_responder.handler = lambda request: httpx.Response(404, json={"message": "Not Found"})

    with pytest.raises(WebhookDeliveryError):
        await webhook_engine.deliver(validation_id=validation_id, webhook_url=WEBHOOK_URL, payload={"status": "valid"})

    assert [r.method for r in webhook_requests] == ["POST", "POST", "POST"]


@pytest.mark.asyncio
async def test_transport_error_then_success(
    webhook_engine, webhook_requests, webhook_responder, validation_id, sleep_recorder
):
    def handler(request):
        if len(webhook_requests) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(204)

    webhook_responder.handler = handler

    delivery = await webhook_engine.deliver(validation_id=validation_id, webhook_url=WEBHOOK_URL, payload={"status": "valid"})

    assert delivery.status == "delivered"
    assert delivery.attempts == 2
    assert delivery.response_status == 204
    assert sleep_recorder.delays == [1.0]


@pytest.mark.asyncio
async def test_response_body_truncated(webhook_engine, webhook_responder, validation_id):
    webhook_responder.handler = lambda request: httpx.Response(200, text="x" * 5000)

    delivery = await webhook_engine.deliver(validation_id=validation_id, webhook_url=WEBHOOK_URL, payload={"status": "valid"})

    assert len(delivery.response_body) == 1000


@pytest.mark.asyncio
async def test_payload_is_encrypted_in_audit_row(webhook_engine, validation_id, db):
    delivery = await webhook_engine.deliver(
        validation_id=validation_id, webhook_url=WEBHOOK_URL, payload=make_payload(validation_id)
    )

    raw = (
        await db.execute(sa.text("SELECT payload FROM webhook_deliveries WHERE id = :id"), {"id": delivery.id})
    ).scalar_one()
    assert "s3cret" not in raw


def test_engine_requires_at_least_one_attempt(session_factory):
    with pytest.raises(ValueError):
        WebhookDeliveryEngine(session_factory, max_retries=0)
