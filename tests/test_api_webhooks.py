from __future__ import annotations

import asyncio
import json
import uuid

import pytest

from webhook_service.domain.enums import DeliveryStatus, WebhookStatus
from webhook_service.services.signing import verify_signature

from tests.utils import make_headers


async def _create(client, headers, url, **overrides):
    body = {"name": "Partner CRM", "url": url, "events": ["lead.created"], **overrides}
    resp = await client.post("/api/v1/webhooks", json=body, headers=headers)
    assert resp.status == 201, await resp.text()
    return await resp.json()


@pytest.mark.asyncio
async def test_health(service_client):
    resp = await service_client.get("/health")
    assert resp.status == 200
    assert (await resp.json())["status"] == "ok"


@pytest.mark.asyncio
async def test_missing_user_header_returns_401(service_client):
    resp = await service_client.get("/api/v1/webhooks")
    assert resp.status == 401


@pytest.mark.asyncio
async def test_member_cannot_create(service_client, workspace_id):
    resp = await service_client.post(
        "/api/v1/webhooks",
        json={"name": "x", "url": "https://example.com/h", "events": ["lead.created"]},
        headers=make_headers(workspace_id, role="member"),
    )
    assert resp.status == 403


@pytest.mark.asyncio
async def test_event_types_exclude_test_event(service_client, workspace_id):
    resp = await service_client.get("/api/v1/webhooks/event-types", headers=make_headers(workspace_id))
    assert resp.status == 200
    types = (await resp.json())["event_types"]
    assert "lead.created" in types
    assert "webhook.test" not in types
    assert len(types) == 9


@pytest.mark.asyncio
async def test_create_returns_secret_once(service_client, workspace_id, receiver):
    headers = make_headers(workspace_id)
    created = await _create(service_client, headers, receiver.url())

    assert len(created["secret_key"]) == 64
    assert created["status"] == "active"
    assert created["timeout_seconds"] == 30.0
    assert created["workspace_id"] == str(workspace_id)

    resp = await service_client.get(f"/api/v1/webhooks/{created['id']}", headers=headers)
    assert resp.status == 200
    assert "secret_key" not in await resp.json()

    resp = await service_client.get("/api/v1/webhooks", headers=headers)
    listing = await resp.json()
    assert listing["total"] == 1
    assert "secret_key" not in listing["webhooks"][0]


@pytest.mark.asyncio
async def test_create_validation_errors(service_client, workspace_id):
    headers = make_headers(workspace_id)
    for body in (
        {"name": "x", "url": "nope", "events": ["lead.created"]},
        {"name": "x", "url": "https://example.com", "events": ["webhook.test"]},
        {"name": "x", "url": "https://example.com", "events": ["lead.created"], "headers": "{oops"},
        {"name": "x", "url": "https://example.com", "events": ["lead.created"], "max_retries": 50},
        {
            "name": "x",
            "url": "https://example.com",
            "events": ["lead.created"],
            "transform_enabled": True,
        },
    ):
        resp = await service_client.post("/api/v1/webhooks", json=body, headers=headers)
        assert resp.status == 400, body


@pytest.mark.asyncio
async def test_other_workspace_cannot_see_subscription(service_client, workspace_id, receiver):
    created = await _create(service_client, make_headers(workspace_id), receiver.url())

    resp = await service_client.get(
        f"/api/v1/webhooks/{created['id']}", headers=make_headers(uuid.uuid4())
    )
    assert resp.status == 404


@pytest.mark.asyncio
async def test_update_enable_disable_delete(service_client, workspace_id, receiver):
    headers = make_headers(workspace_id)
    created = await _create(service_client, headers, receiver.url())
    webhook_url = f"/api/v1/webhooks/{created['id']}"

    resp = await service_client.patch(
        webhook_url, json={"max_retries": 5, "headers": {"X-Partner": "1"}}, headers=headers
    )
    assert resp.status == 200
    updated = await resp.json()
    assert updated["max_retries"] == 5
    assert updated["headers"] == {"X-Partner": "1"}
    assert updated["name"] == "Partner CRM"

    resp = await service_client.patch(webhook_url, json={"url": None}, headers=headers)
    assert resp.status == 400

    resp = await service_client.post(f"{webhook_url}/disable", headers=headers)
    assert (await resp.json())["status"] == "inactive"
    resp = await service_client.post(f"{webhook_url}/enable", headers=headers)
    assert (await resp.json())["status"] == "active"

    resp = await service_client.delete(webhook_url, headers=headers)
    assert resp.status == 204
    resp = await service_client.get(webhook_url, headers=headers)
    assert resp.status == 404


@pytest.mark.asyncio
async def test_rotate_secret(service_client, workspace_id, receiver):
    headers = make_headers(workspace_id)
    created = await _create(service_client, headers, receiver.url())

    resp = await service_client.post(f"/api/v1/webhooks/{created['id']}/rotate-secret", headers=headers)
    assert resp.status == 200
    rotated = (await resp.json())["secret_key"]
    assert len(rotated) == 64
    assert rotated != created["secret_key"]


@pytest.mark.asyncio
async def test_trigger_delivers_signed_payload(service_client, workspace_id, receiver):
    headers = make_headers(workspace_id)
    created = await _create(service_client, headers, receiver.url())

    resp = await service_client.post(
        "/api/v1/webhooks/trigger",
        json={"event_type": "lead.created", "payload": {"id": 5, "name": "Ada"}},
        headers=headers,
    )
    assert resp.status == 202
    [delivery] = (await resp.json())["deliveries"]
    assert delivery["status"] == "success"

    [request] = receiver.received
    assert json.loads(request.body) == {"id": 5, "name": "Ada"}
    assert verify_signature(request.body, created["secret_key"], request.headers["X-Webhook-Signature"])

    resp = await service_client.get(f"/api/v1/webhooks/{created['id']}/stats", headers=headers)
    stats = await resp.json()
    assert stats["total_deliveries"] == 1
    assert stats["success_rate"] == 100.0


@pytest.mark.asyncio
async def test_trigger_survives_delete_during_delivery(service_client, workspace_id, receiver):
    receiver.delay = 0.5
    headers = make_headers(workspace_id)
    created = await _create(service_client, headers, receiver.url("/slow"))

    async def trigger():
        return await service_client.post(
            "/api/v1/webhooks/trigger",
            json={"event_type": "lead.created", "payload": {"id": 5}},
            headers=headers,
        )

    task = asyncio.create_task(trigger())
    while not receiver.received:
        await asyncio.sleep(0.01)
    resp = await service_client.delete(f"/api/v1/webhooks/{created['id']}", headers=headers)
    assert resp.status == 204

    resp = await task
    assert resp.status == 202
    [delivery] = (await resp.json())["deliveries"]
    assert delivery["status"] == "success"


@pytest.mark.asyncio
async def test_trigger_rejects_reserved_event(service_client, workspace_id):
    resp = await service_client.post(
        "/api/v1/webhooks/trigger",
        json={"event_type": "webhook.test", "payload": {}},
        headers=make_headers(workspace_id),
    )
    assert resp.status == 400


@pytest.mark.asyncio
async def test_test_endpoint(service_client, workspace_id, receiver):
    headers = make_headers(workspace_id)
    created = await _create(service_client, headers, receiver.url())

    resp = await service_client.post(f"/api/v1/webhooks/{created['id']}/test", headers=headers)
    assert resp.status == 200
    delivery = await resp.json()
    assert delivery["event_type"] == "webhook.test"
    assert receiver.received[0].headers["X-Webhook-Test"] == "true"


@pytest.mark.asyncio
async def test_delivery_history_and_manual_retry(service_client, workspace_id, receiver, subscriptions):
    headers = make_headers(workspace_id)
    created = await _create(service_client, headers, receiver.url(), retry_enabled=False)
    base = f"/api/v1/webhooks/{created['id']}"

    receiver.status = 500
    await service_client.post(
        "/api/v1/webhooks/trigger",
        json={"event_type": "lead.created", "payload": {"id": 1}},
        headers=headers,
    )
    assert subscriptions.items[uuid.UUID(created["id"])].status == WebhookStatus.FAILED

    resp = await service_client.get(f"{base}/deliveries?status=failed", headers=headers)
    page = await resp.json()
    assert page["total"] == 1
    delivery_id = page["deliveries"][0]["id"]

    resp = await service_client.get(f"{base}/deliveries/{delivery_id}", headers=headers)
    assert (await resp.json())["error_message"] == "HTTP 500"

    receiver.status = 200
    resp = await service_client.post(f"{base}/deliveries/{delivery_id}/retry", headers=headers)
    assert resp.status == 200
    assert (await resp.json())["status"] == DeliveryStatus.SUCCESS.value

    resp = await service_client.post(f"{base}/deliveries/{delivery_id}/retry", headers=headers)
    assert resp.status == 409

    resp = await service_client.get(f"{base}/deliveries?status=bogus", headers=headers)
    assert resp.status == 400


@pytest.mark.asyncio
async def test_unknown_ids(service_client, workspace_id):
    headers = make_headers(workspace_id)
    resp = await service_client.get("/api/v1/webhooks/not-a-uuid", headers=headers)
    assert resp.status == 400
    resp = await service_client.post(f"/api/v1/webhooks/{uuid.uuid4()}/test", headers=headers)
    assert resp.status == 404


@pytest.mark.asyncio
async def test_list_pagination(service_client, workspace_id, receiver):
    headers = make_headers(workspace_id)
    for _ in range(3):
        await _create(service_client, headers, receiver.url())

    resp = await service_client.get("/api/v1/webhooks?limit=2&offset=2", headers=headers)
    page = await resp.json()
    assert page["total"] == 3
    assert page["page"] == 2
    assert page["page_size"] == 2
    assert len(page["webhooks"]) == 1

    resp = await service_client.get("/api/v1/webhooks?limit=many", headers=headers)
    assert resp.status == 400
