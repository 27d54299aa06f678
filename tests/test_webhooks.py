"""Tests for the webhook management API."""

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient

from hookrelay.api.webhooks import get_dispatcher
from hookrelay.database import async_session
from hookrelay.main import app
from hookrelay.models import User
from hookrelay.models.webhook import ConfigStatus, DeliveryStatus
from hookrelay.schemas import MASKED_SECRET
from hookrelay.services.auth import create_access_token, hash_password
from hookrelay.services.webhook_store import WebhookStore

COMPANY_ID = "company-a"
OTHER_COMPANY_ID = "company-b"
BASE = "/api/v1/webhooks"


async def _user_headers(email: str, company_id: str) -> dict:
    async with async_session() as db:
        db.add(User(email=email, company_id=company_id, hashed_password=hash_password("secret123")))
        await db.commit()
    return {"Authorization": f"Bearer {create_access_token({'sub': email})}"}


@pytest_asyncio.fixture
async def auth_headers():
    return await _user_headers("ops@example.com", COMPANY_ID)


@pytest_asyncio.fixture
async def other_headers():
    return await _user_headers("rival@example.com", OTHER_COMPANY_ID)


async def _create(client: AsyncClient, auth_headers: dict, **overrides) -> dict:
    payload = {
        "name": "Order sync",
        "url": "https://erp.example.com/hooks",
        "events": ["order.created"],
    }
    payload.update(overrides)
    resp = await client.post(f"{BASE}/", json=payload, headers=auth_headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ── Auth ─────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_requires_authentication(client: AsyncClient):
    resp = await client.get(f"{BASE}/")
    assert resp.status_code in (401, 403)


@pytest.mark.asyncio
async def test_rejects_invalid_token(client: AsyncClient):
    resp = await client.get(f"{BASE}/", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


# ── Catalog ──────────────────────────────────────────────
@pytest.mark.asyncio
async def test_list_event_types(client: AsyncClient, auth_headers):
    resp = await client.get(f"{BASE}/events", headers=auth_headers)
    assert resp.status_code == 200
    values = [item["value"] for item in resp.json()]
    assert "order.created" in values
    assert "invoice.authorized" in values


# ── Config CRUD ──────────────────────────────────────────
@pytest.mark.asyncio
async def test_create_returns_secret_then_masks(client: AsyncClient, auth_headers):
    created = await _create(client, auth_headers, headers={"X-Api-Key": "abc"})
    assert created["secret"].startswith("whsec_")
    assert created["status"] == ConfigStatus.ACTIVE.value
    assert created["events"] == ["order.created"]
    assert created["headers"] == {"X-Api-Key": "abc"}
    assert created["timeout_ms"] == 10000
    assert created["max_retries"] == 3
    assert created["created_by"] is not None

    resp = await client.get(f"{BASE}/{created['id']}", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["secret"] == MASKED_SECRET


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"events": ["not.a.real.event"]},
        {"events": []},
        {"url": "ftp://erp.example.com/hooks"},
        {"url": "http://169.254.169.254/latest"},
        {"timeout_ms": 500},
        {"max_retries": 9},
        {"headers": {"User-Agent": "spoofed"}},
        {"name": ""},
    ],
)
async def test_create_validation(client: AsyncClient, auth_headers, overrides):
    payload = {"name": "Order sync", "url": "https://erp.example.com/hooks", "events": ["order.created"]}
    payload.update(overrides)
    resp = await client.post(f"{BASE}/", json=payload, headers=auth_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_list_is_tenant_scoped(client: AsyncClient, auth_headers, other_headers):
    await _create(client, auth_headers, name="Mine")
    await _create(client, auth_headers, name="Also mine", url="https://crm.example.com/h")
    await _create(client, other_headers, name="Theirs")

    resp = await client.get(f"{BASE}/", headers=auth_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 2
    assert {item["name"] for item in data["items"]} == {"Mine", "Also mine"}
    assert all(item["secret"] == MASKED_SECRET for item in data["items"])

    resp = await client.get(f"{BASE}/", params={"q": "crm"}, headers=auth_headers)
    assert [item["name"] for item in resp.json()["items"]] == ["Also mine"]


@pytest.mark.asyncio
async def test_other_tenant_gets_404(client: AsyncClient, auth_headers, other_headers):
    created = await _create(client, auth_headers)
    webhook_id = created["id"]

    assert (await client.get(f"{BASE}/{webhook_id}", headers=other_headers)).status_code == 404
    assert (await client.patch(f"{BASE}/{webhook_id}", json={"name": "x"}, headers=other_headers)).status_code == 404
    assert (await client.delete(f"{BASE}/{webhook_id}", headers=other_headers)).status_code == 404
    assert (await client.post(f"{BASE}/{webhook_id}/rotate-secret", headers=other_headers)).status_code == 404
    assert (await client.get(f"{BASE}/{webhook_id}/stats", headers=other_headers)).status_code == 404
    assert (await client.get(f"{BASE}/{webhook_id}/deliveries", headers=other_headers)).status_code == 404

    # Still there for the owner
    assert (await client.get(f"{BASE}/{webhook_id}", headers=auth_headers)).status_code == 200


@pytest.mark.asyncio
async def test_update_webhook(client: AsyncClient, auth_headers):
    created = await _create(client, auth_headers)
    resp = await client.patch(
        f"{BASE}/{created['id']}",
        json={"name": "Renamed", "events": ["order.created", "order.cancelled"], "status": "INACTIVE"},
        headers=auth_headers,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["name"] == "Renamed"
    assert data["events"] == ["order.created", "order.cancelled"]
    assert data["status"] == ConfigStatus.INACTIVE.value

    resp = await client.patch(f"{BASE}/{created['id']}", json={"status": "SUSPENDED"}, headers=auth_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_delete_webhook(client: AsyncClient, auth_headers):
    created = await _create(client, auth_headers)
    resp = await client.delete(f"{BASE}/{created['id']}", headers=auth_headers)
    assert resp.status_code == 204
    assert (await client.get(f"{BASE}/{created['id']}", headers=auth_headers)).status_code == 404


@pytest.mark.asyncio
async def test_unknown_webhook_404(client: AsyncClient, auth_headers):
    resp = await client.get(f"{BASE}/does-not-exist", headers=auth_headers)
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Webhook not found"


@pytest.mark.asyncio
async def test_rotate_secret(client: AsyncClient, auth_headers):
    created = await _create(client, auth_headers)
    resp = await client.post(f"{BASE}/{created['id']}/rotate-secret", headers=auth_headers)
    assert resp.status_code == 200
    secret = resp.json()["secret"]
    assert secret.startswith("whsec_")
    assert secret != created["secret"]


# ── Test event, deliveries, stats ────────────────────────
@pytest.mark.asyncio
async def test_send_test_event_and_inspect_delivery(client: AsyncClient, auth_headers, make_dispatcher, receiver):
    rx = receiver(httpx.Response(200, text="pong"))
    dispatcher = make_dispatcher(rx)
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    created = await _create(client, auth_headers)
    resp = await client.post(f"{BASE}/{created['id']}/test", headers=auth_headers)
    assert resp.status_code == 202
    event_id = resp.json()["event_id"]
    await dispatcher.drain()

    assert len(rx.requests) == 1

    resp = await client.get(f"{BASE}/{created['id']}/deliveries", headers=auth_headers)
    assert resp.status_code == 200
    page = resp.json()
    assert page["total"] == 1
    item = page["items"][0]
    assert item["event_id"] == event_id
    assert item["event_type"] == "webhook.test"
    assert item["status"] == DeliveryStatus.SUCCESS.value
    assert item["response_body"] == "pong"

    resp = await client.get(f"{BASE}/deliveries/{item['id']}", headers=auth_headers)
    assert resp.status_code == 200
    detail = resp.json()
    assert detail["request_body"]["type"] == "webhook.test"
    assert detail["request_body"]["id"] == event_id

    resp = await client.get(f"{BASE}/{created['id']}/stats", headers=auth_headers)
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["total"] == 1
    assert stats["success"] == 1
    assert stats["success_rate"] == 100.0


@pytest.mark.asyncio
async def test_delivery_detail_other_tenant(client: AsyncClient, auth_headers, other_headers, make_dispatcher, receiver):
    dispatcher = make_dispatcher(receiver())
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    created = await _create(client, auth_headers)
    await client.post(f"{BASE}/{created['id']}/test", headers=auth_headers)
    await dispatcher.drain()

    async with async_session() as db:
        rows, _ = await WebhookStore(db).list_deliveries(created["id"])
    delivery_id = rows[0][0].id

    resp = await client.get(f"{BASE}/deliveries/{delivery_id}", headers=other_headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_stats_period_bounds(client: AsyncClient, auth_headers):
    created = await _create(client, auth_headers)
    assert (await client.get(f"{BASE}/{created['id']}/stats", params={"period_days": 0}, headers=auth_headers)).status_code == 422
    assert (await client.get(f"{BASE}/{created['id']}/stats", params={"period_days": 91}, headers=auth_headers)).status_code == 422
    resp = await client.get(f"{BASE}/{created['id']}/stats", params={"period_days": 30}, headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["period_days"] == 30


@pytest.mark.asyncio
async def test_event_log(client: AsyncClient, auth_headers, other_headers, make_dispatcher, receiver):
    dispatcher = make_dispatcher(receiver())
    await _create(client, auth_headers)
    await dispatcher.emit(COMPANY_ID, "order.created", {"order_id": "o-1"}, entity_type="order", entity_id="o-1")
    await dispatcher.emit(COMPANY_ID, "stock.low", {"sku": "A1"})
    await dispatcher.emit(OTHER_COMPANY_ID, "order.created", {"order_id": "o-2"})
    await dispatcher.drain()

    resp = await client.get(f"{BASE}/event-log", headers=auth_headers)
    assert resp.status_code == 200
    page = resp.json()
    assert page["total"] == 2
    by_type = {item["event_type"]: item for item in page["items"]}
    assert by_type["order.created"]["delivery_count"] == 1
    assert by_type["order.created"]["entity_id"] == "o-1"
    assert by_type["stock.low"]["delivery_count"] == 0

    resp = await client.get(f"{BASE}/event-log", params={"event_type": "stock.low"}, headers=auth_headers)
    assert resp.json()["total"] == 1

    resp = await client.get(f"{BASE}/event-log", headers=other_headers)
    assert resp.json()["total"] == 1
