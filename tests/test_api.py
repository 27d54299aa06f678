"""Test health endpoint and basic API structure."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["app"] == "HookRelay"


@pytest.mark.asyncio
async def test_api_docs(client: AsyncClient):
    resp = await client.get("/docs")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_openapi_lists_webhook_routes(client: AsyncClient):
    resp = await client.get("/openapi.json")
    assert resp.status_code == 200
    paths = resp.json()["paths"]
    for path in (
        "/api/v1/webhooks/",
        "/api/v1/webhooks/events",
        "/api/v1/webhooks/event-log",
        "/api/v1/webhooks/{webhook_id}",
        "/api/v1/webhooks/{webhook_id}/rotate-secret",
        "/api/v1/webhooks/{webhook_id}/test",
        "/api/v1/webhooks/{webhook_id}/stats",
        "/api/v1/webhooks/{webhook_id}/deliveries",
        "/api/v1/webhooks/deliveries/{delivery_id}",
        "/api/v1/auth/login",
        "/api/v1/auth/me",
    ):
        assert path in paths


@pytest.mark.asyncio
async def test_lifespan_bootstraps_admin_and_dispatcher():
    from sqlalchemy import select

    from hookrelay.config import get_settings
    from hookrelay.database import async_session
    from hookrelay.main import app, lifespan
    from hookrelay.models import User

    settings = get_settings()
    async with lifespan(app):
        assert app.state.dispatcher is not None
        async with async_session() as db:
            result = await db.execute(select(User).where(User.email == settings.admin_email))
            admin = result.scalar_one()
        assert admin.company_id == settings.admin_company_id
        assert admin.is_superuser is True
    app.state.dispatcher = None
