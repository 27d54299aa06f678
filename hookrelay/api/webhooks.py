"""Webhook management API — endpoint configs, test events, delivery log and stats."""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.api.auth import get_company_id, get_current_user
from hookrelay.database import get_db
from hookrelay.models import User
from hookrelay.schemas import (
    DeliveryDetailOut,
    DeliveryOut,
    DeliveryPage,
    EventOut,
    EventPage,
    EventTypeOut,
    QueuedTestEventOut,
    SecretOut,
    WebhookConfigCreate,
    WebhookConfigCreatedOut,
    WebhookConfigOut,
    WebhookConfigPage,
    WebhookConfigUpdate,
)
from hookrelay.services import webhook_admin
from hookrelay.services.webhook_admin import DeliveryStats
from hookrelay.services.webhook_dispatcher import WebhookDispatcher

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

ConfigStatusFilter = Literal["ACTIVE", "INACTIVE", "SUSPENDED"]
DeliveryStatusFilter = Literal["PENDING", "SUCCESS", "FAILED", "DEAD_LETTER"]


def get_dispatcher(request: Request) -> WebhookDispatcher:
    """Dispatcher owned by the app; created on first use when the lifespan has not run."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = WebhookDispatcher()
        request.app.state.dispatcher = dispatcher
    return dispatcher


# ── Catalog ──────────────────────────────────────────────
@router.get("/events", response_model=list[EventTypeOut])
async def list_event_types(_: User = Depends(get_current_user)):
    """List all event types an endpoint can subscribe to."""
    return webhook_admin.list_event_types()


@router.get("/event-log", response_model=EventPage)
async def list_events(
    event_type: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    company_id: str = Depends(get_company_id),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await webhook_admin.list_events(db, company_id, event_type=event_type, skip=skip, limit=limit)
    return EventPage(
        items=[EventOut.from_model(event, count) for event, count in rows],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/deliveries/{delivery_id}", response_model=DeliveryDetailOut)
async def get_delivery(
    delivery_id: str,
    company_id: str = Depends(get_company_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        delivery, event = await webhook_admin.get_delivery(db, delivery_id, company_id)
    except ValueError as e:
        raise HTTPException(404, str(e))
    return DeliveryDetailOut.from_model(delivery, event)


# ── Configs ──────────────────────────────────────────────
@router.post("/", response_model=WebhookConfigCreatedOut, status_code=201)
async def create_webhook(
    data: WebhookConfigCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    config, secret = await webhook_admin.create_config(db, user.company_id, data, created_by=user.id)
    return WebhookConfigCreatedOut.from_model(config, secret=secret)


@router.get("/", response_model=WebhookConfigPage)
async def list_webhooks(
    status: Optional[ConfigStatusFilter] = None,
    q: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    company_id: str = Depends(get_company_id),
    db: AsyncSession = Depends(get_db),
):
    items, total = await webhook_admin.list_configs(
        db, company_id, status=status, search=q, skip=skip, limit=limit
    )
    return WebhookConfigPage(
        items=[WebhookConfigOut.from_model(config) for config in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/{webhook_id}", response_model=WebhookConfigOut)
async def get_webhook(
    webhook_id: str,
    company_id: str = Depends(get_company_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        config = await webhook_admin.get_config(db, webhook_id, company_id)
    except ValueError as e:
        raise HTTPException(404, str(e))
    return WebhookConfigOut.from_model(config)


@router.patch("/{webhook_id}", response_model=WebhookConfigOut)
async def update_webhook(
    webhook_id: str,
    data: WebhookConfigUpdate,
    company_id: str = Depends(get_company_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        config = await webhook_admin.update_config(db, webhook_id, company_id, data)
    except ValueError as e:
        raise HTTPException(404, str(e))
    return WebhookConfigOut.from_model(config)


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: str,
    company_id: str = Depends(get_company_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        await webhook_admin.delete_config(db, webhook_id, company_id)
    except ValueError as e:
        raise HTTPException(404, str(e))


@router.post("/{webhook_id}/rotate-secret", response_model=SecretOut)
async def rotate_secret(
    webhook_id: str,
    company_id: str = Depends(get_company_id),
    db: AsyncSession = Depends(get_db),
):
    """Issue a new signing secret; the old one stops verifying immediately."""
    try:
        secret = await webhook_admin.rotate_secret(db, webhook_id, company_id)
    except ValueError as e:
        raise HTTPException(404, str(e))
    return SecretOut(secret=secret)


@router.post("/{webhook_id}/test", response_model=QueuedTestEventOut, status_code=202)
async def test_webhook(
    webhook_id: str,
    company_id: str = Depends(get_company_id),
    db: AsyncSession = Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """Queue a webhook.test event to this endpoint only."""
    try:
        event_id = await webhook_admin.send_test_event(db, dispatcher, webhook_id, company_id)
    except ValueError as e:
        raise HTTPException(404, str(e))
    return QueuedTestEventOut(event_id=event_id)


@router.get("/{webhook_id}/stats", response_model=DeliveryStats)
async def webhook_stats(
    webhook_id: str,
    period_days: int = Query(7, ge=1, le=90),
    company_id: str = Depends(get_company_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await webhook_admin.get_delivery_stats(db, webhook_id, company_id, period_days=period_days)
    except ValueError as e:
        raise HTTPException(404, str(e))


@router.get("/{webhook_id}/deliveries", response_model=DeliveryPage)
async def list_deliveries(
    webhook_id: str,
    status: Optional[DeliveryStatusFilter] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    company_id: str = Depends(get_company_id),
    db: AsyncSession = Depends(get_db),
):
    """List delivery history for a webhook."""
    try:
        rows, total = await webhook_admin.list_deliveries(
            db, webhook_id, company_id, status=status, skip=skip, limit=limit
        )
    except ValueError as e:
        raise HTTPException(404, str(e))
    return DeliveryPage(
        items=[DeliveryOut.from_model(delivery, event) for delivery, event in rows],
        total=total,
        skip=skip,
        limit=limit,
    )
