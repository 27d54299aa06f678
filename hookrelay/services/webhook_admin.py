"""Webhook administration — tenant-scoped config management, secret rotation, test events and delivery stats."""

import json
import logging
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.models import utcnow
from hookrelay.models.webhook import (
    ConfigStatus,
    DeliveryStatus,
    WebhookConfig,
    WebhookDelivery,
    WebhookEvent,
)
from hookrelay.schemas import WebhookConfigCreate, WebhookConfigUpdate
from hookrelay.services import event_catalog
from hookrelay.services.event_catalog import TEST_EVENT_TYPE
from hookrelay.services.signing import generate_secret
from hookrelay.services.webhook_dispatcher import WebhookDispatcher
from hookrelay.services.webhook_store import WebhookNotFoundError, WebhookStore

logger = logging.getLogger(__name__)


# ── Response Schemas ─────────────────────────────────────
class DeliveryStats(BaseModel):
    webhook_id: str
    period_days: int
    total: int
    pending: int
    success: int
    failed: int
    dead_letter: int
    success_rate: float
    failure_rate: float
    dead_letter_rate: float
    avg_duration_ms: float


def _rate(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


# ── Configs ──────────────────────────────────────────────
async def create_config(
    db: AsyncSession,
    company_id: str,
    data: WebhookConfigCreate,
    created_by: Optional[str] = None,
) -> tuple[WebhookConfig, str]:
    """Register an endpoint; the returned secret is the only plaintext copy handed out."""
    secret = generate_secret()
    config = WebhookConfig(
        company_id=company_id,
        name=data.name,
        url=data.url,
        description=data.description,
        events=json.dumps(data.events),
        secret=secret,
        status=ConfigStatus.ACTIVE.value,
        headers=json.dumps(data.headers),
        timeout_ms=data.timeout_ms,
        max_retries=data.max_retries,
        created_by=created_by,
    )
    await WebhookStore(db).add_config(config)
    await db.commit()
    await db.refresh(config)
    logger.info(f"Webhook {config.id} created for company {company_id} -> {config.url}")
    return config, secret


async def get_config(db: AsyncSession, config_id: str, company_id: str) -> WebhookConfig:
    return await WebhookStore(db).get_config(config_id, company_id)


async def list_configs(
    db: AsyncSession,
    company_id: str,
    status: Optional[str] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 20,
) -> tuple[list[WebhookConfig], int]:
    return await WebhookStore(db).list_configs(company_id, status=status, search=search, skip=skip, limit=limit)


async def update_config(
    db: AsyncSession,
    config_id: str,
    company_id: str,
    data: WebhookConfigUpdate,
) -> WebhookConfig:
    config = await WebhookStore(db).get_config(config_id, company_id)
    updates = data.model_dump(exclude_unset=True)

    if "events" in updates:
        updates["events"] = json.dumps(updates["events"] or [])
    if "headers" in updates:
        updates["headers"] = json.dumps(updates["headers"] or {})
    # Required columns cannot be cleared
    for key in ("name", "url", "timeout_ms", "max_retries", "status"):
        if key in updates and updates[key] is None:
            updates.pop(key)

    # Reset dead-letter counter when re-enabled
    if updates.get("status") == ConfigStatus.ACTIVE.value and config.status != ConfigStatus.ACTIVE.value:
        config.consecutive_dead_letters = 0
        config.suspended_at = None
        logger.info(f"Webhook {config.id} reactivated from {config.status}")

    for key, val in updates.items():
        setattr(config, key, val)

    await db.commit()
    await db.refresh(config)
    return config


async def delete_config(db: AsyncSession, config_id: str, company_id: str) -> None:
    """Delete an endpoint together with its delivery history."""
    store = WebhookStore(db)
    config = await store.get_config(config_id, company_id)
    await store.delete_config(config)
    await db.commit()
    logger.info(f"Webhook {config_id} deleted for company {company_id}")


async def rotate_secret(db: AsyncSession, config_id: str, company_id: str) -> str:
    config = await WebhookStore(db).get_config(config_id, company_id)
    secret = generate_secret()
    config.secret = secret
    await db.commit()
    logger.info(f"Webhook {config_id} secret rotated")
    return secret


async def send_test_event(
    db: AsyncSession,
    dispatcher: WebhookDispatcher,
    config_id: str,
    company_id: str,
) -> str:
    """Queue a ``webhook.test`` event to one endpoint; returns the event id."""
    config = await WebhookStore(db).get_config(config_id, company_id)
    payload = {
        "message": "This is a test event to verify your webhook endpoint.",
        "webhook_id": config.id,
        "webhook_name": config.name,
    }
    return await dispatcher.send_to_config(
        config.id,
        company_id,
        TEST_EVENT_TYPE,
        payload,
        metadata={"is_test": True},
    )


# ── Deliveries & events ─────────────────────────────────
async def get_delivery_stats(
    db: AsyncSession,
    config_id: str,
    company_id: str,
    period_days: int = 7,
) -> DeliveryStats:
    store = WebhookStore(db)
    config = await store.get_config(config_id, company_id)
    since = utcnow() - timedelta(days=period_days)

    counts = await store.count_deliveries_by_status(config.id, since)
    pending = counts.get(DeliveryStatus.PENDING.value, 0)
    success = counts.get(DeliveryStatus.SUCCESS.value, 0)
    failed = counts.get(DeliveryStatus.FAILED.value, 0)
    dead_letter = counts.get(DeliveryStatus.DEAD_LETTER.value, 0)
    total = pending + success + failed + dead_letter

    avg_duration = await store.average_success_duration(config.id, since)

    return DeliveryStats(
        webhook_id=config.id,
        period_days=period_days,
        total=total,
        pending=pending,
        success=success,
        failed=failed,
        dead_letter=dead_letter,
        success_rate=_rate(success, total),
        failure_rate=_rate(failed, total),
        dead_letter_rate=_rate(dead_letter, total),
        avg_duration_ms=round(avg_duration, 2),
    )


async def list_deliveries(
    db: AsyncSession,
    config_id: str,
    company_id: str,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 20,
) -> tuple[list[tuple[WebhookDelivery, WebhookEvent]], int]:
    store = WebhookStore(db)
    config = await store.get_config(config_id, company_id)
    return await store.list_deliveries(config.id, status=status, skip=skip, limit=limit)


async def get_delivery(
    db: AsyncSession, delivery_id: str, company_id: str
) -> tuple[WebhookDelivery, WebhookEvent]:
    delivery = await WebhookStore(db).get_company_delivery(delivery_id, company_id)
    event = await db.get(WebhookEvent, delivery.event_id)
    if event is None:
        raise WebhookNotFoundError("Delivery not found")
    return delivery, event


async def list_events(
    db: AsyncSession,
    company_id: str,
    event_type: Optional[str] = None,
    skip: int = 0,
    limit: int = 20,
) -> tuple[list[tuple[WebhookEvent, int]], int]:
    return await WebhookStore(db).list_events(company_id, event_type=event_type, skip=skip, limit=limit)


def list_event_types() -> list[dict[str, str]]:
    return event_catalog.list_event_types()
