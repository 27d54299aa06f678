"""Webhook repository — tenant-scoped queries over configs, events and deliveries."""

import json
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, and_, case, func, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.models import utcnow
from hookrelay.models.webhook import (
    ConfigStatus,
    DeliveryStatus,
    WebhookConfig,
    WebhookDelivery,
    WebhookEvent,
)


class WebhookNotFoundError(ValueError):
    """Config, event or delivery does not exist for the requesting company."""


class WebhookStore:
    """Persistence operations used by the dispatcher, the scheduler and the admin API."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Configs ──────────────────────────────────────────
    async def add_config(self, config: WebhookConfig) -> WebhookConfig:
        self.db.add(config)
        await self.db.flush()
        return config

    async def get_config(self, config_id: str, company_id: str) -> WebhookConfig:
        result = await self.db.execute(
            select(WebhookConfig).where(
                WebhookConfig.id == config_id,
                WebhookConfig.company_id == company_id,
            )
        )
        config = result.scalar_one_or_none()
        if not config:
            raise WebhookNotFoundError("Webhook not found")
        return config

    async def list_configs(
        self,
        company_id: str,
        status: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[WebhookConfig], int]:
        conditions = [WebhookConfig.company_id == company_id]
        if status:
            conditions.append(WebhookConfig.status == status)
        if search:
            conditions.append(
                WebhookConfig.name.ilike(f"%{search}%") | WebhookConfig.url.ilike(f"%{search}%")
            )
        total = (await self.db.execute(
            select(func.count(WebhookConfig.id)).where(*conditions)
        )).scalar() or 0
        result = await self.db.execute(
            select(WebhookConfig)
            .where(*conditions)
            .order_by(WebhookConfig.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def find_subscribed_configs(self, company_id: str, event_type: str) -> list[WebhookConfig]:
        """ACTIVE configs of the company whose subscription list contains ``event_type``."""
        result = await self.db.execute(
            select(WebhookConfig).where(
                WebhookConfig.company_id == company_id,
                WebhookConfig.status == ConfigStatus.ACTIVE.value,
            )
        )
        # Subscriptions are JSON text; match exactly in Python
        return [c for c in result.scalars().all() if c.subscribes_to(event_type)]

    async def delete_config(self, config: WebhookConfig) -> None:
        await self.db.delete(config)
        await self.db.flush()

    # ── Dead-letter counter ──────────────────────────────
    async def record_dead_letter(self, config_id: str, threshold: int) -> tuple[int, str]:
        """Atomically bump the dead-letter counter and suspend at ``threshold``.

        Returns the new counter value and the resulting config status.
        """
        counter = WebhookConfig.consecutive_dead_letters
        reaches_threshold = and_(
            WebhookConfig.status == ConfigStatus.ACTIVE.value,
            counter + 1 >= threshold,
        )
        now = utcnow()
        stmt = (
            update(WebhookConfig)
            .where(WebhookConfig.id == config_id)
            .values(
                consecutive_dead_letters=counter + 1,
                status=case(
                    (reaches_threshold, ConfigStatus.SUSPENDED.value),
                    else_=WebhookConfig.status,
                ),
                suspended_at=case(
                    (reaches_threshold, literal(now, DateTime(timezone=True))),
                    else_=WebhookConfig.suspended_at,
                ),
                updated_at=now,
            )
            .returning(WebhookConfig.consecutive_dead_letters, WebhookConfig.status)
            .execution_options(synchronize_session=False)
        )
        row = (await self.db.execute(stmt)).one_or_none()
        if row is None:
            raise WebhookNotFoundError("Webhook not found")
        return row[0], row[1]

    async def reset_dead_letters(self, config_id: str) -> None:
        await self.db.execute(
            update(WebhookConfig)
            .where(
                WebhookConfig.id == config_id,
                WebhookConfig.consecutive_dead_letters != 0,
            )
            .values(consecutive_dead_letters=0)
            .execution_options(synchronize_session=False)
        )

    # ── Events ───────────────────────────────────────────
    async def add_event(
        self,
        company_id: str,
        event_type: str,
        payload,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> WebhookEvent:
        event = WebhookEvent(
            company_id=company_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=json.dumps(payload, default=str),
            metadata_=json.dumps(metadata or {}, default=str),
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def list_events(
        self,
        company_id: str,
        event_type: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[tuple[WebhookEvent, int]], int]:
        """Events of the company, newest first, each with its delivery count."""
        conditions = [WebhookEvent.company_id == company_id]
        if event_type:
            conditions.append(WebhookEvent.event_type == event_type)
        total = (await self.db.execute(
            select(func.count(WebhookEvent.id)).where(*conditions)
        )).scalar() or 0

        delivery_counts = (
            select(WebhookDelivery.event_id, func.count(WebhookDelivery.id).label("n"))
            .group_by(WebhookDelivery.event_id)
            .subquery()
        )
        result = await self.db.execute(
            select(WebhookEvent, func.coalesce(delivery_counts.c.n, 0))
            .outerjoin(delivery_counts, delivery_counts.c.event_id == WebhookEvent.id)
            .where(*conditions)
            .order_by(WebhookEvent.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return [(event, count) for event, count in result.all()], total

    # ── Deliveries ───────────────────────────────────────
    async def add_delivery(
        self,
        event: WebhookEvent,
        config: WebhookConfig,
        next_attempt_at: Optional[datetime] = None,
        leased_until: Optional[datetime] = None,
        lease_token: Optional[str] = None,
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            webhook_id=config.id,
            event_id=event.id,
            status=DeliveryStatus.PENDING.value,
            attempt=0,
            request_url=config.url,
            next_attempt_at=next_attempt_at,
            leased_until=leased_until,
            lease_token=lease_token,
        )
        self.db.add(delivery)
        await self.db.flush()
        return delivery

    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        result = await self.db.execute(select(WebhookDelivery).where(WebhookDelivery.id == delivery_id))
        return result.scalar_one_or_none()

    async def get_delivery_for(self, event_id: str, webhook_id: str) -> Optional[WebhookDelivery]:
        result = await self.db.execute(
            select(WebhookDelivery).where(
                WebhookDelivery.event_id == event_id,
                WebhookDelivery.webhook_id == webhook_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_company_delivery(self, delivery_id: str, company_id: str) -> WebhookDelivery:
        result = await self.db.execute(
            select(WebhookDelivery)
            .join(WebhookConfig, WebhookConfig.id == WebhookDelivery.webhook_id)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookConfig.company_id == company_id,
            )
        )
        delivery = result.scalar_one_or_none()
        if not delivery:
            raise WebhookNotFoundError("Delivery not found")
        return delivery

    async def list_deliveries(
        self,
        webhook_id: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[tuple[WebhookDelivery, WebhookEvent]], int]:
        """Deliveries of a config, newest first, joined with their event."""
        conditions = [WebhookDelivery.webhook_id == webhook_id]
        if status:
            conditions.append(WebhookDelivery.status == status)
        total = (await self.db.execute(
            select(func.count(WebhookDelivery.id)).where(*conditions)
        )).scalar() or 0
        result = await self.db.execute(
            select(WebhookDelivery, WebhookEvent)
            .join(WebhookEvent, WebhookEvent.id == WebhookDelivery.event_id)
            .where(*conditions)
            .order_by(WebhookDelivery.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return [(delivery, event) for delivery, event in result.all()], total

    async def load_delivery_bundle(
        self, delivery_id: str
    ) -> Optional[tuple[WebhookDelivery, WebhookConfig, WebhookEvent]]:
        result = await self.db.execute(
            select(WebhookDelivery, WebhookConfig, WebhookEvent)
            .join(WebhookConfig, WebhookConfig.id == WebhookDelivery.webhook_id)
            .join(WebhookEvent, WebhookEvent.id == WebhookDelivery.event_id)
            .where(WebhookDelivery.id == delivery_id)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return row[0], row[1], row[2]

    # ── Retry scheduling ─────────────────────────────────
    def _due_conditions(self, now: datetime):
        return (
            WebhookDelivery.status == DeliveryStatus.PENDING.value,
            WebhookDelivery.next_attempt_at.is_not(None),
            WebhookDelivery.next_attempt_at <= now,
            or_(WebhookDelivery.leased_until.is_(None), WebhookDelivery.leased_until <= now),
        )

    def _leased_to(self, delivery_id: str, token: str):
        return (
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.status == DeliveryStatus.PENDING.value,
            WebhookDelivery.lease_token == token,
        )

    async def find_due_deliveries(self, now: datetime, limit: int = 50) -> list[str]:
        """Ids of unleased PENDING deliveries due by ``now`` whose config is ACTIVE."""
        result = await self.db.execute(
            select(WebhookDelivery.id)
            .join(WebhookConfig, WebhookConfig.id == WebhookDelivery.webhook_id)
            .where(
                *self._due_conditions(now),
                WebhookConfig.status == ConfigStatus.ACTIVE.value,
            )
            .order_by(WebhookDelivery.next_attempt_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim_delivery(
        self,
        delivery_id: str,
        now: datetime,
        lease_until: datetime,
        token: Optional[str] = None,
    ) -> bool:
        """Lease a due delivery; False when another sweep already holds it."""
        result = await self.db.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id, *self._due_conditions(now))
            .values(leased_until=lease_until, lease_token=token)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def acquire_attempt(
        self,
        delivery_id: str,
        now: datetime,
        lease_until: datetime,
        token: str,
        held_token: Optional[str] = None,
    ) -> bool:
        """Re-lease a delivery to ``token`` for one attempt.

        Succeeds when the caller still holds the row's lease (``held_token``)
        or when the row is due and nobody holds it. Anyone else gets False and
        must not send.
        """
        claimable = [and_(*self._due_conditions(now))]
        if held_token:
            claimable.append(and_(
                WebhookDelivery.status == DeliveryStatus.PENDING.value,
                WebhookDelivery.lease_token == held_token,
            ))
        result = await self.db.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id, or_(*claimable))
            .values(leased_until=lease_until, lease_token=token)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def finish_attempt(self, delivery_id: str, token: str, **values) -> bool:
        """Write an attempt's outcome and release the lease.

        Only lands while the row is still PENDING and leased to ``token``.
        """
        result = await self.db.execute(
            update(WebhookDelivery)
            .where(*self._leased_to(delivery_id, token))
            .values(leased_until=None, lease_token=None, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ── Stats ────────────────────────────────────────────
    async def count_deliveries_by_status(self, webhook_id: str, since: datetime) -> dict[str, int]:
        result = await self.db.execute(
            select(WebhookDelivery.status, func.count(WebhookDelivery.id))
            .where(
                WebhookDelivery.webhook_id == webhook_id,
                WebhookDelivery.created_at >= since,
            )
            .group_by(WebhookDelivery.status)
        )
        return {status: count for status, count in result.all()}

    async def average_success_duration(self, webhook_id: str, since: datetime) -> float:
        result = await self.db.execute(
            select(func.avg(WebhookDelivery.duration_ms)).where(
                WebhookDelivery.webhook_id == webhook_id,
                WebhookDelivery.status == DeliveryStatus.SUCCESS.value,
                WebhookDelivery.duration_ms.is_not(None),
                WebhookDelivery.created_at >= since,
            )
        )
        return float(result.scalar() or 0.0)
