"""Retry sweep — claims due deliveries and hands them back to the dispatcher.

Runs in-process from the app lifespan (``run_forever``) and as a Celery beat
task (``run_once``) for multi-process deployments. Claims are leases on the
delivery row, so several sweeps can run side by side without dispatching the
same attempt twice.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from hookrelay.models import new_uuid, utcnow
from hookrelay.services.webhook_dispatcher import WebhookDispatcher
from hookrelay.services.webhook_store import WebhookStore

logger = logging.getLogger(__name__)


class RetryScheduler:
    def __init__(
        self,
        dispatcher: WebhookDispatcher,
        session_factory: Optional[async_sessionmaker] = None,
        batch_size: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        interval: Optional[float] = None,
        concurrency: Optional[int] = None,
    ):
        settings = dispatcher.settings
        self.dispatcher = dispatcher
        self.session_factory = session_factory or dispatcher.session_factory
        self.batch_size = batch_size or settings.retry_batch_size
        self.lease = timedelta(seconds=lease_seconds or settings.retry_lease_seconds)
        self.interval = interval if interval is not None else settings.retry_poll_interval_seconds
        self.concurrency = max(1, concurrency or settings.dispatch_concurrency)

    async def claim_due(self, now: Optional[datetime] = None, lease_token: Optional[str] = None) -> list[str]:
        """Lease up to ``batch_size`` due deliveries to ``lease_token`` and return their ids."""
        now = now or utcnow()
        lease_until = now + self.lease
        lease_token = lease_token or new_uuid()
        async with self.session_factory() as db:
            store = WebhookStore(db)
            candidates = await store.find_due_deliveries(now, limit=self.batch_size)
            claimed = [
                delivery_id
                for delivery_id in candidates
                if await store.claim_delivery(delivery_id, now, lease_until, lease_token)
            ]
            await db.commit()
        if len(claimed) < len(candidates):
            logger.debug(f"{len(candidates) - len(claimed)} due deliveries already claimed elsewhere")
        return claimed

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """Claim and attempt every due delivery; returns the number claimed."""
        lease_token = new_uuid()
        claimed = await self.claim_due(now, lease_token)
        if not claimed:
            return 0

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _deliver(delivery_id: str) -> None:
            async with semaphore:
                try:
                    await self.dispatcher.deliver(delivery_id, lease_token)
                except Exception:
                    logger.exception(f"Retry of delivery {delivery_id} failed")

        await asyncio.gather(*(_deliver(delivery_id) for delivery_id in claimed))
        logger.info(f"Retry sweep processed {len(claimed)} deliveries")
        return len(claimed)

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll until ``stop_event`` is set (or the task is cancelled)."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Retry scheduler started (every {self.interval}s)")
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Retry scheduler error: {e}", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Retry scheduler stopped")
