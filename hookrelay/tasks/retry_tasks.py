"""Webhook retry tasks."""

import asyncio
import logging

from hookrelay.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="hookrelay.tasks.retry_tasks.process_webhook_retries")
def process_webhook_retries() -> int:
    """Run one retry sweep; returns the number of deliveries attempted."""
    return asyncio.run(_process_retries())


async def _process_retries() -> int:
    from hookrelay.database import engine
    from hookrelay.services.retry_scheduler import RetryScheduler
    from hookrelay.services.webhook_dispatcher import WebhookDispatcher

    dispatcher = WebhookDispatcher()
    try:
        processed = await RetryScheduler(dispatcher).run_once()
        if processed:
            logger.info(f"Processed {processed} webhook retries")
        return processed
    finally:
        await dispatcher.stop()
        # Each task run gets a fresh event loop; pooled connections must not outlive it
        await engine.dispose()
