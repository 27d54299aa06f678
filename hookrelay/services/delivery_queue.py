"""Bounded in-process worker pool that runs delivery attempts off the caller's path."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class DeliveryQueue:
    """Feeds ``(delivery_id, lease_token)`` pairs to ``concurrency`` worker tasks.

    Work submitted while the pool is not running starts it on the current
    event loop. Items rejected because the queue is full stay persisted as
    due rows and are picked up by the retry sweep once their lease expires.
    """

    def __init__(
        self,
        handler: Callable[[str, Optional[str]], Awaitable[object]],
        concurrency: int = 8,
        maxsize: int = 1000,
    ):
        self._handler = handler
        self._concurrency = max(1, concurrency)
        self._maxsize = maxsize
        self._queue: asyncio.Queue | None = None
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"webhook-delivery-{n}")
            for n in range(self._concurrency)
        ]
        logger.info(f"Delivery pool started with {self._concurrency} workers")

    def submit(self, delivery_id: str, lease_token: Optional[str] = None) -> bool:
        if not self.running:
            self.start()
        try:
            self._queue.put_nowait((delivery_id, lease_token))
        except asyncio.QueueFull:
            logger.warning(f"Delivery queue full, leaving {delivery_id} to the retry sweep")
            return False
        return True

    async def join(self) -> None:
        """Wait until every submitted delivery has been attempted."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._queue = None

    async def _worker(self, n: int) -> None:
        queue = self._queue
        while True:
            delivery_id, lease_token = await queue.get()
            try:
                await self._handler(delivery_id, lease_token)
            except Exception:
                logger.exception(f"Delivery worker {n} failed on {delivery_id}")
            finally:
                queue.task_done()
