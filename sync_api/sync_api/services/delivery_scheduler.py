"""Background task that drains the outbound delivery queue periodically.

The drain cadence only affects latency: correctness relies on every due
event eventually being attempted again, not on when that happens.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import InterfaceError, OperationalError

from sync_api.services.delivery_queue import OutboundDeliveryQueue
from sync_core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class DeliveryScheduler:
    """AsyncIO background task calling :meth:`OutboundDeliveryQueue.drain`.

    Parameters
    ----------
    queue:
        The queue to drain.
    interval_seconds:
        Pause between drains.  A drain that delivered a full batch is
        followed immediately by another one.
    """

    def __init__(self, queue: OutboundDeliveryQueue, interval_seconds: float = 15.0) -> None:
        self._queue = queue
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("DeliveryScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("DeliveryScheduler started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        """Stop the scheduler and wait for the current drain to be cancelled."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("DeliveryScheduler stopped")

    async def run_once(self) -> int:
        """Run a single drain, logging store errors instead of raising them."""
        try:
            return await self._queue.drain()
        except (StoreUnavailableError, OperationalError, InterfaceError) as exc:
            logger.error("DeliveryScheduler database error: %s", exc, exc_info=True)
            return 0

    async def _run_loop(self) -> None:
        batch_limit = self._queue.policy.batch_limit
        while self._running:
            try:
                attempted = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.critical("DeliveryScheduler unexpected error: %s", exc, exc_info=True)
                raise
            if attempted >= batch_limit:
                continue
            await asyncio.sleep(self._interval)
