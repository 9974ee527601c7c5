"""
In-Process Timer Implementation

Schedules cancellation deadlines as asyncio tasks on the running event
loop. Used in development mode (ENV_MODE=development) and in tests:
    - No broker required
    - Timers die with the process; OrderService.recover_timers() re-arms
      them from the database on the next start

Retry behaviour:
    TransientStorageError and ConflictError from the callback are retried
    with exponential backoff (base, 2*base, 4*base, ... capped at retry_max)
    until the callback succeeds or the timer is cancelled.
"""

import asyncio
import logging
from datetime import datetime

from cafe_orders.core.clock import utcnow
from cafe_orders.core.exceptions import ConflictError, TransientStorageError
from cafe_orders.services.timers.base import BaseTimerBackend, TimerCallback, TimerKey

logger = logging.getLogger(__name__)


class LocalTimerBackend(BaseTimerBackend):
    """
    asyncio implementation of the timer backend.

    Attributes:
        retry_base: First backoff delay in seconds
        retry_max: Backoff ceiling in seconds
    """

    def __init__(self, retry_base: float = 1.0, retry_max: float = 30.0):
        self.retry_base = retry_base
        self.retry_max = retry_max
        self._tasks: dict[TimerKey, asyncio.Task] = {}

        logger.info(
            f"LocalTimerBackend initialized (retry={retry_base}s..{retry_max}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "local"

    def is_scheduled(self, key: TimerKey) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def schedule(self, key: TimerKey, fire_at: datetime, callback: TimerCallback) -> None:
        if self.is_scheduled(key):
            return

        task = asyncio.get_running_loop().create_task(
            self._run(key, fire_at, callback),
            name=key.task_id,
        )
        self._tasks[key] = task
        task.add_done_callback(lambda finished, key=key: self._forget(key, finished))
        logger.debug(f"Timer scheduled: {key.task_id} at {fire_at.isoformat()}")

    def cancel(self, key: TimerKey) -> None:
        task = self._tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
            logger.debug(f"Timer cancelled: {key.task_id}")

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"LocalTimerBackend stopped ({len(tasks)} pending timers dropped)")

    def _forget(self, key: TimerKey, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def _backoff(self, attempt: int) -> float:
        return min(self.retry_max, self.retry_base * (2 ** attempt))

    async def _run(self, key: TimerKey, fire_at: datetime, callback: TimerCallback) -> None:
        delay = (fire_at - utcnow()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)

        attempt = 0
        while True:
            try:
                await callback(key.order_id, key.requested_at)
                return
            except (TransientStorageError, ConflictError) as e:
                wait = self._backoff(attempt)
                attempt += 1
                logger.warning(
                    f"Timer {key.task_id} failed (attempt {attempt}): {e.message}; "
                    f"retrying in {wait:.1f}s"
                )
                await asyncio.sleep(wait)
            except Exception:
                # Left for the overdue sweep
                logger.exception(f"Timer {key.task_id} failed with an unexpected error")
                return
