"""
Celery Tasks
Background tasks that resolve cancellation windows outside the API process.

Each task runs the async engine code on a private event loop with its own
database engine, so worker processes never share connections.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional

from cafe_orders.celery_worker import celery_app
from cafe_orders.core.clock import utcnow
from cafe_orders.core.exceptions import ConflictError, TransientStorageError
from cafe_orders.database import create_engine_from_settings, create_session_factory
from cafe_orders.services.cancellation import CancellationTimer
from cafe_orders.services.timers.celery import CeleryTimerBackend

logger = logging.getLogger(__name__)


async def _with_timer(action):
    engine = create_engine_from_settings()
    try:
        timer = CancellationTimer(create_session_factory(engine), CeleryTimerBackend())
        return await action(timer)
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    max_retries=None,
    autoretry_for=(TransientStorageError, ConflictError),
    retry_backoff=True,
    retry_backoff_max=60,
)
def expire_cancellation(self, order_id: str, requested_at_iso: str) -> dict:
    """
    Revert a cancellation request whose window ran out.

    A request that was accepted or rejected in the meantime is left alone.

    Args:
        order_id: Order to check
        requested_at_iso: cancellation_requested_at of the request that armed the timer

    Returns:
        dict: Whether the order was reverted
    """
    task_id = self.request.id
    requested_at = datetime.fromisoformat(requested_at_iso)

    logger.info(f"Task {task_id}: expiring cancellation of order {order_id}")
    start_time = time.time()

    reverted = asyncio.run(_with_timer(lambda timer: timer.fire(order_id, requested_at)))

    elapsed = round(time.time() - start_time, 3)
    logger.info(
        f"Task {task_id}: order {order_id} "
        f"{'reverted' if reverted else 'already resolved'} in {elapsed}s"
    )
    return {
        'order_id': order_id,
        'reverted': reverted,
        'task_id': task_id,
        'processing_time_seconds': elapsed,
    }


@celery_app.task
def sweep_expired_cancellations(tenant_id: Optional[str] = None) -> dict:
    """
    Revert every overdue cancellation request.

    Scheduled by beat; catches requests whose expiry task was lost.
    """
    reverted = asyncio.run(_with_timer(lambda timer: timer.expire_overdue(tenant_id)))
    if reverted:
        logger.info(f"Sweep reverted {reverted} overdue cancellation(s)")
    return {
        'reverted': reverted,
        'timestamp': utcnow().isoformat(),
    }

