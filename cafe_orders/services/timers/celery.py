"""
Celery Timer Implementation

Schedules cancellation deadlines as delayed Celery tasks on the Redis
broker. Used in staging and production (ENV_MODE=staging|production).

Behavior:
    - The task id is derived from (order id, requested-at), so a revoke
      always targets the right request
    - The worker re-reads the order before touching it; a fire for a
      request that was already resolved does nothing
    - Retries with backoff come from the task's autoretry settings
"""

import logging
from datetime import datetime

from kombu.exceptions import OperationalError as BrokerError

from cafe_orders.core.exceptions import TransientStorageError
from cafe_orders.services.timers.base import BaseTimerBackend, TimerCallback, TimerKey

logger = logging.getLogger(__name__)


class CeleryTimerBackend(BaseTimerBackend):
    """Delegates deadlines to the Celery worker."""

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "celery"

    def schedule(self, key: TimerKey, fire_at: datetime, callback: TimerCallback) -> None:
        # The worker runs tasks.expire_cancellation instead of callback
        from cafe_orders.tasks import expire_cancellation

        try:
            expire_cancellation.apply_async(
                args=[key.order_id, key.requested_at.isoformat()],
                eta=fire_at,
                task_id=key.task_id,
            )
        except BrokerError as e:
            raise TransientStorageError(
                f"Could not schedule cancellation timer for order {key.order_id}",
                order_id=key.order_id,
            ) from e

        logger.debug(f"Celery timer scheduled: {key.task_id} at {fire_at.isoformat()}")

    def cancel(self, key: TimerKey) -> None:
        from cafe_orders.celery_worker import celery_app

        try:
            celery_app.control.revoke(key.task_id)
        except BrokerError as e:
            # A fire that slips through finds the order resolved and does nothing
            logger.warning(f"Could not revoke {key.task_id}: {e}")
            return
        logger.debug(f"Celery timer revoked: {key.task_id}")
