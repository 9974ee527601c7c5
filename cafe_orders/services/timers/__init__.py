"""
Timer Backend Factory

Returns the in-process or Celery timer backend based on ENV_MODE.

Environment Switching:
    - ENV_MODE=development → LocalTimerBackend (asyncio, no broker)
    - ENV_MODE=staging → CeleryTimerBackend
    - ENV_MODE=production → CeleryTimerBackend
"""

import logging
from functools import lru_cache

from cafe_orders.core.config import get_settings
from cafe_orders.services.timers.base import BaseTimerBackend, TimerCallback, TimerKey
from cafe_orders.services.timers.celery import CeleryTimerBackend
from cafe_orders.services.timers.local import LocalTimerBackend

logger = logging.getLogger(__name__)


@lru_cache()
def get_timer_backend() -> BaseTimerBackend:
    """Get the configured timer backend."""
    settings = get_settings()

    if settings.use_celery_timers:
        logger.info(f"Timer Backend: Using CeleryTimerBackend ({settings.env_mode.value} mode)")
        return CeleryTimerBackend()

    logger.info("Timer Backend: Using LocalTimerBackend (development mode)")
    return LocalTimerBackend(
        retry_base=settings.timer_retry_base_seconds,
        retry_max=settings.timer_retry_max_seconds,
    )


def reset_timer_backend() -> None:
    """Clear the cached backend instance."""
    get_timer_backend.cache_clear()


__all__ = [
    "get_timer_backend",
    "reset_timer_backend",
    "BaseTimerBackend",
    "TimerCallback",
    "TimerKey",
    "LocalTimerBackend",
    "CeleryTimerBackend",
]
