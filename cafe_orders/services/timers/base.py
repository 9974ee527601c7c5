"""
Timer Backend Abstract Base Class

Defines how a cancellation deadline is scheduled, independent of where
the scheduled work runs.

Implementations:
    - LocalTimerBackend: asyncio tasks inside the API process
    - CeleryTimerBackend: delayed Celery tasks executed by the worker
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

# Receives (order_id, requested_at) and reports whether it changed the order
TimerCallback = Callable[[str, datetime], Awaitable[bool]]


@dataclass(frozen=True)
class TimerKey:
    """
    Identity of one cancellation request.

    A new request on the same order gets a new requested_at and therefore a
    different key, so a late fire for an older request can be detected.
    """
    order_id: str
    requested_at: datetime

    @property
    def task_id(self) -> str:
        return f"cancellation-expiry:{self.order_id}:{self.requested_at.isoformat()}"


class BaseTimerBackend(ABC):
    """Abstract base class for deadline schedulers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the timer provider.

        Returns:
            str: Provider name (e.g., "local", "celery")
        """
        pass

    @abstractmethod
    def schedule(self, key: TimerKey, fire_at: datetime, callback: TimerCallback) -> None:
        """
        Run callback(key.order_id, key.requested_at) at or after fire_at.

        Scheduling an already scheduled key is a no-op. Failures of the
        callback must be retried with backoff, never dropped.

        Raises:
            TransientStorageError: The schedule could not be recorded
        """
        pass

    @abstractmethod
    def cancel(self, key: TimerKey) -> None:
        """Forget a scheduled fire. Unknown keys are ignored."""
        pass

    async def shutdown(self) -> None:
        """Release in-process resources."""
        return None
