"""
Cancellation Timer

Guarantees that an order in CANCELLATION_PENDING is resolved no later
than its cancellation_expires_at (plus the documented scheduling
tolerance). Unresolved requests revert to the status the order had
before the request: silence favours completing the order.

Three mechanisms cooperate:
    - arm(): one scheduled fire per outstanding request
    - recover(): re-arms every pending request from the database on start
    - expire_overdue(): sweep for anything a lost timer left behind

A fire re-reads the order and only reverts it if it is still pending for
the same request (same cancellation_requested_at). The revert goes
through OrderStateMachine.compare_and_set like any staff action.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cafe_orders.core.clock import Clock, ensure_utc, utcnow
from cafe_orders.core.config import get_settings
from cafe_orders.core.exceptions import ConflictError, TransientStorageError
from cafe_orders.database import storage_errors
from cafe_orders.models import Order, OrderStatus
from cafe_orders.services.state_machine import OrderStateMachine
from cafe_orders.services.timers.base import BaseTimerBackend, TimerKey

logger = logging.getLogger(__name__)


class CancellationTimer:
    """
    Arms, disarms and fires cancellation deadlines.

    Example:
        >>> timer = CancellationTimer(session_factory, LocalTimerBackend())
        >>> timer.arm(order.id, order.cancellation_requested_at, order.cancellation_expires_at)
        >>> ...
        >>> timer.disarm(order.id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        backend: BaseTimerBackend,
        state_machine: Optional[OrderStateMachine] = None,
        clock: Clock = utcnow,
        tolerance_seconds: Optional[float] = None,
    ):
        if tolerance_seconds is None:
            tolerance_seconds = get_settings().cancellation_timer_tolerance_seconds

        self._session_factory = session_factory
        self.backend = backend
        self.tolerance = timedelta(seconds=tolerance_seconds)
        self.state_machine = state_machine or OrderStateMachine(clock=clock)
        self._clock = clock
        self._armed: dict[str, TimerKey] = {}

    def is_armed(self, order_id: str) -> bool:
        return order_id in self._armed

    def arm(self, order_id: str, requested_at: datetime, expires_at: datetime) -> bool:
        """
        Schedule the expiry of one cancellation request.

        Returns:
            False if this request was already armed or could not be scheduled
        """
        key = TimerKey(order_id, ensure_utc(requested_at))
        current = self._armed.get(order_id)
        if current == key:
            return False
        if current is not None:
            self.backend.cancel(current)

        try:
            self.backend.schedule(key, ensure_utc(expires_at), self.fire)
        except TransientStorageError as e:
            # The persisted deadline is still picked up by expire_overdue()
            logger.error(f"Order {order_id}: could not arm cancellation timer: {e.message}")
            return False

        self._armed[order_id] = key
        logger.debug(f"Order {order_id}: cancellation timer armed for {expires_at.isoformat()}")
        return True

    def disarm(self, order_id: str) -> bool:
        """Drop the timer of an order after staff resolved the request."""
        key = self._armed.pop(order_id, None)
        if key is None:
            return False
        self.backend.cancel(key)
        logger.debug(f"Order {order_id}: cancellation timer disarmed")
        return True

    async def fire(self, order_id: str, requested_at: datetime) -> bool:
        """
        Revert an unresolved cancellation request.

        Returns:
            True if the order was reverted, False if there was nothing to do

        Raises:
            ConflictError: The order changed while reverting (retry)
            TransientStorageError: Storage unavailable (retry)
        """
        key = TimerKey(order_id, ensure_utc(requested_at))

        async with storage_errors("cancellation timer fire"):
            async with self._session_factory() as session:
                async with session.begin():
                    order = await session.get(Order, order_id)

                    if order is None or not self._still_pending(order, key.requested_at):
                        logger.debug(f"Order {order_id}: timer fired for a resolved request, no-op")
                        reverted = False
                    else:
                        self._report_lateness(order)
                        await self.state_machine.revert_cancellation(session, order, reason="expired")
                        reverted = True

        if self._armed.get(order_id) == key:
            del self._armed[order_id]
        return reverted

    def _report_lateness(self, order: Order) -> None:
        late_by = self._clock() - ensure_utc(order.cancellation_expires_at)
        if late_by > self.tolerance:
            logger.warning(
                f"Order {order.id}: cancellation expired {late_by.total_seconds():.1f}s late"
            )

    @staticmethod
    def _still_pending(order: Order, requested_at: datetime) -> bool:
        return (
            order.status == OrderStatus.CANCELLATION_PENDING
            and ensure_utc(order.cancellation_requested_at) == requested_at
        )

    async def recover(self) -> int:
        """
        Re-arm every pending cancellation found in storage.

        Overdue requests are scheduled in the past and fire immediately.
        """
        async with storage_errors("cancellation timer recovery"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(
                        Order.id,
                        Order.cancellation_requested_at,
                        Order.cancellation_expires_at,
                    ).where(Order.status == OrderStatus.CANCELLATION_PENDING)
                )
                pending = result.all()

        armed = 0
        for order_id, requested_at, expires_at in pending:
            if requested_at is None or expires_at is None:
                logger.warning(f"Order {order_id}: pending cancellation without a deadline")
                continue
            if self.arm(order_id, requested_at, expires_at):
                armed += 1

        logger.info(f"Recovered {armed} cancellation timer(s)")
        return armed

    async def expire_overdue(self, tenant_id: Optional[str] = None) -> int:
        """
        Revert every pending cancellation whose deadline has passed.

        Each order is handled in its own transaction.

        Returns:
            Number of orders reverted
        """
        query = select(Order.id, Order.cancellation_requested_at).where(
            Order.status == OrderStatus.CANCELLATION_PENDING,
            Order.cancellation_expires_at <= self._clock(),
        )
        if tenant_id is not None:
            query = query.where(Order.tenant_id == tenant_id)

        async with storage_errors("overdue cancellation scan"):
            async with self._session_factory() as session:
                overdue = (await session.execute(query)).all()

        reverted = 0
        for order_id, requested_at in overdue:
            try:
                if await self.fire(order_id, requested_at):
                    reverted += 1
            except ConflictError:
                logger.info(f"Order {order_id}: changed during overdue sweep, skipped")

        if reverted:
            logger.info(f"Overdue sweep reverted {reverted} cancellation(s)")
        return reverted
