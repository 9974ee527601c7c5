"""
Order State Machine

Validates and applies order status transitions.

State flow:
    PENDING -> PREPARING -> READY -> COMPLETED          (staff, one step at a time)
    PENDING | PREPARING | READY -> CANCELLATION_PENDING (customer or staff request)
    CANCELLATION_PENDING -> CANCELLED                   (staff accepts)
    CANCELLATION_PENDING -> previous status             (staff rejects / window expires)

COMPLETED and CANCELLED are terminal.

Every write is a compare-and-set against the (id, status, version) values
read in the same transaction. If another writer got there first the update
touches no row and ConflictError is raised; nothing is overwritten.
The cancellation timer goes through exactly the same path.
"""

import logging
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_orders.core.clock import Clock, ensure_utc, utcnow
from cafe_orders.core.exceptions import ConflictError, InvalidTransitionError
from cafe_orders.models import Order, OrderStatus

logger = logging.getLogger(__name__)

CANCELLATION_FIELDS_CLEARED = {
    "cancellation_previous_status": None,
    "cancellation_requested_by": None,
    "cancellation_requested_at": None,
    "cancellation_expires_at": None,
}


class OrderStateMachine:
    """
    Transition rules plus the optimistic write path.

    The validate_* methods are pure; the remaining methods validate,
    then write through compare_and_set().
    """

    # Staff-driven forward steps
    FORWARD_TRANSITIONS = {
        OrderStatus.PENDING: OrderStatus.PREPARING,
        OrderStatus.PREPARING: OrderStatus.READY,
        OrderStatus.READY: OrderStatus.COMPLETED,
    }

    CANCELLABLE_STATES = frozenset({
        OrderStatus.PENDING,
        OrderStatus.PREPARING,
        OrderStatus.READY,
    })

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def can_advance(self, current: OrderStatus, target: OrderStatus) -> bool:
        return self.FORWARD_TRANSITIONS.get(current) == target

    def validate_forward(self, order_id: str, current: OrderStatus, target: OrderStatus) -> None:
        """
        Check a staff-driven status change.

        Raises:
            InvalidTransitionError: Terminal source, cancellation states as
                target, pending cancellation, skipped or backward step
        """
        if current.is_terminal:
            raise InvalidTransitionError(
                f"Order is {current.value} and can no longer change status",
                order_id=order_id, current_status=current, target_status=target,
            )
        if target in (OrderStatus.CANCELLATION_PENDING, OrderStatus.CANCELLED):
            raise InvalidTransitionError(
                "Cancellation goes through a cancellation request, not a status change",
                order_id=order_id, current_status=current, target_status=target,
            )
        if current == OrderStatus.CANCELLATION_PENDING:
            raise InvalidTransitionError(
                "Order has a pending cancellation request; resolve it first",
                order_id=order_id, current_status=current, target_status=target,
            )
        if not self.can_advance(current, target):
            expected = self.FORWARD_TRANSITIONS[current]
            raise InvalidTransitionError(
                f"Cannot move order from {current.value} to {target.value}; "
                f"next status is {expected.value}",
                order_id=order_id, current_status=current, target_status=target,
            )

    def validate_cancellation_request(self, order_id: str, current: OrderStatus) -> None:
        if current == OrderStatus.CANCELLATION_PENDING:
            raise InvalidTransitionError(
                "Order already has a pending cancellation request",
                order_id=order_id, current_status=current,
                target_status=OrderStatus.CANCELLATION_PENDING,
            )
        if current not in self.CANCELLABLE_STATES:
            raise InvalidTransitionError(
                f"Order is {current.value} and can no longer be cancelled",
                order_id=order_id, current_status=current,
                target_status=OrderStatus.CANCELLATION_PENDING,
            )

    def validate_resolution(self, order_id: str, current: OrderStatus) -> None:
        if current != OrderStatus.CANCELLATION_PENDING:
            raise InvalidTransitionError(
                "Order has no pending cancellation request",
                order_id=order_id, current_status=current,
            )

    def is_window_expired(self, order: Order) -> bool:
        expires_at = ensure_utc(order.cancellation_expires_at)
        return expires_at is not None and self._clock() >= expires_at

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    async def compare_and_set(
        self,
        session: AsyncSession,
        order: Order,
        values: dict[str, Any],
    ) -> Order:
        """
        Apply values only if the row still has the status and version of `order`.

        Returns:
            The freshly loaded order

        Raises:
            ConflictError: The row changed since `order` was read
        """
        stmt = (
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == order.status,
                Order.version == order.version,
            )
            .values(**values, version=order.version + 1, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)

        if result.rowcount != 1:
            logger.warning(
                f"Order {order.id}: lost update race "
                f"(read status={order.status.value} version={order.version})"
            )
            raise ConflictError(
                "Order was modified concurrently; reload and retry",
                order_id=order.id,
                current_status=order.status,
                target_status=values.get("status"),
                details={"read_version": order.version},
            )

        refreshed = await session.execute(
            select(Order)
            .where(Order.id == order.id)
            .execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()

    async def advance(
        self,
        session: AsyncSession,
        order: Order,
        target: OrderStatus,
        actor: Optional[str] = None,
    ) -> Order:
        """Move an order one step forward."""
        self.validate_forward(order.id, order.status, target)
        previous = order.status

        values: dict[str, Any] = {"status": target}
        if target == OrderStatus.COMPLETED:
            values["completed_at"] = self._clock()
            values["completed_by"] = actor

        updated = await self.compare_and_set(session, order, values)
        logger.info(f"Order {order.id}: {previous.value} -> {target.value}")
        return updated

    async def open_cancellation(
        self,
        session: AsyncSession,
        order: Order,
        grace: timedelta,
        requested_by: Optional[str] = None,
    ) -> Order:
        """Enter CANCELLATION_PENDING, remembering the status to fall back to."""
        self.validate_cancellation_request(order.id, order.status)

        now = self._clock()
        previous = order.status
        updated = await self.compare_and_set(session, order, {
            "status": OrderStatus.CANCELLATION_PENDING,
            "cancellation_previous_status": previous,
            "cancellation_requested_by": requested_by,
            "cancellation_requested_at": now,
            "cancellation_expires_at": now + grace,
        })
        logger.info(
            f"Order {order.id}: cancellation requested from {previous.value}, "
            f"expires in {grace.total_seconds():.0f}s"
        )
        return updated

    async def accept_cancellation(self, session: AsyncSession, order: Order) -> Order:
        """Ratify a pending cancellation. The caller checks the window first."""
        self.validate_resolution(order.id, order.status)

        updated = await self.compare_and_set(session, order, {
            "status": OrderStatus.CANCELLED,
            "cancelled_at": self._clock(),
        })
        logger.info(f"Order {order.id}: cancellation accepted")
        return updated

    async def revert_cancellation(
        self,
        session: AsyncSession,
        order: Order,
        reason: str = "rejected",
    ) -> Order:
        """Return to the status held before the request and clear the bookkeeping."""
        self.validate_resolution(order.id, order.status)

        previous = order.cancellation_previous_status or OrderStatus.PENDING
        updated = await self.compare_and_set(session, order, {
            "status": previous,
            **CANCELLATION_FIELDS_CLEARED,
        })
        logger.info(f"Order {order.id}: cancellation {reason}, back to {previous.value}")
        return updated
