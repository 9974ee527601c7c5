"""
Order Service

Entry point for everything that happens to an order: placing it, moving
it through the kitchen workflow, and the cancellation request protocol.

Every operation is tenant scoped. Staff bound to one branch pass its id
as branch_id; orders outside that scope raise AuthorizationError.

Transactions:
    - Carts are priced against the catalogue before the write transaction
      opens, so the catalogue is never read while a row lock is held
    - Token allocation and the order insert commit together under the
      branch reservation
    - Timers are armed or disarmed only after the status change committed
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cafe_orders.core.clock import Clock, utcnow
from cafe_orders.core.config import get_settings
from cafe_orders.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    OrderNotFoundError,
    ValidationError,
)
from cafe_orders.database import storage_errors
from cafe_orders.models import Branch, Order, OrderLine, OrderStatus, OrderType
from cafe_orders.services.cancellation import CancellationTimer
from cafe_orders.services.catalogue.base import BaseCatalogueService
from cafe_orders.services.state_machine import OrderStateMachine
from cafe_orders.services.timers import get_timer_backend
from cafe_orders.services.timers.base import BaseTimerBackend
from cafe_orders.services.tokens import BranchTokenAllocator

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
MAX_PAGE_SIZE = 500


@dataclass
class CustomerInfo:
    """Optional customer details captured with the order."""
    name: Optional[str] = None
    phone: Optional[str] = None
    device_id: Optional[str] = None


@dataclass
class CartLine:
    menu_item_id: str
    quantity: int


@dataclass
class OrderFilter:
    """Criteria for list_orders(). Unset fields do not filter."""
    branch_id: Optional[str] = None
    status: Optional[OrderStatus] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    device_id: Optional[str] = None
    skip: int = 0
    limit: int = 50


@dataclass
class _PricedLine:
    menu_item_id: str
    quantity: int
    price: Decimal


def _as_status(value: Union[OrderStatus, str], field: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unknown order status '{value}'",
            details={"field": field, "value": str(value)},
        )


class OrderService:
    """
    Order lifecycle façade.

    Example:
        >>> service = OrderService(session_factory, catalogue)
        >>> order = await service.create_order(
        ...     tenant_id, branch_id, OrderType.DINE_IN,
        ...     [CartLine("latte-id", 2)],
        ... )
        >>> await service.request_transition(tenant_id, order.id, OrderStatus.PREPARING)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalogue: BaseCatalogueService,
        allocator: Optional[BranchTokenAllocator] = None,
        state_machine: Optional[OrderStateMachine] = None,
        timer_backend: Optional[BaseTimerBackend] = None,
        grace_seconds: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        settings = get_settings()

        timer_backend = timer_backend or get_timer_backend()

        self._session_factory = session_factory
        self.catalogue = catalogue
        self.allocator = allocator or BranchTokenAllocator(
            daily_reset=settings.token_daily_reset, clock=clock
        )
        self.state_machine = state_machine or OrderStateMachine(clock=clock)
        self.timer = CancellationTimer(
            session_factory, timer_backend, state_machine=self.state_machine, clock=clock
        )
        if grace_seconds is None:
            grace_seconds = settings.cancellation_grace_seconds
        self.grace = timedelta(seconds=grace_seconds)
        self._clock = clock

        logger.info(
            f"OrderService initialized (catalogue={catalogue.provider_name}, "
            f"timers={timer_backend.provider_name}, grace={grace_seconds}s)"
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    async def _load_scoped(
        session: AsyncSession,
        tenant_id: str,
        order_id: str,
        branch_id: Optional[str] = None,
    ) -> Order:
        order = await session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
        if order.tenant_id != tenant_id:
            raise AuthorizationError(
                "Order belongs to another tenant",
                order_id=order_id,
                details={"tenant_id": tenant_id},
            )
        if branch_id is not None and order.branch_id != branch_id:
            raise AuthorizationError(
                "Order belongs to another branch",
                order_id=order_id,
                details={"branch_id": branch_id},
            )
        return order

    @staticmethod
    def _check_expected(
        order: Order,
        expected_status: Optional[OrderStatus],
        expected_version: Optional[int],
    ) -> None:
        """The caller's view must match the row; stale views never overwrite."""
        if expected_status is not None and order.status != expected_status:
            raise ConflictError(
                f"Order is {order.status.value}, caller expected {expected_status.value}",
                order_id=order.id,
                current_status=order.status,
                details={"expected_status": expected_status.value, "version": order.version},
            )
        if expected_version is not None and order.version != expected_version:
            raise ConflictError(
                f"Order is at version {order.version}, caller expected {expected_version}",
                order_id=order.id,
                current_status=order.status,
                details={"expected_version": expected_version, "version": order.version},
            )

    async def _settle_expired(self, session: AsyncSession, order: Order) -> tuple[Order, bool]:
        """Revert a pending cancellation whose window has already closed."""
        if order.status != OrderStatus.CANCELLATION_PENDING:
            return order, False
        if not self.state_machine.is_window_expired(order):
            return order, False
        reverted = await self.state_machine.revert_cancellation(session, order, reason="expired")
        return reverted, True

    async def _load_settled(
        self,
        tenant_id: str,
        order_id: str,
        branch_id: Optional[str] = None,
        operation: str = "order lookup",
    ) -> Order:
        """Load an order, committing the revert of an overdue cancellation on its own."""
        async with storage_errors(operation):
            async with self._session_factory() as session:
                async with session.begin():
                    order = await self._load_scoped(session, tenant_id, order_id, branch_id)
                    order, settled = await self._settle_expired(session, order)

        if settled:
            self.timer.disarm(order_id)
        return order

    def _reject_overdue(self, order: Order) -> None:
        """A window that closed after the settle pass must be settled before acting."""
        if (order.status == OrderStatus.CANCELLATION_PENDING
                and self.state_machine.is_window_expired(order)):
            raise ConflictError(
                "Cancellation window closed while the request was in flight",
                order_id=order.id,
                current_status=order.status,
            )

    async def _price_lines(
        self,
        tenant_id: str,
        branch_id: str,
        lines: Sequence[CartLine],
    ) -> tuple[list[_PricedLine], Decimal]:
        """
        Validate a cart and snapshot current catalogue prices.

        Raises:
            ValidationError: Names the first offending line index and item id
        """
        if not lines:
            raise ValidationError("Order must contain at least one line")

        for index, line in enumerate(lines):
            quantity = line.quantity
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                raise ValidationError(
                    f"Line {index}: quantity must be a whole number of at least 1",
                    details={"line": index, "menu_item_id": line.menu_item_id,
                             "quantity": line.quantity},
                )

        items = await self.catalogue.get_items([line.menu_item_id for line in lines], branch_id)

        priced: list[_PricedLine] = []
        total = Decimal("0")
        for index, line in enumerate(lines):
            details = {"line": index, "menu_item_id": line.menu_item_id}
            item = items.get(line.menu_item_id)

            if item is None or item.tenant_id != tenant_id:
                raise ValidationError(
                    f"Line {index}: item {line.menu_item_id} does not exist", details=details
                )
            if not item.is_orderable_for(branch_id):
                raise ValidationError(
                    f"Line {index}: item {line.menu_item_id} is not sold at this branch",
                    details=details,
                )
            if not item.available:
                raise ValidationError(
                    f"Line {index}: item {line.menu_item_id} is not available", details=details
                )

            price = Decimal(item.price).quantize(CENT, rounding=ROUND_HALF_UP)
            if price < 0:
                raise ValidationError(
                    f"Line {index}: item {line.menu_item_id} has a negative price",
                    details={**details, "price": str(price)},
                )
            priced.append(_PricedLine(line.menu_item_id, line.quantity, price))
            total += price * line.quantity

        return priced, total.quantize(CENT, rounding=ROUND_HALF_UP)

    @staticmethod
    def _build_lines(priced: list[_PricedLine]) -> list[OrderLine]:
        return [
            OrderLine(
                menu_item_id=line.menu_item_id,
                position=position,
                quantity=line.quantity,
                price=line.price,
            )
            for position, line in enumerate(priced)
        ]

    # =========================================================================
    # ORDER CREATION
    # =========================================================================

    async def create_order(
        self,
        tenant_id: str,
        branch_id: str,
        order_type: Union[OrderType, str],
        lines: Sequence[CartLine],
        customer: Optional[CustomerInfo] = None,
    ) -> Order:
        """
        Place a new order in PENDING.

        Raises:
            ValidationError: Bad cart, unknown branch or bad token range
            AuthorizationError: Branch belongs to another tenant
            TransientStorageError: Storage or branch lock unavailable
        """
        try:
            order_type = OrderType(order_type)
        except ValueError:
            raise ValidationError(
                f"Unknown order type '{order_type}'", details={"order_type": str(order_type)}
            )

        async with storage_errors("branch lookup"):
            async with self._session_factory() as session:
                branch = await session.get(Branch, branch_id)
        if branch is None:
            raise ValidationError(f"Branch {branch_id} not found", details={"branch_id": branch_id})
        if branch.tenant_id != tenant_id:
            raise AuthorizationError(
                "Branch belongs to another tenant", details={"branch_id": branch_id}
            )

        priced, total = await self._price_lines(tenant_id, branch_id, lines)
        customer = customer or CustomerInfo()

        async with self.allocator.reserve(branch_id):
            async with storage_errors("order creation"):
                async with self._session_factory() as session:
                    async with session.begin():
                        token = await self.allocator.allocate(session, branch_id)
                        order = Order(
                            tenant_id=tenant_id,
                            branch_id=branch_id,
                            order_type=order_type,
                            token_number=token,
                            total_amount=total,
                            customer_name=customer.name,
                            customer_phone=customer.phone,
                            device_id=customer.device_id,
                            status=OrderStatus.PENDING,
                            version=1,
                            created_at=self._clock(),
                            lines=self._build_lines(priced),
                        )
                        session.add(order)

        logger.info(
            f"Order {order.id} created at branch {branch_id} "
            f"(token={token}, lines={len(priced)}, total={total})"
        )
        return order

    async def replace_lines(
        self,
        tenant_id: str,
        order_id: str,
        lines: Sequence[CartLine],
        branch_id: Optional[str] = None,
    ) -> Order:
        """
        Re-price and replace the cart of an order that is still PENDING.

        Raises:
            InvalidTransitionError: Order is past PENDING
            ConflictError: Order changed while the new cart was priced
        """
        async with storage_errors("order lookup"):
            async with self._session_factory() as session:
                seen = await self._load_scoped(session, tenant_id, order_id, branch_id)
                seen_version = seen.version

        if seen.status != OrderStatus.PENDING:
            raise InvalidTransitionError(
                "Lines can only be changed while the order is PENDING",
                order_id=order_id, current_status=seen.status,
            )

        priced, total = await self._price_lines(tenant_id, seen.branch_id, lines)

        async with storage_errors("line replacement"):
            async with self._session_factory() as session:
                async with session.begin():
                    order = await self._load_scoped(session, tenant_id, order_id, branch_id)
                    self._check_expected(order, OrderStatus.PENDING, seen_version)

                    order.lines = self._build_lines(priced)
                    await session.flush()
                    updated = await self.state_machine.compare_and_set(
                        session, order, {"total_amount": total}
                    )

        logger.info(f"Order {order_id}: lines replaced ({len(priced)} lines, total={total})")
        return updated

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order(
        self,
        tenant_id: str,
        order_id: str,
        branch_id: Optional[str] = None,
    ) -> Order:
        """Load one order, resolving an overdue cancellation first."""
        return await self._load_settled(tenant_id, order_id, branch_id)

    async def list_orders(
        self,
        tenant_id: str,
        filters: Optional[OrderFilter] = None,
    ) -> tuple[int, list[Order]]:
        """
        List a tenant's orders, newest first.

        Returns:
            (total matching, requested page)
        """
        filters = filters or OrderFilter()
        if filters.skip < 0:
            raise ValidationError("skip must not be negative", details={"skip": filters.skip})
        if not 1 <= filters.limit <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"limit must be between 1 and {MAX_PAGE_SIZE}", details={"limit": filters.limit}
            )

        await self.expire_overdue_cancellations(tenant_id)

        query = select(Order).where(Order.tenant_id == tenant_id)
        if filters.branch_id is not None:
            query = query.where(Order.branch_id == filters.branch_id)
        if filters.status is not None:
            query = query.where(Order.status == _as_status(filters.status, "status"))
        if filters.created_from is not None:
            query = query.where(Order.created_at >= filters.created_from)
        if filters.created_to is not None:
            query = query.where(Order.created_at <= filters.created_to)
        if filters.device_id is not None:
            query = query.where(Order.device_id == filters.device_id)

        async with storage_errors("order listing"):
            async with self._session_factory() as session:
                total = await session.scalar(
                    select(func.count()).select_from(query.subquery())
                )
                result = await session.execute(
                    query.order_by(Order.created_at.desc(), Order.id.desc())
                    .offset(filters.skip)
                    .limit(filters.limit)
                )
                orders = list(result.scalars().all())

        return total or 0, orders

    # =========================================================================
    # STATUS CHANGES
    # =========================================================================

    async def request_transition(
        self,
        tenant_id: str,
        order_id: str,
        target: Union[OrderStatus, str],
        branch_id: Optional[str] = None,
        actor: Optional[str] = None,
        expected_status: Optional[Union[OrderStatus, str]] = None,
        expected_version: Optional[int] = None,
    ) -> Order:
        """
        Move an order one step along PENDING -> PREPARING -> READY -> COMPLETED.

        Raises:
            InvalidTransitionError: Step not allowed from the current status
            ConflictError: The order changed since the caller (or this call) read it
        """
        target = _as_status(target, "target")
        if expected_status is not None:
            expected_status = _as_status(expected_status, "expected_status")

        await self._load_settled(tenant_id, order_id, branch_id, "status transition")

        async with storage_errors("status transition"):
            async with self._session_factory() as session:
                async with session.begin():
                    order = await self._load_scoped(session, tenant_id, order_id, branch_id)
                    self._reject_overdue(order)
                    self._check_expected(order, expected_status, expected_version)
                    updated = await self.state_machine.advance(session, order, target, actor=actor)

        return updated

    async def request_cancellation(
        self,
        tenant_id: str,
        order_id: str,
        requested_by: Optional[str] = None,
        branch_id: Optional[str] = None,
    ) -> Order:
        """
        Open the cancellation window and arm its timer.

        Raises:
            InvalidTransitionError: Terminal order or a request already pending
        """
        await self._load_settled(tenant_id, order_id, branch_id, "cancellation request")

        async with storage_errors("cancellation request"):
            async with self._session_factory() as session:
                async with session.begin():
                    order = await self._load_scoped(session, tenant_id, order_id, branch_id)
                    self._reject_overdue(order)
                    updated = await self.state_machine.open_cancellation(
                        session, order, self.grace, requested_by=requested_by
                    )

        self.timer.arm(
            updated.id,
            updated.cancellation_requested_at,
            updated.cancellation_expires_at,
        )
        return updated

    async def resolve_cancellation(
        self,
        tenant_id: str,
        order_id: str,
        accept: bool,
        branch_id: Optional[str] = None,
    ) -> Order:
        """
        Staff decision on a pending cancellation.

        Accepting at or after the deadline reverts the order instead and
        raises InvalidTransitionError once the revert is committed.
        """
        window_expired = False

        async with storage_errors("cancellation resolution"):
            async with self._session_factory() as session:
                async with session.begin():
                    order = await self._load_scoped(session, tenant_id, order_id, branch_id)
                    self.state_machine.validate_resolution(order.id, order.status)

                    if not accept:
                        updated = await self.state_machine.revert_cancellation(session, order)
                    elif self.state_machine.is_window_expired(order):
                        updated = await self.state_machine.revert_cancellation(
                            session, order, reason="expired"
                        )
                        window_expired = True
                    else:
                        updated = await self.state_machine.accept_cancellation(session, order)

        self.timer.disarm(order_id)

        if window_expired:
            raise InvalidTransitionError(
                "Cancellation window expired; the order continues",
                order_id=order_id,
                current_status=updated.status,
                target_status=OrderStatus.CANCELLED,
            )
        return updated

    # =========================================================================
    # TIMER MAINTENANCE
    # =========================================================================

    async def recover_timers(self) -> int:
        """Re-arm cancellation timers after a restart."""
        return await self.timer.recover()

    async def expire_overdue_cancellations(self, tenant_id: Optional[str] = None) -> int:
        """Revert every pending cancellation past its deadline."""
        return await self.timer.expire_overdue(tenant_id)
