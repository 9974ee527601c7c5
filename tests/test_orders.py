"""Tests for order creation, cart validation and reads.

Coverage:
- Price snapshots and total reconciliation
- Cart validation errors naming the offending line
- Tenant and branch scoping
- Line replacement while PENDING
- Listing with filters and pagination
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from cafe_orders.core.exceptions import (
    AuthorizationError,
    InvalidTransitionError,
    OrderNotFoundError,
    ValidationError,
)
from cafe_orders.models import Branch, Order, OrderLine, OrderStatus, OrderType
from cafe_orders.services.orders import CartLine, CustomerInfo, OrderFilter
from tests.conftest import (
    BRANCH_A,
    BRANCH_B,
    BRANCH_NO_TOKENS,
    BRANCH_OTHER_TENANT,
    OTHER_TENANT,
    TENANT,
)


def line_sum(order: Order) -> Decimal:
    return sum((line.price * line.quantity for line in order.lines), Decimal("0"))


async def count_rows(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


class TestOrderCreation:
    """Successful order placement."""

    async def test_order_snapshots_prices(self, service):
        order = await service.create_order(
            TENANT,
            BRANCH_A,
            OrderType.TAKEAWAY,
            [CartLine("latte", 2), CartLine("croissant", 1)],
            customer=CustomerInfo(name="Sara", phone="555-0100", device_id="kiosk-7"),
        )

        assert order.status == OrderStatus.PENDING
        assert order.order_type == OrderType.TAKEAWAY
        assert order.total_amount == Decimal("9.25")
        assert order.total_amount == line_sum(order)
        assert [(l.menu_item_id, l.quantity, l.price) for l in order.lines] == [
            ("latte", 2, Decimal("3.50")),
            ("croissant", 1, Decimal("2.25")),
        ]
        assert order.customer_name == "Sara"
        assert order.device_id == "kiosk-7"
        assert order.token_number == 1

    async def test_total_unaffected_by_later_price_change(self, service, catalogue):
        order = await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("latte", 3)])

        catalogue.set_price("latte", "4.75")
        stored = await service.get_order(TENANT, order.id)

        assert stored.total_amount == Decimal("10.50")
        assert stored.lines[0].price == Decimal("3.50")
        assert stored.total_amount == line_sum(stored)

    async def test_shared_item_orderable_at_other_branch(self, service):
        order = await service.create_order(TENANT, BRANCH_B, OrderType.DINE_IN, [CartLine("croissant", 2)])

        assert order.total_amount == Decimal("4.50")
        assert order.token_number == 100

    async def test_string_order_type_accepted(self, service):
        order = await service.create_order(TENANT, BRANCH_A, "DINE_IN", [CartLine("latte", 1)])

        assert order.order_type == OrderType.DINE_IN


class TestCartValidation:
    """Rejected carts leave no trace."""

    @pytest.mark.parametrize("lines,bad_line,item", [
        ([CartLine("latte", 1), CartLine("latte", 0)], 1, "latte"),
        ([CartLine("latte", -2)], 0, "latte"),
        ([CartLine("latte", 1.5)], 0, "latte"),
        ([CartLine("latte", 1), CartLine("latte", True)], 1, "latte"),
        ([CartLine("latte", "2")], 0, "latte"),
        ([CartLine("latte", 1), CartLine("ghost", 1)], 1, "ghost"),
        ([CartLine("muffin", 1)], 0, "muffin"),
        ([CartLine("latte", 1), CartLine("tea", 1)], 1, "tea"),
        ([CartLine("foreign", 1)], 0, "foreign"),
    ])
    async def test_bad_line_rejected(self, service, session_factory, lines, bad_line, item):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, lines)

        assert exc_info.value.details["line"] == bad_line
        assert exc_info.value.details["menu_item_id"] == item
        assert await count_rows(session_factory, Order) == 0
        assert await count_rows(session_factory, OrderLine) == 0

    async def test_negative_catalogue_price_rejected(self, service, catalogue, session_factory):
        catalogue.add_item("refund", tenant_id=TENANT, branch_id=BRANCH_A, price="-5.00")

        with pytest.raises(ValidationError) as exc_info:
            await service.create_order(
                TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("latte", 1), CartLine("refund", 1)]
            )

        assert exc_info.value.details["line"] == 1
        assert exc_info.value.details["menu_item_id"] == "refund"
        assert await count_rows(session_factory, Order) == 0

    async def test_empty_cart_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, [])

    async def test_rejected_cart_consumes_no_token(self, service, session_factory):
        with pytest.raises(ValidationError):
            await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("ghost", 1)])

        async with session_factory() as session:
            branch = await session.get(Branch, BRANCH_A)
        assert branch.current_token == 1

    async def test_unknown_branch_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.create_order(TENANT, "nowhere", OrderType.DINE_IN, [CartLine("latte", 1)])

    async def test_branch_of_other_tenant_rejected(self, service):
        with pytest.raises(AuthorizationError):
            await service.create_order(
                TENANT, BRANCH_OTHER_TENANT, OrderType.DINE_IN, [CartLine("latte", 1)]
            )

    async def test_unknown_order_type_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.create_order(TENANT, BRANCH_A, "DELIVERY", [CartLine("latte", 1)])


class TestOrderScoping:
    """Tenant and branch isolation."""

    async def test_unknown_order(self, service):
        with pytest.raises(OrderNotFoundError):
            await service.get_order(TENANT, "missing")

    async def test_other_tenant_cannot_read_or_write(self, service):
        order = await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("latte", 1)])

        with pytest.raises(AuthorizationError):
            await service.get_order(OTHER_TENANT, order.id)
        with pytest.raises(AuthorizationError):
            await service.request_transition(OTHER_TENANT, order.id, OrderStatus.PREPARING)
        with pytest.raises(AuthorizationError):
            await service.request_cancellation(OTHER_TENANT, order.id)

    async def test_branch_bound_staff(self, service):
        order = await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("latte", 1)])

        with pytest.raises(AuthorizationError):
            await service.request_transition(
                TENANT, order.id, OrderStatus.PREPARING, branch_id=BRANCH_B
            )
        updated = await service.request_transition(
            TENANT, order.id, OrderStatus.PREPARING, branch_id=BRANCH_A
        )
        assert updated.status == OrderStatus.PREPARING


class TestReplaceLines:
    """Cart edits while the order is still PENDING."""

    async def test_replace_reprices_and_bumps_version(self, service, catalogue):
        order = await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("latte", 1)])
        catalogue.set_price("croissant", "2.40")

        updated = await service.replace_lines(
            TENANT, order.id, [CartLine("croissant", 3), CartLine("latte", 1)]
        )

        assert updated.total_amount == Decimal("10.70")
        assert updated.total_amount == line_sum(updated)
        assert [l.menu_item_id for l in updated.lines] == ["croissant", "latte"]
        assert updated.version == 2
        assert updated.token_number == order.token_number

    async def test_replace_after_preparing_rejected(self, service):
        order = await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("latte", 1)])
        await service.request_transition(TENANT, order.id, OrderStatus.PREPARING)

        with pytest.raises(InvalidTransitionError):
            await service.replace_lines(TENANT, order.id, [CartLine("latte", 2)])

    async def test_invalid_replacement_keeps_old_lines(self, service):
        order = await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("latte", 2)])

        with pytest.raises(ValidationError):
            await service.replace_lines(TENANT, order.id, [CartLine("muffin", 1)])

        stored = await service.get_order(TENANT, order.id)
        assert stored.total_amount == Decimal("7.00")
        assert [(l.menu_item_id, l.quantity) for l in stored.lines] == [("latte", 2)]


class TestListOrders:
    """Filters, ordering and pagination."""

    async def test_newest_first_with_total(self, service):
        placed = []
        for _ in range(3):
            placed.append(
                await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("latte", 1)])
            )

        total, orders = await service.list_orders(TENANT, OrderFilter(limit=2))

        assert total == 3
        assert [o.id for o in orders] == [placed[2].id, placed[1].id]

    async def test_filters(self, service):
        first = await service.create_order(
            TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("latte", 1)],
            customer=CustomerInfo(device_id="tablet-1"),
        )
        await service.create_order(TENANT, BRANCH_B, OrderType.DINE_IN, [CartLine("tea", 1)])
        await service.create_order(TENANT, BRANCH_NO_TOKENS, OrderType.DINE_IN, [CartLine("croissant", 1)])
        await service.request_transition(TENANT, first.id, OrderStatus.PREPARING)

        total, orders = await service.list_orders(TENANT, OrderFilter(branch_id=BRANCH_B))
        assert total == 1 and orders[0].branch_id == BRANCH_B

        total, orders = await service.list_orders(TENANT, OrderFilter(status=OrderStatus.PREPARING))
        assert [o.id for o in orders] == [first.id]

        total, orders = await service.list_orders(TENANT, OrderFilter(device_id="tablet-1"))
        assert [o.id for o in orders] == [first.id]

        total, _ = await service.list_orders(OTHER_TENANT)
        assert total == 0

    async def test_created_range(self, service):
        order = await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("latte", 1)])

        total, _ = await service.list_orders(
            TENANT, OrderFilter(created_from=order.created_at, created_to=order.created_at)
        )
        assert total == 1

    @pytest.mark.parametrize("filters", [OrderFilter(limit=0), OrderFilter(skip=-1)])
    async def test_bad_paging_rejected(self, service, filters):
        with pytest.raises(ValidationError):
            await service.list_orders(TENANT, filters)
