"""Tests for the order state machine.

Coverage:
- Forward transition rules (pure validation)
- Full PENDING -> COMPLETED path through the service
- Terminal states and skipped steps
- Optimistic concurrency: stale views and racing writers
"""

import asyncio

import pytest

from cafe_orders.core.exceptions import ConflictError, InvalidTransitionError, ValidationError
from cafe_orders.models import Order, OrderStatus, OrderType
from cafe_orders.services.orders import CartLine
from cafe_orders.services.state_machine import OrderStateMachine
from tests.conftest import BRANCH_A, TENANT


async def place(service) -> Order:
    return await service.create_order(TENANT, BRANCH_A, OrderType.DINE_IN, [CartLine("latte", 1)])


class TestTransitionRules:
    """Pure validation, no storage involved."""

    @pytest.mark.parametrize("current,target", [
        (OrderStatus.PENDING, OrderStatus.PREPARING),
        (OrderStatus.PREPARING, OrderStatus.READY),
        (OrderStatus.READY, OrderStatus.COMPLETED),
    ])
    def test_single_forward_steps_allowed(self, current, target):
        OrderStateMachine().validate_forward("o-1", current, target)

    @pytest.mark.parametrize("current,target", [
        (OrderStatus.PENDING, OrderStatus.READY),
        (OrderStatus.PENDING, OrderStatus.COMPLETED),
        (OrderStatus.READY, OrderStatus.PREPARING),
        (OrderStatus.PREPARING, OrderStatus.PENDING),
        (OrderStatus.PENDING, OrderStatus.PENDING),
    ])
    def test_skips_and_backward_steps_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError) as exc_info:
            OrderStateMachine().validate_forward("o-1", current, target)

        assert exc_info.value.current_status == current.value
        assert exc_info.value.target_status == target.value

    @pytest.mark.parametrize("target", [OrderStatus.CANCELLATION_PENDING, OrderStatus.CANCELLED])
    def test_cancellation_states_not_reachable_by_transition(self, target):
        with pytest.raises(InvalidTransitionError):
            OrderStateMachine().validate_forward("o-1", OrderStatus.PREPARING, target)

    @pytest.mark.parametrize("terminal", [OrderStatus.COMPLETED, OrderStatus.CANCELLED])
    def test_terminal_states_are_final(self, terminal):
        sm = OrderStateMachine()
        for target in OrderStatus:
            with pytest.raises(InvalidTransitionError):
                sm.validate_forward("o-1", terminal, target)
        with pytest.raises(InvalidTransitionError):
            sm.validate_cancellation_request("o-1", terminal)

    def test_pending_cancellation_blocks_advance(self):
        with pytest.raises(InvalidTransitionError):
            OrderStateMachine().validate_forward(
                "o-1", OrderStatus.CANCELLATION_PENDING, OrderStatus.READY
            )


class TestTransitionsThroughService:
    """Transitions persisted through OrderService."""

    async def test_full_path_to_completed(self, service):
        order = await place(service)
        assert order.status == OrderStatus.PENDING
        assert order.version == 1

        seen = [order.status]
        for target in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED):
            order = await service.request_transition(TENANT, order.id, target, actor="barista-1")
            seen.append(order.status)

        assert seen == [
            OrderStatus.PENDING,
            OrderStatus.PREPARING,
            OrderStatus.READY,
            OrderStatus.COMPLETED,
        ]
        assert order.version == 4
        assert order.completed_at is not None
        assert order.completed_by == "barista-1"

    async def test_skipping_a_step_fails(self, service):
        """PENDING -> READY is rejected and nothing changes."""
        order = await place(service)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await service.request_transition(TENANT, order.id, OrderStatus.READY)

        assert exc_info.value.current_status == "PENDING"
        assert exc_info.value.target_status == "READY"
        unchanged = await service.get_order(TENANT, order.id)
        assert unchanged.status == OrderStatus.PENDING
        assert unchanged.version == 1

    async def test_completed_order_rejects_everything(self, service):
        order = await place(service)
        for target in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED):
            await service.request_transition(TENANT, order.id, target)

        with pytest.raises(InvalidTransitionError):
            await service.request_transition(TENANT, order.id, OrderStatus.PREPARING)
        with pytest.raises(InvalidTransitionError):
            await service.request_cancellation(TENANT, order.id)

    async def test_cancelled_target_rejected(self, service):
        order = await place(service)

        with pytest.raises(InvalidTransitionError):
            await service.request_transition(TENANT, order.id, OrderStatus.CANCELLED)

    async def test_unknown_target_is_validation_error(self, service):
        order = await place(service)

        with pytest.raises(ValidationError):
            await service.request_transition(TENANT, order.id, "SERVED")

    async def test_string_target_accepted(self, service):
        order = await place(service)

        updated = await service.request_transition(TENANT, order.id, "PREPARING")

        assert updated.status == OrderStatus.PREPARING


class TestOptimisticConcurrency:
    """Racing writers: exactly one wins, the loser gets ConflictError."""

    async def test_concurrent_transitions_from_same_view(self, service):
        order = await place(service)

        results = await asyncio.gather(
            service.request_transition(
                TENANT, order.id, OrderStatus.PREPARING, expected_version=order.version
            ),
            service.request_transition(
                TENANT, order.id, OrderStatus.PREPARING, expected_version=order.version
            ),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, Order)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(successes) == 1
        assert len(conflicts) == 1
        assert conflicts[0].retryable

        final = await service.get_order(TENANT, order.id)
        assert final.status == OrderStatus.PREPARING
        assert final.version == 2

    async def test_stale_expected_status_conflicts(self, service):
        order = await place(service)
        await service.request_transition(TENANT, order.id, OrderStatus.PREPARING)

        with pytest.raises(ConflictError) as exc_info:
            await service.request_transition(
                TENANT, order.id, OrderStatus.READY, expected_status=OrderStatus.PENDING
            )

        assert exc_info.value.current_status == "PREPARING"

    async def test_compare_and_set_with_stale_object(self, service, session_factory):
        """A write based on an outdated read touches no row."""
        order = await place(service)
        async with session_factory() as session:
            stale = await session.get(Order, order.id)

        await service.request_transition(TENANT, order.id, OrderStatus.PREPARING)

        sm = OrderStateMachine()
        async with session_factory() as session:
            with pytest.raises(ConflictError):
                async with session.begin():
                    await sm.advance(session, stale, OrderStatus.PREPARING)

        current = await service.get_order(TENANT, order.id)
        assert current.status == OrderStatus.PREPARING
        assert current.version == 2
