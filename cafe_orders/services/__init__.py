"""
                        Services Module

Contains the order engine and its pluggable collaborators.
Collaborators have an in-process (development) and a production implementation.

Services:
    - orders: OrderService façade (creation, transitions, cancellation)
    - tokens: Per-branch token allocation
    - state_machine: Transition rules and the compare-and-set write path
    - cancellation: Cancellation window timers
    - catalogue: Menu price/availability readers (memory, sql)
    - timers: Deadline schedulers (asyncio, celery)
"""

from functools import lru_cache

from cafe_orders.database import get_session_factory
from cafe_orders.services.catalogue import get_catalogue_service
from cafe_orders.services.orders import CartLine, CustomerInfo, OrderFilter, OrderService
from cafe_orders.services.timers import get_timer_backend


@lru_cache()
def get_order_service() -> OrderService:
    """Process-wide OrderService wired from settings."""
    return OrderService(
        session_factory=get_session_factory(),
        catalogue=get_catalogue_service(),
        timer_backend=get_timer_backend(),
    )


def reset_order_service() -> None:
    """Clear the cached OrderService instance."""
    get_order_service.cache_clear()


__all__ = [
    "get_order_service",
    "reset_order_service",
    "OrderService",
    "CartLine",
    "CustomerInfo",
    "OrderFilter",
]
