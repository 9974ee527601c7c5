"""
In-Memory Catalogue Implementation

Keeps catalogue items in a dictionary instead of reading the shared
menu tables. Used in development and tests to:
    - Price carts without seeding catalogue tables
    - Change prices or availability mid-test to check snapshot behaviour
"""

import logging
from decimal import Decimal
from typing import Iterable, Optional

from cafe_orders.services.catalogue.base import BaseCatalogueService, CatalogueItem

logger = logging.getLogger(__name__)


class InMemoryCatalogueService(BaseCatalogueService):
    """
    Dictionary-backed catalogue.

    Example:
        >>> catalogue = InMemoryCatalogueService()
        >>> catalogue.add_item("latte", tenant_id="t-1", branch_id="b-1", price="3.50")
    """

    def __init__(self, items: Optional[Iterable[CatalogueItem]] = None):
        self._items: dict[str, CatalogueItem] = {}
        for item in items or ():
            self._items[item.item_id] = item

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "memory"

    def add_item(
        self,
        item_id: str,
        *,
        tenant_id: str,
        branch_id: str,
        price,
        available: bool = True,
        shared_with: Iterable[str] = (),
    ) -> CatalogueItem:
        """Register or replace an item."""
        item = CatalogueItem(
            item_id=item_id,
            tenant_id=tenant_id,
            branch_id=branch_id,
            price=Decimal(str(price)),
            available=available,
            shared_with_branch_ids=frozenset(shared_with),
        )
        self._items[item_id] = item
        return item

    def set_price(self, item_id: str, price) -> None:
        """Change the current price of an item."""
        item = self._items[item_id]
        self._items[item_id] = CatalogueItem(
            item_id=item.item_id,
            tenant_id=item.tenant_id,
            branch_id=item.branch_id,
            price=Decimal(str(price)),
            available=item.available,
            shared_with_branch_ids=item.shared_with_branch_ids,
        )
        logger.debug(f"Memory catalogue: {item_id} repriced to {price}")

    def set_available(self, item_id: str, available: bool) -> None:
        """Toggle availability of an item."""
        item = self._items[item_id]
        self._items[item_id] = CatalogueItem(
            item_id=item.item_id,
            tenant_id=item.tenant_id,
            branch_id=item.branch_id,
            price=item.price,
            available=available,
            shared_with_branch_ids=item.shared_with_branch_ids,
        )

    async def get_item(self, item_id: str, branch_id: str) -> Optional[CatalogueItem]:
        return self._items.get(item_id)
