"""
Catalogue Service Abstract Base Class

Defines the read contract the order engine needs from the menu/catalogue
subsystem. The engine never writes catalogue data; it only reads the
current price and availability of an item at the moment a cart is priced.

Design Pattern: Strategy Pattern
    - SqlCatalogueService reads the shared catalogue tables
    - InMemoryCatalogueService backs development and tests
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional


@dataclass(frozen=True)
class CatalogueItem:
    """
    Catalogue view of one menu item.

    Attributes:
        item_id: Catalogue item identifier
        tenant_id: Owning tenant
        branch_id: Branch the item natively belongs to
        price: Current unit price
        available: Whether the item can be ordered right now
        shared_with_branch_ids: Other branches allowed to sell the item
    """
    item_id: str
    tenant_id: str
    branch_id: str
    price: Decimal
    available: bool = True
    shared_with_branch_ids: frozenset[str] = field(default_factory=frozenset)

    def is_orderable_for(self, branch_id: str) -> bool:
        """Native to the branch or explicitly shared with it."""
        return self.branch_id == branch_id or branch_id in self.shared_with_branch_ids


class BaseCatalogueService(ABC):
    """
    Abstract base class for catalogue readers.

    Example:
        >>> catalogue = get_catalogue_service()
        >>> item = await catalogue.get_item("latte-id", branch_id="b-1")
        >>> if item and item.available and item.is_orderable_for("b-1"):
        ...     print(item.price)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the catalogue provider.

        Returns:
            str: Provider name (e.g., "memory", "sql")
        """
        pass

    @abstractmethod
    async def get_item(self, item_id: str, branch_id: str) -> Optional[CatalogueItem]:
        """
        Look up one item for pricing in the context of a branch.

        Args:
            item_id: Catalogue item identifier
            branch_id: Branch the cart is being placed at

        Returns:
            CatalogueItem, or None if the item does not exist
        """
        pass

    async def get_items(
        self,
        item_ids: Iterable[str],
        branch_id: str,
    ) -> dict[str, CatalogueItem]:
        """Look up several items; unknown ids are left out of the result."""
        found: dict[str, CatalogueItem] = {}
        for item_id in dict.fromkeys(item_ids):
            item = await self.get_item(item_id, branch_id)
            if item is not None:
                found[item_id] = item
        return found
