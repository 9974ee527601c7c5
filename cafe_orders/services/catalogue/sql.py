"""
SQL Catalogue Implementation

Reads price, availability and branch sharing from the catalogue tables
maintained by the menu management subsystem.
"""

import logging
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cafe_orders.database import storage_errors
from cafe_orders.models import MenuItem
from cafe_orders.services.catalogue.base import BaseCatalogueService, CatalogueItem

logger = logging.getLogger(__name__)


class SqlCatalogueService(BaseCatalogueService):
    """Catalogue reader backed by the menu_items / menu_item_shares tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "sql"

    @staticmethod
    def _to_item(row: MenuItem) -> CatalogueItem:
        return CatalogueItem(
            item_id=row.id,
            tenant_id=row.tenant_id,
            branch_id=row.branch_id,
            price=Decimal(row.price),
            available=bool(row.is_available),
            shared_with_branch_ids=frozenset(share.target_branch_id for share in row.shares),
        )

    async def get_item(self, item_id: str, branch_id: str) -> Optional[CatalogueItem]:
        items = await self.get_items([item_id], branch_id)
        return items.get(item_id)

    async def get_items(
        self,
        item_ids: Iterable[str],
        branch_id: str,
    ) -> dict[str, CatalogueItem]:
        """Single query for the whole cart."""
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return {}

        async with storage_errors("catalogue lookup"):
            async with self._session_factory() as session:
                result = await session.execute(select(MenuItem).where(MenuItem.id.in_(ids)))
                rows = result.scalars().all()

        logger.debug(f"SQL catalogue: {len(rows)}/{len(ids)} items found for branch {branch_id}")
        return {row.id: self._to_item(row) for row in rows}
