"""
Catalogue Service Factory

Provides a single entry point for obtaining the catalogue reader used to
price carts. The rest of the engine stays agnostic about where menu data
comes from.

Usage:
    from cafe_orders.services.catalogue import get_catalogue_service

    catalogue = get_catalogue_service()
    item = await catalogue.get_item(item_id, branch_id)

Provider Switching:
    - CATALOGUE_PROVIDER=sql → SqlCatalogueService (shared menu tables)
    - CATALOGUE_PROVIDER=memory → InMemoryCatalogueService (empty, fill via add_item)
"""

import logging
from functools import lru_cache

from cafe_orders.core.config import CatalogueProvider, get_settings
from cafe_orders.database import get_session_factory
from cafe_orders.services.catalogue.base import BaseCatalogueService, CatalogueItem
from cafe_orders.services.catalogue.mock import InMemoryCatalogueService
from cafe_orders.services.catalogue.sql import SqlCatalogueService

logger = logging.getLogger(__name__)


@lru_cache()
def get_catalogue_service() -> BaseCatalogueService:
    """
    Get the configured catalogue service instance.

    The instance is cached so that every caller prices carts against
    the same catalogue.
    """
    settings = get_settings()

    if settings.catalogue_provider == CatalogueProvider.MEMORY:
        logger.info("Catalogue Service: Using InMemoryCatalogueService")
        return InMemoryCatalogueService()

    logger.info("Catalogue Service: Using SqlCatalogueService")
    return SqlCatalogueService(get_session_factory())


def reset_catalogue_service() -> None:
    """Clear the cached catalogue service instance."""
    get_catalogue_service.cache_clear()
    logger.debug("Catalogue service cache cleared")


__all__ = [
    "get_catalogue_service",
    "reset_catalogue_service",
    "BaseCatalogueService",
    "CatalogueItem",
    "InMemoryCatalogueService",
    "SqlCatalogueService",
]
