"""
Core module initialization.
Exports configuration, logging utilities and the engine error taxonomy.
"""

from cafe_orders.core.config import get_settings, Settings, EnvironmentMode
from cafe_orders.core.exceptions import (
    OrderEngineError,
    ValidationError,
    InvalidTransitionError,
    ConflictError,
    AuthorizationError,
    OrderNotFoundError,
    TransientStorageError,
)

__all__ = [
    "get_settings",
    "Settings",
    "EnvironmentMode",
    "OrderEngineError",
    "ValidationError",
    "InvalidTransitionError",
    "ConflictError",
    "AuthorizationError",
    "OrderNotFoundError",
    "TransientStorageError",
]
