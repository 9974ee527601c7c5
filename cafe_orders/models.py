"""
SQLAlchemy Database Models

Order engine tables:
- Branch token configuration and counter
- Orders with snapshot-priced lines
- Cancellation window bookkeeping
- Read-only catalogue tables consumed by the SQL catalogue adapter
"""

import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from cafe_orders.core.clock import utcnow
from cafe_orders.core.config import get_settings
from cafe_orders.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _default_range_start() -> int:
    return get_settings().default_token_range_start


def _default_range_end() -> int:
    return get_settings().default_token_range_end


class OrderStatus(str, enum.Enum):
    """
    Order status workflow.

        PENDING -> PREPARING -> READY -> COMPLETED
        any non-terminal -> CANCELLATION_PENDING -> CANCELLED | previous status
    """
    PENDING = "PENDING"
    PREPARING = "PREPARING"
    READY = "READY"
    COMPLETED = "COMPLETED"
    CANCELLATION_PENDING = "CANCELLATION_PENDING"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class OrderType(str, enum.Enum):
    """Order type - eaten in the cafe or taken away."""
    DINE_IN = "DINE_IN"
    TAKEAWAY = "TAKEAWAY"


class Branch(Base):
    """
    A cafe location and its token counter.

    current_token holds the NEXT token to issue. Only the token allocator
    writes to the token columns.
    """
    __tablename__ = "branches"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(String(100), nullable=False, default="")

    # =========================================================================
    # TOKEN SYSTEM
    # =========================================================================
    has_token_system = Column(Boolean, nullable=False, default=False)
    token_range_start = Column(Integer, nullable=False, default=_default_range_start)
    token_range_end = Column(Integer, nullable=False, default=_default_range_end)
    current_token = Column(Integer, nullable=False, default=_default_range_start)
    last_token_reset = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Branch {self.id} tenant={self.tenant_id} token={self.current_token}>"


class Order(Base):
    """
    One customer order.

    total_amount always equals the sum of line price * quantity. Line prices
    are snapshots taken when the lines were written and are never re-read
    from the catalogue.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_tenant_branch_created", "tenant_id", "branch_id", "created_at"),
        Index("ix_orders_status_cancellation_expires", "status", "cancellation_expires_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), nullable=False, index=True)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    order_type = Column(Enum(OrderType), nullable=False, default=OrderType.DINE_IN)
    token_number = Column(Integer, nullable=True)
    total_amount = Column(Numeric(10, 2), nullable=False)

    # =========================================================================
    # CUSTOMER INFORMATION
    # =========================================================================
    customer_name = Column(String(100), nullable=True)
    customer_phone = Column(String(20), nullable=True)
    device_id = Column(String(128), nullable=True, index=True)

    # =========================================================================
    # ORDER STATUS
    # =========================================================================
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    version = Column(Integer, nullable=False, default=1)
    completed_by = Column(String(100), nullable=True)

    # =========================================================================
    # CANCELLATION WINDOW
    # =========================================================================
    cancellation_previous_status = Column(Enum(OrderStatus), nullable=True)
    cancellation_requested_by = Column(String(100), nullable=True)
    cancellation_requested_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_expires_at = Column(DateTime(timezone=True), nullable=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    lines = relationship(
        "OrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLine.position",
        lazy="selectin",
    )

    def __repr__(self):
        token = f"#{self.token_number}" if self.token_number is not None else "no-token"
        return f"<Order {self.id} {token} - {self.status.value}>"


class OrderLine(Base):
    """A cart line with the catalogue price captured at write time."""
    __tablename__ = "order_lines"

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = Column(String(36), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="lines")

    @property
    def line_total(self):
        return self.price * self.quantity

    def __repr__(self):
        return f"<OrderLine {self.menu_item_id} x{self.quantity} @ {self.price}>"


# =============================================================================
# CATALOGUE (read-only for the engine)
# =============================================================================

class MenuItem(Base):
    """Catalogue item owned by a branch. Managed outside the order engine."""
    __tablename__ = "menu_items"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(36), nullable=False, index=True)
    branch_id = Column(String(36), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)

    shares = relationship("MenuItemShare", cascade="all, delete-orphan", lazy="selectin")

    def __repr__(self):
        return f"<MenuItem {self.name} {self.price}>"


class MenuItemShare(Base):
    """Makes a branch's menu item orderable at another branch."""
    __tablename__ = "menu_item_shares"
    __table_args__ = (
        UniqueConstraint("menu_item_id", "target_branch_id", name="uq_menu_item_share"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    menu_item_id = Column(String(36), ForeignKey("menu_items.id"), nullable=False, index=True)
    target_branch_id = Column(String(36), nullable=False, index=True)
