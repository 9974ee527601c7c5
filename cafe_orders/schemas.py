"""
Pydantic Schemas for Request/Response Validation

Order engine HTTP payloads:
- Cart submission and line replacement
- Status transition and cancellation requests
- Order, list, error and health responses
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from cafe_orders.core.clock import ensure_utc
from cafe_orders.models import OrderStatus, OrderType


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderLineCreate(BaseModel):
    """Single cart line."""
    menu_item_id: str = Field(..., min_length=1, max_length=36, examples=["a1b2c3"])
    quantity: int = Field(..., ge=1, le=999, examples=[2])


class OrderCreate(BaseModel):
    """Request schema for placing a new order."""

    branch_id: str = Field(..., min_length=1, max_length=36)
    order_type: OrderType = Field(default=OrderType.DINE_IN, examples=["DINE_IN"])

    # Customer Info
    customer_name: Optional[str] = Field(None, max_length=100, examples=["Sara"])
    customer_phone: Optional[str] = Field(None, max_length=20, examples=["555-123-4567"])
    device_id: Optional[str] = Field(None, max_length=128)

    # Cart (emptiness is reported by the engine with the usual error body)
    lines: List[OrderLineCreate] = Field(default_factory=list)


class LinesReplace(BaseModel):
    """New cart for an order that is still PENDING."""
    lines: List[OrderLineCreate] = Field(default_factory=list)


class TransitionRequest(BaseModel):
    """
    Staff status change.

    expected_status / expected_version carry the caller's view of the order;
    a mismatch is rejected with a conflict instead of overwriting.
    """
    target: OrderStatus = Field(..., examples=["PREPARING"])
    expected_status: Optional[OrderStatus] = None
    expected_version: Optional[int] = Field(None, ge=1)
    actor: Optional[str] = Field(None, max_length=100)


class CancellationRequest(BaseModel):
    requested_by: Optional[str] = Field(None, max_length=100, examples=["customer"])


class CancellationResolution(BaseModel):
    accept: bool


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class OrderLineResponse(BaseModel):
    menu_item_id: str
    position: int
    quantity: int
    price: Decimal

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: str
    tenant_id: str
    branch_id: str
    order_type: OrderType
    token_number: Optional[int]
    total_amount: Decimal
    status: OrderStatus
    version: int
    customer_name: Optional[str]
    customer_phone: Optional[str]
    device_id: Optional[str]
    completed_by: Optional[str]
    cancellation_previous_status: Optional[OrderStatus]
    cancellation_requested_by: Optional[str]
    cancellation_requested_at: Optional[datetime]
    cancellation_expires_at: Optional[datetime]
    created_at: datetime
    updated_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    lines: List[OrderLineResponse]

    @field_validator(
        "cancellation_requested_at",
        "cancellation_expires_at",
        "created_at",
        "updated_at",
        "completed_at",
        "cancelled_at",
    )
    @classmethod
    def as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    message: str
    order_id: Optional[str] = None
    current_status: Optional[str] = None
    target_status: Optional[str] = None
    retryable: bool = False
    details: dict = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    timer_backend: str
    timestamp: datetime
