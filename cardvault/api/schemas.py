"""API schemas for CardVault API.

Pydantic models for request/response validation and serialization.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ============================================================================
# Common Schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Standard error response.

    Admin endpoints fill ``details`` with the failed precondition; buyer
    endpoints leave it empty.
    """

    error_code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    details: dict[str, Any] = Field(
        default_factory=dict, description="Additional error context"
    )
    request_id: str | None = Field(
        default=None, description="Request ID for correlation"
    )


class OrderStatusEnum(str, Enum):
    """Order status values."""

    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    EXPIRED = "expired"
    REFUND_PENDING = "refund_pending"
    REFUND_REJECTED = "refund_rejected"
    REFUNDED = "refunded"


# ============================================================================
# Order Schemas
# ============================================================================


class OrderCreateRequest(BaseModel):
    """Request to buy cards of a product."""

    product_id: str = Field(..., min_length=1, description="Catalog product ID")
    quantity: int = Field(default=1, ge=1, description="Number of cards")
    payment_method: str = Field(default="ldc", description="Payment method")


class CardSchema(BaseModel):
    """A purchased card."""

    id: str
    content: str


class OrderSchema(BaseModel):
    """Order as shown to its buyer."""

    id: str
    order_no: str
    product_id: str | None
    product_name: str | None
    unit_price: Decimal | None
    quantity: int
    total_amount: Decimal
    status: OrderStatusEnum
    payment_method: str
    trade_no: str | None = None
    expired_at: datetime | None = None
    paid_at: datetime | None = None
    refund_reason: str | None = None
    refund_requested_at: datetime | None = None
    refunded_at: datetime | None = None
    created_at: datetime | None = None
    cards: list[CardSchema] = Field(
        default_factory=list, description="Card contents, once the order is fulfilled"
    )


class AdminOrderSchema(OrderSchema):
    """Order as shown to an admin."""

    user_id: str
    username: str | None = None
    admin_remark: str | None = None
    updated_at: datetime | None = None


class PaymentFormSchema(BaseModel):
    """Form the buyer's browser posts to the gateway."""

    action_url: str = Field(..., description="Gateway submit URL")
    method: str = Field(default="POST", description="Form method")
    fields: dict[str, str] = Field(..., description="Signed form fields")


class CheckoutResponse(BaseModel):
    """Checkout result.

    On partial success the order is committed and reserved but
    ``payment`` is absent; the buyer resumes at ``next_step``.
    """

    order: OrderSchema
    payment: PaymentFormSchema | None = None
    partial_success: bool = False
    next_step: str | None = None
    error_code: str | None = None


class OrdersListResponse(BaseModel):
    """Buyer's orders."""

    items: list[OrderSchema]
    total: int


class RefundRequest(BaseModel):
    """Buyer refund request."""

    reason: str = Field(..., description="Why the buyer wants a refund")


# ============================================================================
# Inventory Schemas
# ============================================================================


class StockResponse(BaseModel):
    """Available stock of a product."""

    product_id: str
    available: int


# ============================================================================
# Admin Schemas
# ============================================================================


class AdminCompleteRequest(BaseModel):
    """Manual completion of a pending order."""

    remark: str | None = Field(default=None, max_length=500)


class RefundRejectRequest(BaseModel):
    """Refund rejection."""

    reason: str | None = Field(default=None, max_length=500)


class RefundHandoffResponse(BaseModel):
    """Parameters for a refund performed from the operator's browser."""

    order_id: str
    api_url: str
    fields: dict[str, str]
    token: str = Field(..., description="Present this token when attesting")
    expires_at: datetime


class RefundAttestRequest(BaseModel):
    """Operator's report on a manual refund."""

    token: str = Field(..., min_length=1)
    succeeded: bool
    note: str | None = Field(default=None, max_length=500)


class SweepResponse(BaseModel):
    """Result of a maintenance sweep."""

    expired_orders: int
