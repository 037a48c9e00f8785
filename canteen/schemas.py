"""
Pydantic Schemas for Request/Response Validation

Every response body follows the envelope ``{success, data | message}``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from canteen.models import LifecycleState, MenuCategory, PaymentState

DataT = TypeVar("DataT")


# =============================================================================
# ENVELOPE
# =============================================================================

class ApiResponse(BaseModel, Generic[DataT]):
    """Standard success envelope."""
    success: bool = True
    message: Optional[str] = None
    data: Optional[DataT] = None


class ErrorResponse(BaseModel):
    """Standard error envelope."""
    success: bool = False
    message: str
    detail: Optional[str] = None
    errors: Optional[List[dict]] = None


# =============================================================================
# MENU
# =============================================================================

class MenuItemCreate(BaseModel):
    """Request schema for adding a menu item."""
    name: str = Field(..., min_length=1, max_length=100, examples=["Masala Dosa"])
    unit_price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2, examples=["45.00"])
    stock_count: int = Field(..., ge=0, examples=[25])
    category: MenuCategory = Field(..., examples=["breakfast"])
    description: str = Field(default="", max_length=1000)
    image_url: Optional[str] = Field(None, max_length=500)


class MenuItemUpdate(BaseModel):
    """Partial update; omitted fields stay as they are."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    unit_price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    stock_count: Optional[int] = Field(None, ge=0)
    category: Optional[MenuCategory] = None
    description: Optional[str] = Field(None, max_length=1000)
    image_url: Optional[str] = Field(None, max_length=500)


class StockUpdate(BaseModel):
    stock_count: int = Field(..., ge=0)


class MenuItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    image_url: str
    unit_price: Decimal
    stock_count: int
    is_available: bool
    category: MenuCategory
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_serializer("unit_price")
    def _serialize_price(self, value: Decimal) -> float:
        return float(value)


# =============================================================================
# ORDERS
# =============================================================================

class CheckoutItem(BaseModel):
    """Single cart line."""
    menu_item_id: int = Field(..., examples=[1])
    quantity: int = Field(..., ge=1, le=99, examples=[2])


class CheckoutRequest(BaseModel):
    items: List[CheckoutItem] = Field(..., min_length=1)


class VerifyPaymentRequest(BaseModel):
    """Confirmation handed back by the gateway after the customer pays."""
    payment_handle: str = Field(..., min_length=1, max_length=100)
    payment_id: str = Field(..., min_length=1, max_length=100)
    signature: str = Field(default="", max_length=256)


class OrderLineItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    catalog_item_id: int
    display_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    @field_serializer("unit_price", "line_total")
    def _serialize_amount(self, value: Decimal) -> float:
        return float(value)


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    line_items: List[OrderLineItemResponse]
    total_amount: Decimal
    payment_reference: str
    payment_state: PaymentState
    lifecycle_state: LifecycleState
    redemption_token: Optional[str]
    created_at: Optional[datetime]
    scanned_at: Optional[datetime]
    delivered_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    @field_serializer("total_amount")
    def _serialize_total(self, value: Decimal) -> float:
        return float(value)


class CheckoutResponseData(BaseModel):
    """Everything the client needs to complete payment."""
    order: OrderResponse
    payment_handle: str
    amount: int = Field(..., description="Total in the smallest currency unit")
    currency: str
    degraded: bool
    client_secret: Optional[str] = None


class MockPaymentCompletion(BaseModel):
    payment_handle: str
    payment_id: str
    signature: str


# =============================================================================
# HEALTH
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_service: str
    timestamp: datetime
