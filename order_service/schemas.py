from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from order_service.models import OrderStatus


class CartLine(BaseModel):
    product_id: int = Field(..., examples=[1])
    quantity: int = Field(..., examples=[2])


class ShippingAddress(BaseModel):
    model_config = ConfigDict(extra="allow")

    full_name: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    state: Optional[str] = None
    phone: Optional[str] = None


class CheckoutRequest(BaseModel):
    # Quantities are validated by the checkout engine so the error names the product.
    items: List[CartLine] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: str = Field(..., min_length=1, max_length=64, examples=["credit_card"])


class StatusUpdate(BaseModel):
    status: OrderStatus


class OrderLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    status: OrderStatus
    shipping_address: dict
    payment_method: str
    items: List[OrderLineRead]
    total_amount: Decimal
    item_count: int
    created_at: datetime
    updated_at: datetime


class OrderSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    status: OrderStatus
    total_amount: Decimal
    item_count: int
    created_at: datetime


class ErrorResponse(BaseModel):
    error: str
    detail: str
    failing_product_id: Optional[int] = None
