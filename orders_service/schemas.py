from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Literal
from datetime import datetime
from shared.security_config import sanitize_input
from orders_service.models import OrderStatus, PaymentStatus, PaymentMethod, ShippingAddress


# --- Cart ---
class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)

class CartItemResponse(BaseModel):
    product_id: str
    quantity: int
    price: float
    name: Optional[str] = None

class CartResponse(BaseModel):
    user_id: str
    items: List[CartItemResponse]
    updated_at: datetime
    total: float


# --- Orders ---
class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)

class ShippingAddressIn(ShippingAddress):
    @field_validator('full_name', 'province', 'district', 'ward', 'street', mode='before')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class OrderCreate(BaseModel):
    source: Literal["cart", "buy_now"] = "cart"
    items: Optional[List[OrderItemRequest]] = None
    cart_item_ids: Optional[List[str]] = None
    shipping_address: ShippingAddressIn
    payment_method: PaymentMethod
    note: Optional[str] = Field(None, max_length=500)

    @field_validator('note')
    def sanitize_note(cls, v):
        return sanitize_input(v)

    @model_validator(mode='after')
    def check_items(self):
        if self.source == "buy_now" and not self.items:
            raise ValueError("items are required when buying now")
        return self

class OrderStatusUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None

    @model_validator(mode='after')
    def check_any(self):
        if self.status is None and self.payment_status is None:
            raise ValueError("status or payment_status is required")
        return self

class StockAdjustment(BaseModel):
    delta: int

    @field_validator('delta')
    def non_zero(cls, v):
        if v == 0:
            raise ValueError("delta must be non-zero")
        return v


class OrderItemResponse(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int
    image: str = ""

class OrderResponse(BaseModel):
    id: str
    order_code: str
    user_id: str
    items: List[OrderItemResponse]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    status: OrderStatus
    total: float
    note: str = ""
    payment_transaction_id: str = ""
    payment_url: str = ""
    pending_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    shipping_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "OrderResponse":
        return cls(**{**doc, "id": str(doc["_id"])})

class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    total: int
    page: int
    limit: int

class StockResponse(BaseModel):
    product_id: str
    stock: int

class SweepResponse(BaseModel):
    total: int
    cancelled: int
    failed: int
