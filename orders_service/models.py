from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPING = "shipping"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    COD = "cod"
    MOMO = "momo"


class PaymentResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# Timestamp field stamped when an order enters each status
STATUS_TIMESTAMP_FIELDS = {
    OrderStatus.PENDING: "pending_at",
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.SHIPPING: "shipping_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., pattern=r"^[0-9]{10,11}$")
    province: str = Field(..., min_length=1)
    district: str = Field(..., min_length=1)
    ward: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)


class OrderItemDB(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)  # Snapshot
    quantity: int = Field(..., ge=1)
    image: str = ""


class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    order_code: str
    user_id: str
    items: List[OrderItemDB] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    status: OrderStatus = OrderStatus.PENDING
    total: float = Field(..., ge=0)
    note: str = ""
    payment_transaction_id: str = ""
    payment_url: str = ""
    payment_attempts: int = 0
    # Item indexes whose stock was already given back to the ledger
    released_items: List[int] = []
    idempotency_key: Optional[str] = None
    pending_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    shipping_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True
        validate_default = True


class CartItemDB(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float  # Snapshot, informational only
    name: Optional[str] = None


class CartDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[CartItemDB] = []
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class PaymentEventDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    gateway: str = "momo"
    gateway_order_id: Optional[str] = None
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    result_code: Optional[int] = None
    amount: Optional[int] = None
    outcome: str
    received_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
