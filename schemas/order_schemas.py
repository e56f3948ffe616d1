from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.orders import OrderStatus, PaymentMethod
from schemas.payment_schemas import PaymentResponse


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    product_name: str
    price_at_time: Decimal
    quantity: int
    subtotal: Decimal


class TrackingEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: OrderStatus
    location: Optional[str] = None
    note: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None


class OrderSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    status: OrderStatus
    total_amount: Decimal
    delivery_fee: Decimal
    currency: str
    payment_method: PaymentMethod
    requires_prescription: bool
    prescription_approved: bool
    created_at: Optional[datetime] = None


class OrderDetail(OrderSummary):
    delivery_address: str
    county: Optional[str] = None
    phone_number: Optional[str] = None
    current_status: Optional[OrderStatus] = None
    items: list[OrderItemResponse] = []
    payments: list[PaymentResponse] = []
    tracking: list[TrackingEntry] = []


class AdminStatusUpdateRequest(BaseModel):
    status: OrderStatus
    location: Optional[str] = Field(default=None, max_length=255)
    note: Optional[str] = Field(default=None, max_length=1000)

    @field_validator('location', 'note')
    @classmethod
    def strip_blank(cls, value):
        if value is None:
            return value
        value = value.strip()
        return value or None


class TransitionResponse(BaseModel):
    result: str
    order_id: Optional[str]
    order_status: Optional[str]
    payment_recorded: bool
    message: str
