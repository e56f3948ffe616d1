from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from models.orders import PaymentMethod
from models.payments import PaymentStatus


class VerifyPaymentRequest(BaseModel):
    """
    Sent by the storefront when the customer comes back from a hosted
    checkout, or presses "check status". The reference is what the provider
    put on the return URL (tx_ref, OrderTrackingId, PayPal token,
    CheckoutRequestID).
    """
    gateway: str
    reference: str

    @field_validator('gateway')
    @classmethod
    def validate_gateway(cls, value):
        value = (value or "").strip().lower()
        if value not in ("mpesa", "pesapal", "paypal", "flutterwave"):
            raise ValueError('Unknown payment gateway')
        return value

    @field_validator('reference')
    @classmethod
    def validate_reference(cls, value):
        if not value or not value.strip():
            raise ValueError('Reference cannot be empty')
        return value.strip()


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: Optional[str]
    amount: Decimal
    currency: str
    method: PaymentMethod
    gateway: str
    status: PaymentStatus
    external_reference: str
    receipt_number: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PaymentStatusResponse(BaseModel):
    payment_id: str
    payment_status: str
    order_id: Optional[str]
    order_status: Optional[str]
    result: Optional[str] = None
    message: str


class VerifyPaymentResponse(BaseModel):
    outcome: str
    result: Optional[str] = None
    payment_id: Optional[str] = None
    payment_status: Optional[str] = None
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    payment_recorded: bool = False
    message: str
