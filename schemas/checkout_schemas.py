from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from models.orders import PaymentMethod
from utils.phone import to_e164


class CheckoutItem(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    product_name: str = Field(min_length=1, max_length=255)
    unit_price: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    quantity: int = Field(ge=1, le=100)
    requires_prescription: bool = False


class CheckoutRequest(BaseModel):
    items: list[CheckoutItem] = Field(min_length=1)
    delivery_address: str
    county: str
    phone_number: str
    payment_method: PaymentMethod
    currency: str = "KES"
    prescription_id: Optional[str] = None
    # Receipt address when the account has none (card and hosted checkouts need one)
    email: Optional[EmailStr] = None

    @field_validator('delivery_address', 'county')
    @classmethod
    def validate_not_blank(cls, value):
        if not value or not value.strip():
            raise ValueError('This field cannot be empty')
        return value.strip()

    @field_validator('phone_number')
    @classmethod
    def validate_phone(cls, value):
        """
        Kenyan numbers may be given locally (0712 345 678); anything else
        needs a country code. Stored in E.164.
        """
        normalized = to_e164(value)
        if normalized is None:
            raise ValueError('Invalid phone number')
        return normalized

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, value):
        value = (value or "").strip().upper()
        if len(value) != 3 or not value.isalpha():
            raise ValueError('Currency must be a 3-letter ISO code')
        return value


class InitiatePaymentRequest(BaseModel):
    """Start (or restart) payment for an existing pending order."""
    payment_method: PaymentMethod
    phone_number: Optional[str] = None

    @field_validator('phone_number')
    @classmethod
    def validate_phone(cls, value):
        if value is None:
            return value
        normalized = to_e164(value)
        if normalized is None:
            raise ValueError('Invalid phone number')
        return normalized


class PaymentSession(BaseModel):
    payment_id: str
    gateway: str
    external_reference: str
    status: str
    redirect_url: Optional[str] = None
    prompt_message: Optional[str] = None


class CheckoutResponse(BaseModel):
    order_id: str
    status: str
    subtotal: Decimal
    delivery_fee: Decimal
    total_amount: Decimal
    currency: str
    requires_prescription: bool
    payment: Optional[PaymentSession] = None
    message: str
