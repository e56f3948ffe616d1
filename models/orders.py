import enum
import uuid
from core.database import Base
from sqlalchemy.orm import relationship
from sqlalchemy import (Column, String, ForeignKey, Numeric, Boolean, CheckConstraint)
from .mixins import CreatedAtMixin, UpdatedAtMixin, enum_type


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"


class PaymentMethod(str, enum.Enum):
    MPESA = "mpesa"
    CARD = "card"
    PAYPAL = "paypal"
    PESAPAL = "pesapal"
    FLUTTERWAVE = "flutterwave"


class Order(Base, CreatedAtMixin, UpdatedAtMixin):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_amount > 0", name="ck_orders_total_amount_positive"),
    )

    #pk
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    #fk
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)

    #relationships
    user = relationship("User", back_populates="orders")
    items = relationship("OrderItem", back_populates="order")
    payments = relationship("Payment", back_populates="order", order_by="Payment.created_at")
    tracking = relationship("OrderTracking", back_populates="order", order_by="OrderTracking.id")
    prescriptions = relationship("Prescription", back_populates="order")

    total_amount = Column(Numeric(10, 2), nullable=False)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="KES")
    delivery_address = Column(String, nullable=False)
    county = Column(String)
    phone_number = Column(String)
    payment_method = Column(enum_type(PaymentMethod, "payment_method"), nullable=False)
    status = Column(enum_type(OrderStatus, "order_status"), default=OrderStatus.PENDING, nullable=False, index=True)
    requires_prescription = Column(Boolean, default=False, nullable=False)
    prescription_approved = Column(Boolean, default=False, nullable=False)
