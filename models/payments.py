import enum
import uuid
from core.database import Base
from sqlalchemy import (Column, String, ForeignKey, Numeric, DateTime, JSON, Text,
                        Index, UniqueConstraint, text)
from sqlalchemy.orm import relationship
from .mixins import CreatedAtMixin, UpdatedAtMixin, enum_type
from .orders import PaymentMethod


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SUCCESS = "success"  # legacy rows only, read as COMPLETED
    FAILED = "failed"


TERMINAL_PAYMENT_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.SUCCESS, PaymentStatus.FAILED)
SUCCESSFUL_PAYMENT_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.SUCCESS)


class Payment(Base, CreatedAtMixin, UpdatedAtMixin):
    """
    One attempt to collect funds for an order through one gateway.

    A retry after failure is a new row; a row leaves ``pending`` exactly once.
    """
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("gateway", "external_reference", name="uq_payments_gateway_reference"),
        # No concurrent double-charge attempts on the same order through the same gateway
        Index(
            "uq_payments_one_pending_per_order_gateway",
            "order_id", "gateway",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    #pk
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    #fk
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)

    #relationships
    order = relationship("Order", back_populates="payments")

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="KES")
    method = Column(enum_type(PaymentMethod, "payment_method"), nullable=False)
    gateway = Column(String(20), nullable=False)
    status = Column(enum_type(PaymentStatus, "payment_status"), default=PaymentStatus.PENDING, nullable=False, index=True)
    external_reference = Column(String(255), nullable=False, index=True)
    receipt_number = Column(String(255))
    failure_reason = Column(Text)
    # "metadata" is reserved on declarative classes
    provider_metadata = Column("metadata", JSON, default=dict)
    completed_at = Column(DateTime(timezone=True))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    @property
    def is_successful(self) -> bool:
        return self.status in SUCCESSFUL_PAYMENT_STATUSES
