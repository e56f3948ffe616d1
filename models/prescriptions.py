import enum
import uuid
from core.database import Base
from sqlalchemy import (Column, String, ForeignKey, DateTime, Text)
from sqlalchemy.orm import relationship
from .mixins import CreatedAtMixin, enum_type


class PrescriptionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Prescription(Base, CreatedAtMixin):
    __tablename__ = "prescriptions"

    #pk
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    #fk
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=True, index=True)

    #relationships
    user = relationship("User", back_populates="prescriptions")
    order = relationship("Order", back_populates="prescriptions")

    image_url = Column(String, nullable=False)
    status = Column(enum_type(PrescriptionStatus, "prescription_status"), default=PrescriptionStatus.PENDING, nullable=False)
    admin_notes = Column(Text)
    reviewed_by = Column(String(64))
    reviewed_at = Column(DateTime(timezone=True))
