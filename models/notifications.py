import enum
from core.database import Base
from sqlalchemy import (Column, Integer, String, ForeignKey, Boolean, Text)
from sqlalchemy.orm import relationship
from .mixins import CreatedAtMixin, enum_type


class NotificationType(str, enum.Enum):
    ORDER_STATUS = "order_status"
    PRESCRIPTION_UPDATE = "prescription_update"
    PAYMENT_REQUIRED = "payment_required"
    GENERAL = "general"


class Notification(Base, CreatedAtMixin):
    __tablename__ = "notifications"

    #pk
    id = Column(Integer, primary_key=True, index=True)

    #fk
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=True)
    prescription_id = Column(String(36), ForeignKey("prescriptions.id"), nullable=True)

    #relationships
    user = relationship("User", back_populates="notifications")

    type = Column(enum_type(NotificationType, "notification_type"), default=NotificationType.GENERAL, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
