from core.database import Base
from sqlalchemy import (Column, Integer, String, ForeignKey, Text)
from sqlalchemy.orm import relationship
from .mixins import CreatedAtMixin, enum_type
from .orders import OrderStatus

class OrderTracking(Base, CreatedAtMixin):
    """Append-only fulfilment log. Rows are never updated or deleted."""
    __tablename__ = "order_tracking"

    #pk
    id = Column(Integer, primary_key=True, index=True)

    #fk
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)

    #relationships
    order = relationship("Order", back_populates="tracking")

    status = Column(enum_type(OrderStatus, "order_status"), nullable=False)
    location = Column(String)
    note = Column(Text)
    updated_by = Column(String(64))  # user id, or "system" for gateway driven changes
