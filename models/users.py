from core.database import Base
from sqlalchemy import (Column, String, Boolean)
from sqlalchemy.orm import relationship
from .mixins import CreatedAtMixin

class User(Base, CreatedAtMixin):
    """
    Local mirror of the auth platform's profile row.

    The id is the platform's user id (the JWT ``sub``); only what the
    notification sender needs is kept here.
    """
    __tablename__ = "users"

    #pk
    id = Column(String(64), primary_key=True, index=True)

    #relationships
    orders = relationship("Order", back_populates="user")
    prescriptions = relationship("Prescription", back_populates="user")
    notifications = relationship("Notification", back_populates="user")

    email = Column(String, unique=True, nullable=True)
    full_name = Column(String)
    phone_number = Column(String)
    role = Column(String, default="customer", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
