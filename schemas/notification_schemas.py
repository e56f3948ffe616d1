from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from models.notifications import NotificationType


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: Optional[str] = None
    prescription_id: Optional[str] = None
    type: NotificationType
    title: str
    message: str
    read: bool
    created_at: Optional[datetime] = None
