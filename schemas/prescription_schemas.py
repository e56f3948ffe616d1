from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from models.prescriptions import PrescriptionStatus


class PrescriptionUploadRequest(BaseModel):
    image_url: str
    order_id: Optional[str] = None

    @field_validator('image_url')
    @classmethod
    def validate_image_url(cls, value):
        value = (value or "").strip()
        if not value.startswith(("https://", "http://")):
            raise ValueError('image_url must be an http(s) URL')
        return value


class PrescriptionReviewRequest(BaseModel):
    status: PrescriptionStatus
    admin_notes: Optional[str] = None


class PrescriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    order_id: Optional[str] = None
    image_url: str
    status: PrescriptionStatus
    admin_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
