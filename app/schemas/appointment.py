from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.appointment import AppointmentStatus
from app.schemas.scheduling import BookingWarning, ValidationRequest
from app.utils.intervals import ensure_utc


class AppointmentCreate(ValidationRequest):
    """Booking request: the validated fields plus free-form notes."""

    notes: Optional[str] = Field(None, max_length=2000)


class AppointmentReschedule(BaseModel):
    new_scheduled_date: datetime
    duration: Optional[int] = Field(None, gt=0, le=1440)

    @field_validator("new_scheduled_date")
    @classmethod
    def normalize_new_scheduled_date(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class AppointmentStatusTransition(BaseModel):
    new_status: AppointmentStatus


class AppointmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    service_type_id: str
    customer_id: str
    scheduled_date: datetime
    duration: int
    status: AppointmentStatus
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class BookingResponse(BaseModel):
    appointment: AppointmentRead
    warnings: List[BookingWarning] = Field(default_factory=list)
