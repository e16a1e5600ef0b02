from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ALL_DAYS = [0, 1, 2, 3, 4, 5, 6]


def _validate_day_list(days: List[int], label: str) -> List[int]:
    for day in days:
        if day < 0 or day > 6:
            raise ValueError(
                f"{label} must contain numbers between 0 and 6 (Sunday to Saturday)"
            )
    if len(set(days)) != len(days):
        raise ValueError(f"{label} cannot contain duplicates")
    return days


class ServiceTypeBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    display_name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    duration: int = Field(..., ge=15, le=480)
    buffer_minutes: int = Field(30, ge=0, le=240)
    color: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")
    max_bookings_per_day: int = Field(8, ge=1, le=50)
    requires_approval: bool = False
    exclusive_days: List[int] = Field(default_factory=list)
    allowed_days: List[int] = Field(default_factory=lambda: list(ALL_DAYS))
    min_advance_hours: int = Field(24, ge=0, le=8760)
    max_advance_days: int = Field(30, ge=1, le=365)

    @field_validator("allowed_days")
    @classmethod
    def validate_allowed_days(cls, v: List[int]) -> List[int]:
        if not v:
            raise ValueError("Allowed days must be a non-empty array")
        return _validate_day_list(v, "Allowed days")

    @field_validator("exclusive_days")
    @classmethod
    def validate_exclusive_days(cls, v: List[int]) -> List[int]:
        return _validate_day_list(v, "Exclusive days")

    @model_validator(mode="after")
    def validate_exclusive_subset(self):
        if not set(self.exclusive_days).issubset(self.allowed_days):
            raise ValueError("Exclusive days must be a subset of allowed days")
        return self


class ServiceTypeCreate(ServiceTypeBase):
    pass


class ServiceTypeUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    duration: Optional[int] = Field(None, ge=15, le=480)
    buffer_minutes: Optional[int] = Field(None, ge=0, le=240)
    color: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")
    max_bookings_per_day: Optional[int] = Field(None, ge=1, le=50)
    requires_approval: Optional[bool] = None
    exclusive_days: Optional[List[int]] = None
    allowed_days: Optional[List[int]] = None
    min_advance_hours: Optional[int] = Field(None, ge=0, le=8760)
    max_advance_days: Optional[int] = Field(None, ge=1, le=365)
    is_active: Optional[bool] = None

    @field_validator("allowed_days")
    @classmethod
    def validate_allowed_days(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        if v is None:
            return v
        if not v:
            raise ValueError("Allowed days must be a non-empty array")
        return _validate_day_list(v, "Allowed days")

    @field_validator("exclusive_days")
    @classmethod
    def validate_exclusive_days(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        if v is None:
            return v
        return _validate_day_list(v, "Exclusive days")


class ServiceTypeRead(ServiceTypeBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ServiceTypeStats(BaseModel):
    service_type_id: str
    total_appointments: int
    pending_appointments: int
    confirmed_appointments: int
    completed_appointments: int
    cancelled_appointments: int
    completion_rate: float
    cancellation_rate: float
