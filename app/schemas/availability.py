from datetime import date, datetime, time, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AvailabilityRuleBase(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday")
    start_time: time
    end_time: time
    is_available: bool = True
    service_type_id: Optional[str] = None
    buffer_minutes: int = Field(30, ge=0, le=240)
    max_bookings_per_day: int = Field(8, ge=1, le=50)

    @model_validator(mode="after")
    def validate_time_range(self):
        if self.start_time >= self.end_time:
            raise ValueError("Start time must be before end time")
        return self


class AvailabilityRuleCreate(AvailabilityRuleBase):
    pass


class AvailabilityRuleUpdate(BaseModel):
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    is_available: Optional[bool] = None
    service_type_id: Optional[str] = None
    buffer_minutes: Optional[int] = Field(None, ge=0, le=240)
    max_bookings_per_day: Optional[int] = Field(None, ge=1, le=50)


class AvailabilityRuleBulkItem(AvailabilityRuleUpdate):
    """One entry of a bulk change: updates rule ``id``, or creates a rule."""

    id: Optional[str] = None

    @model_validator(mode="after")
    def validate_new_rule_fields(self):
        if self.id is None:
            missing = [
                name
                for name in ("day_of_week", "start_time", "end_time")
                if getattr(self, name) is None
            ]
            if missing:
                raise ValueError(f"New rules require: {', '.join(missing)}")
        return self


class AvailabilityRuleRead(AvailabilityRuleBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    created_at: datetime
    updated_at: datetime


class OperatingWindow(BaseModel):
    """Resolved operating window for one weekday."""

    start_time: time
    end_time: time
    buffer_minutes: int = 0
    max_bookings_per_day: Optional[int] = None

    def bounds_on(self, day: date) -> tuple[datetime, datetime]:
        """Concrete UTC range of this window on a calendar date."""
        return (
            datetime.combine(day, self.start_time, tzinfo=timezone.utc),
            datetime.combine(day, self.end_time, tzinfo=timezone.utc),
        )
