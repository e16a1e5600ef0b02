from datetime import date as date_type, datetime
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.utils.intervals import ensure_utc


class ConflictType(str, Enum):
    # Rule conflicts
    INVALID_SERVICE_TYPE = "INVALID_SERVICE_TYPE"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    DAY_NOT_ALLOWED = "DAY_NOT_ALLOWED"
    ADVANCE_TIME_VIOLATION = "ADVANCE_TIME_VIOLATION"
    SLOT_NOT_AVAILABLE = "SLOT_NOT_AVAILABLE"
    OVERLAPPING_APPOINTMENT = "OVERLAPPING_APPOINTMENT"
    EXCLUSIVE_SERVICE_CONFLICT = "EXCLUSIVE_SERVICE_CONFLICT"
    TOO_MANY_PENDING = "TOO_MANY_PENDING"
    CUSTOMER_SAME_DAY_CONFLICT = "CUSTOMER_SAME_DAY_CONFLICT"
    TOO_MANY_RECENT_CANCELLATIONS = "TOO_MANY_RECENT_CANCELLATIONS"

    # Infrastructure failures (retryable)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    LIMIT_CHECK_ERROR = "LIMIT_CHECK_ERROR"
    AVAILABILITY_CHECK_ERROR = "AVAILABILITY_CHECK_ERROR"
    OVERLAP_CHECK_ERROR = "OVERLAP_CHECK_ERROR"
    EXCLUSIVE_CHECK_ERROR = "EXCLUSIVE_CHECK_ERROR"
    CUSTOMER_CHECK_ERROR = "CUSTOMER_CHECK_ERROR"


INFRASTRUCTURE_CONFLICTS = {
    ConflictType.VALIDATION_ERROR,
    ConflictType.LIMIT_CHECK_ERROR,
    ConflictType.AVAILABILITY_CHECK_ERROR,
    ConflictType.OVERLAP_CHECK_ERROR,
    ConflictType.EXCLUSIVE_CHECK_ERROR,
    ConflictType.CUSTOMER_CHECK_ERROR,
}


class WarningType(str, Enum):
    SHORT_NOTICE_BOOKING = "SHORT_NOTICE_BOOKING"
    BUSY_DAY_BOOKING = "BUSY_DAY_BOOKING"
    REQUIRES_APPROVAL = "REQUIRES_APPROVAL"


class ServiceTypeRules(BaseModel):
    """Immutable per-call snapshot of a service type's booking rules."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    name: str
    display_name: str
    duration: int
    buffer_minutes: int = 0
    allowed_days: List[int] = Field(default_factory=list)
    exclusive_days: List[int] = Field(default_factory=list)
    max_bookings_per_day: int
    min_advance_hours: int = 0
    max_advance_days: int
    requires_approval: bool = False
    is_active: bool = True

    def allows_day(self, weekday: int) -> bool:
        return weekday in self.allowed_days

    def is_exclusive_on(self, weekday: int) -> bool:
        return weekday in self.exclusive_days


class AppointmentSummary(BaseModel):
    id: str
    service_type: str
    scheduled_date: datetime
    duration: Optional[int] = None
    buffer_minutes: Optional[int] = None


class SchedulingConflict(BaseModel):
    type: ConflictType
    message: str
    retryable: bool = False
    current_count: Optional[int] = None
    max_allowed: Optional[int] = None
    service_type: Optional[str] = None
    requested_day: Optional[str] = None
    allowed_days: Optional[List[str]] = None
    conflicting_appointment: Optional[AppointmentSummary] = None
    conflicting_appointments: Optional[List[AppointmentSummary]] = None
    existing_appointments: Optional[List[AppointmentSummary]] = None

    @classmethod
    def infrastructure(cls, conflict_type: ConflictType, message: str):
        return cls(type=conflict_type, message=message, retryable=True)


class BookingWarning(BaseModel):
    type: WarningType
    message: str
    severity: str  # medium, low, info


class DateSuggestion(BaseModel):
    kind: Literal["date"] = "date"
    date: datetime
    day_name: str


class TimeSlotSuggestion(BaseModel):
    kind: Literal["time_slot"] = "time_slot"
    date: date_type
    time: str  # HH:MM
    end_time: str  # HH:MM
    duration: int
    start_datetime: datetime


Suggestion = Union[DateSuggestion, TimeSlotSuggestion]


class ValidationRequest(BaseModel):
    service_type_id: str
    scheduled_date: datetime
    duration: int = Field(..., gt=0, le=1440)
    customer_id: str
    exclude_appointment_id: Optional[str] = None

    @field_validator("scheduled_date")
    @classmethod
    def normalize_scheduled_date(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class ValidationResult(BaseModel):
    is_valid: bool = True
    conflicts: List[SchedulingConflict] = Field(default_factory=list)
    suggestions: List[Suggestion] = Field(default_factory=list)
    warnings: List[BookingWarning] = Field(default_factory=list)

    def add_check(self, check: "CheckResult") -> None:
        if not check.is_valid:
            self.is_valid = False
        self.conflicts.extend(check.conflicts)
        self.suggestions.extend(check.suggestions)

    @property
    def has_infrastructure_errors(self) -> bool:
        return any(c.type in INFRASTRUCTURE_CONFLICTS for c in self.conflicts)

    @property
    def conflict_types(self) -> List[ConflictType]:
        return [c.type for c in self.conflicts]


class CheckResult(BaseModel):
    """Outcome of one validator sub-check."""

    is_valid: bool = True
    conflicts: List[SchedulingConflict] = Field(default_factory=list)
    suggestions: List[Suggestion] = Field(default_factory=list)

    @classmethod
    def passed(cls) -> "CheckResult":
        return cls()

    @classmethod
    def failed(
        cls,
        conflicts: List[SchedulingConflict],
        suggestions: Optional[List[Suggestion]] = None,
    ) -> "CheckResult":
        return cls(is_valid=False, conflicts=conflicts, suggestions=suggestions or [])

    @property
    def conflict(self) -> Optional[SchedulingConflict]:
        return self.conflicts[0] if self.conflicts else None


class AdvanceBookingCheck(BaseModel):
    is_valid: bool
    message: str
