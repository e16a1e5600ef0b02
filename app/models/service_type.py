import enum
import uuid

from sqlalchemy import JSON, Boolean, Column, Integer, String, Text
from sqlalchemy.orm import relationship

from app.core.database import Base, UTCDateTime
from app.utils.intervals import utc_now


class DayOfWeek(enum.IntEnum):
    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6


ALL_DAYS = [day.value for day in DayOfWeek]


class ServiceType(Base):
    """Bookable service type with duration, buffer, and day/quota rules."""

    __tablename__ = "service_types"

    # Core identity
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String(7), nullable=True)  # Hex color code

    # Duration and buffer management
    duration = Column(Integer, nullable=False, default=60)
    buffer_minutes = Column(Integer, nullable=False, default=30)

    # Day rules (0 = Sunday)
    allowed_days = Column(JSON, nullable=False, default=lambda: list(ALL_DAYS))
    exclusive_days = Column(JSON, nullable=False, default=list)

    # Booking policy
    max_bookings_per_day = Column(Integer, nullable=False, default=8)
    min_advance_hours = Column(Integer, nullable=False, default=24)
    max_advance_days = Column(Integer, nullable=False, default=30)
    requires_approval = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # Audit timestamps
    created_at = Column(UTCDateTime, default=utc_now)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now)

    # Relationships
    appointments = relationship("Appointment", back_populates="service_type")
    availability_rules = relationship(
        "AvailabilityRule", back_populates="service_type"
    )

    def allows_day(self, weekday: int) -> bool:
        return weekday in (self.allowed_days or [])

    def is_exclusive_on(self, weekday: int) -> bool:
        return weekday in (self.exclusive_days or [])

    def __repr__(self):
        return (
            f"<ServiceType(id={self.id}, name='{self.name}', "
            f"duration={self.duration}min, buffer={self.buffer_minutes}min)>"
        )
