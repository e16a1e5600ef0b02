import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
)
from sqlalchemy.orm import relationship

from app.core.database import Base, UTCDateTime
from app.utils.intervals import utc_now


class AvailabilityRule(Base):
    """Operating window for a weekday, general or scoped to one service type."""

    __tablename__ = "availability_rules"

    # Core identity
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    service_type_id = Column(
        String(36), ForeignKey("service_types.id"), nullable=True
    )  # NULL: applies to every service type

    # Schedule details (0 = Sunday, times are UTC)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)

    # Capacity
    buffer_minutes = Column(Integer, nullable=False, default=30)
    max_bookings_per_day = Column(Integer, nullable=False, default=8)

    # Audit timestamps
    created_at = Column(UTCDateTime, default=utc_now)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint(
            "day_of_week >= 0 AND day_of_week <= 6", name="check_day_of_week"
        ),
        CheckConstraint("end_time > start_time", name="check_end_after_start"),
        Index("ix_availability_rules_day", "day_of_week", "service_type_id"),
    )

    service_type = relationship("ServiceType", back_populates="availability_rules")

    def __repr__(self):
        return (
            f"<AvailabilityRule(day={self.day_of_week}, "
            f"{self.start_time}-{self.end_time}, service_type={self.service_type_id})>"
        )
