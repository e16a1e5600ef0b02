import enum
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from app.core.database import Base, UTCDateTime
from app.utils.intervals import utc_now


class AppointmentStatus(enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


ACTIVE_STATUSES = [AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value]

ALLOWED_TRANSITIONS = {
    AppointmentStatus.PENDING: [
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
    ],
    AppointmentStatus.CONFIRMED: [
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    ],
    AppointmentStatus.COMPLETED: [],  # Final state
    AppointmentStatus.CANCELLED: [],  # Final state
}


class Appointment(Base):
    """Appointment on the shared calendar with status lifecycle."""

    __tablename__ = "appointments"

    # Core identity
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    service_type_id = Column(
        String(36), ForeignKey("service_types.id"), nullable=False, index=True
    )
    customer_id = Column(String(36), nullable=False, index=True)

    # Scheduling details
    scheduled_date = Column(UTCDateTime, nullable=False, index=True)
    duration = Column(Integer, nullable=False)

    # Status management
    status = Column(
        String(20), nullable=False, default=AppointmentStatus.PENDING.value, index=True
    )
    notes = Column(Text, nullable=True)

    # Audit timestamps
    created_at = Column(UTCDateTime, default=utc_now)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint("duration > 0", name="check_positive_duration"),
        Index("ix_appointments_status_scheduled", "status", "scheduled_date"),
    )

    # Relationships
    service_type = relationship("ServiceType", back_populates="appointments")

    def can_transition_to(self, new_status: AppointmentStatus) -> bool:
        """Check if appointment can transition to the new status."""
        current = AppointmentStatus(self.status)
        return new_status in ALLOWED_TRANSITIONS.get(current, [])

    def transition_to(
        self, new_status: AppointmentStatus, now: Optional[datetime] = None
    ) -> bool:
        """Transition appointment to new status with validation."""
        if not self.can_transition_to(new_status):
            return False

        self.status = new_status.value
        self.updated_at = now or utc_now()
        return True

    @property
    def end_date(self) -> datetime:
        return self.scheduled_date + timedelta(minutes=self.duration)

    @property
    def is_active(self) -> bool:
        """Check if appointment participates in conflict checks."""
        return self.status in ACTIVE_STATUSES

    def __repr__(self):
        return (
            f"<Appointment(id={self.id}, status='{self.status}', "
            f"scheduled_date='{self.scheduled_date}', "
            f"customer_id={self.customer_id})>"
        )
