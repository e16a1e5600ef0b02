from datetime import date as date_type, datetime, timedelta
from typing import Callable, Optional, Union

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.exceptions import (
    AppointmentNotFoundError,
    BookingConflictError,
    InvalidStatusTransitionError,
    ServiceTypeNotFoundError,
)
from app.models.appointment import ACTIVE_STATUSES, Appointment, AppointmentStatus
from app.models.service_type import ServiceType
from app.schemas.appointment import AppointmentCreate
from app.utils.intervals import (
    appointment_range,
    calendar_day_bounds,
    collides,
    day_of_week,
    ensure_utc,
    utc_now,
)

logger = structlog.get_logger(__name__)

# Longest appointment accepted; bounds how far back a range query looks for
# appointments that started earlier but still run into the range.
MAX_APPOINTMENT_MINUTES = 1440

Day = Union[datetime, date_type]


class AppointmentService:
    """Appointment repository queries plus the atomic booking commit."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        result = await self.db.execute(
            select(Appointment)
            .options(selectinload(Appointment.service_type))
            .where(Appointment.id == appointment_id)
        )
        return result.scalar_one_or_none()

    async def count_active(
        self,
        service_type_id: str,
        day: Day,
        exclude_appointment_id: Optional[str] = None,
    ) -> int:
        """Active appointments of one service type on a calendar day."""
        day_start, day_end = calendar_day_bounds(day)
        query = select(func.count(Appointment.id)).where(
            Appointment.service_type_id == service_type_id,
            Appointment.scheduled_date >= day_start,
            Appointment.scheduled_date < day_end,
            Appointment.status.in_(ACTIVE_STATUSES),
        )
        if exclude_appointment_id:
            query = query.where(Appointment.id != exclude_appointment_id)

        result = await self.db.execute(query)
        return result.scalar() or 0

    async def find_active_in_range(
        self,
        start: datetime,
        end: datetime,
        exclude_appointment_id: Optional[str] = None,
    ) -> list[Appointment]:
        """Active appointments whose raw range intersects [start, end).

        Service types are loaded with each result so callers can read buffers.
        """
        start, end = ensure_utc(start), ensure_utc(end)
        lookback = start - timedelta(minutes=MAX_APPOINTMENT_MINUTES)
        query = (
            select(Appointment)
            .options(selectinload(Appointment.service_type))
            .where(
                Appointment.scheduled_date >= lookback,
                Appointment.scheduled_date < end,
                Appointment.status.in_(ACTIVE_STATUSES),
            )
            .order_by(Appointment.scheduled_date, Appointment.id)
        )
        if exclude_appointment_id:
            query = query.where(Appointment.id != exclude_appointment_id)

        result = await self.db.execute(query)
        return [apt for apt in result.scalars().all() if apt.end_date > start]

    async def find_active_on_day(
        self, day: Day, exclude_appointment_id: Optional[str] = None
    ) -> list[Appointment]:
        """Active appointments of any type starting on a calendar day."""
        day_start, day_end = calendar_day_bounds(day)
        query = (
            select(Appointment)
            .options(selectinload(Appointment.service_type))
            .where(
                Appointment.scheduled_date >= day_start,
                Appointment.scheduled_date < day_end,
                Appointment.status.in_(ACTIVE_STATUSES),
            )
            .order_by(Appointment.scheduled_date, Appointment.id)
        )
        if exclude_appointment_id:
            query = query.where(Appointment.id != exclude_appointment_id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def find_active_for_customer_on_day(
        self,
        customer_id: str,
        day: Day,
        exclude_appointment_id: Optional[str] = None,
    ) -> list[Appointment]:
        day_start, day_end = calendar_day_bounds(day)
        query = (
            select(Appointment)
            .options(selectinload(Appointment.service_type))
            .where(
                Appointment.customer_id == customer_id,
                Appointment.scheduled_date >= day_start,
                Appointment.scheduled_date < day_end,
                Appointment.status.in_(ACTIVE_STATUSES),
            )
            .order_by(Appointment.scheduled_date, Appointment.id)
        )
        if exclude_appointment_id:
            query = query.where(Appointment.id != exclude_appointment_id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_active_pending_for_customer(
        self, customer_id: str, exclude_appointment_id: Optional[str] = None
    ) -> int:
        query = select(func.count(Appointment.id)).where(
            Appointment.customer_id == customer_id,
            Appointment.status == AppointmentStatus.PENDING.value,
        )
        if exclude_appointment_id:
            query = query.where(Appointment.id != exclude_appointment_id)

        result = await self.db.execute(query)
        return result.scalar() or 0

    async def count_recent_cancellations(
        self, customer_id: str, service_type_id: str, since: datetime
    ) -> int:
        """Cancellations of one service type last updated at or after ``since``."""
        result = await self.db.execute(
            select(func.count(Appointment.id)).where(
                Appointment.customer_id == customer_id,
                Appointment.service_type_id == service_type_id,
                Appointment.status == AppointmentStatus.CANCELLED.value,
                Appointment.updated_at >= ensure_utc(since),
            )
        )
        return result.scalar() or 0

    async def create_appointment(self, data: AppointmentCreate) -> Appointment:
        """Insert an appointment after re-checking the calendar invariants.

        The service type rows are locked first so concurrent bookings on the
        shared calendar commit one at a time. Nothing is written when a
        check fails.
        """
        try:
            service_types = await self._lock_service_types()
            service_type = service_types.get(data.service_type_id)
            if not service_type or not service_type.is_active:
                raise ServiceTypeNotFoundError(data.service_type_id)

            violations = await self._find_invariant_violations(
                service_type,
                service_types,
                data.scheduled_date,
                data.duration,
            )
            if violations:
                raise BookingConflictError("; ".join(violations))

            appointment = Appointment(
                service_type_id=data.service_type_id,
                customer_id=data.customer_id,
                scheduled_date=data.scheduled_date,
                duration=data.duration,
                status=AppointmentStatus.PENDING.value,
                notes=data.notes,
                created_at=self.clock(),
                updated_at=self.clock(),
            )
            self.db.add(appointment)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(appointment)
        logger.info(
            "Appointment created",
            appointment_id=appointment.id,
            service_type_id=appointment.service_type_id,
            customer_id=appointment.customer_id,
            scheduled_date=appointment.scheduled_date.isoformat(),
        )
        return appointment

    async def reschedule_appointment(
        self,
        appointment_id: str,
        new_scheduled_date: datetime,
        duration: Optional[int] = None,
    ) -> Appointment:
        """Move an active appointment under the same invariant re-check."""
        try:
            service_types = await self._lock_service_types()
            appointment = await self.get_appointment(appointment_id)
            if not appointment:
                raise AppointmentNotFoundError(appointment_id)
            if not appointment.is_active:
                raise InvalidStatusTransitionError(appointment.status, "RESCHEDULED")

            service_type = service_types[appointment.service_type_id]
            new_duration = duration or appointment.duration
            violations = await self._find_invariant_violations(
                service_type,
                service_types,
                new_scheduled_date,
                new_duration,
                exclude_appointment_id=appointment_id,
            )
            if violations:
                raise BookingConflictError("; ".join(violations))

            appointment.scheduled_date = ensure_utc(new_scheduled_date)
            appointment.duration = new_duration
            appointment.updated_at = self.clock()
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(appointment)
        logger.info(
            "Appointment rescheduled",
            appointment_id=appointment_id,
            scheduled_date=appointment.scheduled_date.isoformat(),
        )
        return appointment

    async def transition_status(
        self, appointment_id: str, new_status: AppointmentStatus
    ) -> Appointment:
        appointment = await self.get_appointment(appointment_id)
        if not appointment:
            raise AppointmentNotFoundError(appointment_id)

        current = appointment.status
        if not appointment.transition_to(new_status, now=self.clock()):
            raise InvalidStatusTransitionError(current, new_status.value)

        await self.db.commit()
        await self.db.refresh(appointment)

        logger.info(
            "Appointment status changed",
            appointment_id=appointment_id,
            from_status=current,
            to_status=new_status.value,
        )
        return appointment

    async def _lock_service_types(self) -> dict[str, ServiceType]:
        # Fixed lock order keeps concurrent bookings from deadlocking.
        result = await self.db.execute(
            select(ServiceType).order_by(ServiceType.id).with_for_update()
        )
        return {st.id: st for st in result.scalars().all()}

    async def _find_invariant_violations(
        self,
        service_type: ServiceType,
        service_types: dict[str, ServiceType],
        scheduled_date: datetime,
        duration: int,
        exclude_appointment_id: Optional[str] = None,
    ) -> list[str]:
        start, end = appointment_range(scheduled_date, duration)
        violations = []

        max_buffer = max((st.buffer_minutes for st in service_types.values()), default=0)
        window = timedelta(minutes=max_buffer)
        candidates = await self.find_active_in_range(
            start - window, end + window, exclude_appointment_id
        )
        for other in candidates:
            other_buffer = service_types[other.service_type_id].buffer_minutes
            if collides(
                start,
                end,
                service_type.buffer_minutes,
                other.scheduled_date,
                other.end_date,
                other_buffer,
            ):
                violations.append(f"Overlaps appointment {other.id}")

        booked = await self.count_active(
            service_type.id, start, exclude_appointment_id
        )
        if booked >= service_type.max_bookings_per_day:
            violations.append(
                f"Daily limit of {service_type.max_bookings_per_day} reached "
                f"for {service_type.display_name}"
            )

        weekday = day_of_week(start)
        same_day = await self.find_active_on_day(start, exclude_appointment_id)
        if same_day and service_type.is_exclusive_on(weekday):
            violations.append(
                f"{service_type.display_name} is exclusive on this day"
            )
        for other in same_day:
            other_type = service_types[other.service_type_id]
            if other_type.is_exclusive_on(weekday):
                violations.append(
                    f"{other_type.display_name} is booked exclusively on this day"
                )
                break

        return violations
