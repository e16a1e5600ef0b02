from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.exceptions import ServiceTypeInUseError, ServiceTypeNotFoundError
from app.core.redis import RedisClient
from app.models.appointment import ACTIVE_STATUSES, Appointment, AppointmentStatus
from app.models.service_type import ServiceType
from app.schemas.scheduling import AdvanceBookingCheck, ServiceTypeRules
from app.schemas.service_type import (
    ServiceTypeCreate,
    ServiceTypeStats,
    ServiceTypeUpdate,
)
from app.utils.intervals import (
    calendar_day_bounds,
    day_of_week,
    ensure_utc,
    utc_now,
)

logger = structlog.get_logger(__name__)


def check_advance_booking_time(
    rules: ServiceTypeRules, scheduled_date: datetime, now: datetime
) -> AdvanceBookingCheck:
    """Check ``scheduled_date`` against the service's lead-time window."""
    hours_in_advance = (ensure_utc(scheduled_date) - now).total_seconds() / 3600
    days_in_advance = hours_in_advance / 24

    if hours_in_advance < rules.min_advance_hours:
        return AdvanceBookingCheck(
            is_valid=False,
            message=(
                f"Appointments must be booked at least {rules.min_advance_hours} "
                "hours in advance"
            ),
        )

    if days_in_advance > rules.max_advance_days:
        return AdvanceBookingCheck(
            is_valid=False,
            message=(
                f"Appointments cannot be booked more than {rules.max_advance_days} "
                "days in advance"
            ),
        )

    return AdvanceBookingCheck(is_valid=True, message="Booking time is valid")


class ServiceTypeService:
    """Service type rules: lookup, day/lead-time policy, and management."""

    def __init__(self, db: AsyncSession, cache: Optional[RedisClient] = None):
        self.db = db
        self.cache = cache

    async def get_service_type_by_id(
        self, service_type_id: str
    ) -> Optional[ServiceTypeRules]:
        """Rule snapshot for a service type, read through the cache if configured."""
        if self.cache:
            cached = await self.cache.get_cached_service_type(service_type_id)
            if cached:
                return ServiceTypeRules.model_validate(cached)

        service_type = await self.get_service_type(service_type_id)
        if not service_type:
            return None

        rules = ServiceTypeRules.model_validate(service_type)
        if self.cache:
            await self.cache.cache_service_type(
                service_type_id, rules.model_dump(mode="json")
            )
        return rules

    async def is_booking_allowed_on_day(
        self, service_type_id: str, weekday: int
    ) -> bool:
        rules = await self.get_service_type_by_id(service_type_id)
        if not rules or not rules.is_active:
            return False
        return rules.allows_day(weekday)

    async def is_exclusive_on_day(self, service_type_id: str, weekday: int) -> bool:
        rules = await self.get_service_type_by_id(service_type_id)
        if not rules or not rules.is_active:
            return False
        return rules.is_exclusive_on(weekday)

    async def validate_advance_booking_time(
        self,
        service_type_id: str,
        scheduled_date: datetime,
        now: Optional[datetime] = None,
    ) -> AdvanceBookingCheck:
        rules = await self.get_service_type_by_id(service_type_id)
        if not rules:
            return AdvanceBookingCheck(is_valid=False, message="Service type not found")
        return check_advance_booking_time(rules, scheduled_date, now or utc_now())

    async def get_exclusive_service_conflicts(
        self,
        service_type_id: str,
        scheduled_date: datetime,
        exclude_appointment_id: Optional[str] = None,
    ) -> list[Appointment]:
        """Active appointments that block an exclusive booking on this day."""
        rules = await self.get_service_type_by_id(service_type_id)
        if not rules or not rules.is_exclusive_on(day_of_week(scheduled_date)):
            return []

        day_start, day_end = calendar_day_bounds(scheduled_date)
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

    async def get_max_buffer_minutes(self) -> int:
        """Largest buffer of any service type; bounds the overlap pre-filter."""
        result = await self.db.execute(select(func.max(ServiceType.buffer_minutes)))
        return result.scalar() or 0

    # Management

    async def create_service_type(self, data: ServiceTypeCreate) -> ServiceType:
        existing = await self.db.execute(
            select(ServiceType).where(ServiceType.name == data.name)
        )
        if existing.scalar_one_or_none():
            raise ValueError("Service type with this name already exists")

        service_type = ServiceType(**data.model_dump())
        self.db.add(service_type)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ValueError("Service type with this name already exists")
        await self.db.refresh(service_type)

        logger.info(
            "Service type created",
            service_type_id=service_type.id,
            name=service_type.name,
        )
        return service_type

    async def get_service_types(self, include_inactive: bool = False) -> list[ServiceType]:
        query = select(ServiceType).order_by(ServiceType.display_name)
        if not include_inactive:
            query = query.where(ServiceType.is_active.is_(True))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_service_type(
        self, service_type_id: str, data: ServiceTypeUpdate
    ) -> ServiceType:
        service_type = await self.get_service_type(service_type_id)
        if not service_type:
            raise ServiceTypeNotFoundError(service_type_id)

        update_data = data.model_dump(exclude_unset=True)

        if "name" in update_data and update_data["name"] != service_type.name:
            clash = await self.db.execute(
                select(ServiceType).where(ServiceType.name == update_data["name"])
            )
            if clash.scalar_one_or_none():
                raise ValueError("Service type with this name already exists")

        allowed_days = update_data.get("allowed_days", service_type.allowed_days)
        exclusive_days = update_data.get("exclusive_days", service_type.exclusive_days)
        if not set(exclusive_days or []).issubset(allowed_days or []):
            raise ValueError("Exclusive days must be a subset of allowed days")

        for field, value in update_data.items():
            setattr(service_type, field, value)

        await self.db.commit()
        await self.db.refresh(service_type)
        await self._invalidate(service_type_id)

        logger.info(
            "Service type updated",
            service_type_id=service_type_id,
            fields=sorted(update_data),
        )
        return service_type

    async def delete_service_type(self, service_type_id: str) -> ServiceType:
        """Soft delete; refused while the type still has active appointments."""
        service_type = await self.get_service_type(service_type_id)
        if not service_type:
            raise ServiceTypeNotFoundError(service_type_id)

        active = await self.db.execute(
            select(func.count(Appointment.id)).where(
                Appointment.service_type_id == service_type_id,
                Appointment.status.in_(ACTIVE_STATUSES),
            )
        )
        if active.scalar() > 0:
            raise ServiceTypeInUseError(
                "Cannot delete service type with active appointments. "
                "Please cancel or complete all appointments first."
            )

        service_type.is_active = False
        await self.db.commit()
        await self.db.refresh(service_type)
        await self._invalidate(service_type_id)

        logger.info("Service type deactivated", service_type_id=service_type_id)
        return service_type

    async def get_service_type_stats(
        self,
        service_type_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> ServiceTypeStats:
        query = (
            select(Appointment.status, func.count(Appointment.id))
            .where(Appointment.service_type_id == service_type_id)
            .group_by(Appointment.status)
        )
        if start_date:
            query = query.where(Appointment.scheduled_date >= ensure_utc(start_date))
        if end_date:
            query = query.where(Appointment.scheduled_date <= ensure_utc(end_date))

        result = await self.db.execute(query)
        counts = {status: count for status, count in result.all()}
        total = sum(counts.values())
        completed = counts.get(AppointmentStatus.COMPLETED.value, 0)
        cancelled = counts.get(AppointmentStatus.CANCELLED.value, 0)

        return ServiceTypeStats(
            service_type_id=service_type_id,
            total_appointments=total,
            pending_appointments=counts.get(AppointmentStatus.PENDING.value, 0),
            confirmed_appointments=counts.get(AppointmentStatus.CONFIRMED.value, 0),
            completed_appointments=completed,
            cancelled_appointments=cancelled,
            completion_rate=(completed / total) * 100 if total > 0 else 0,
            cancellation_rate=(cancelled / total) * 100 if total > 0 else 0,
        )

    async def get_service_type(self, service_type_id: str) -> Optional[ServiceType]:
        result = await self.db.execute(
            select(ServiceType).where(ServiceType.id == service_type_id)
        )
        return result.scalar_one_or_none()

    async def _invalidate(self, service_type_id: str) -> None:
        if self.cache:
            await self.cache.invalidate_service_type(service_type_id)
