from datetime import date as date_type, datetime, time, timedelta
from typing import AsyncIterator, Callable, Optional, Union

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AvailabilityRuleConflictError,
    AvailabilityRuleNotFoundError,
    ServiceTypeNotFoundError,
)
from app.core.redis import RedisClient
from app.models.availability_rule import AvailabilityRule
from app.schemas.availability import (
    AvailabilityRuleBulkItem,
    AvailabilityRuleCreate,
    AvailabilityRuleUpdate,
    OperatingWindow,
)
from app.schemas.scheduling import ServiceTypeRules, TimeSlotSuggestion
from app.services.appointment import AppointmentService
from app.services.service_type import ServiceTypeService, check_advance_booking_time
from app.utils.intervals import (
    appointment_range,
    calendar_day_bounds,
    collides,
    day_of_week,
    ensure_utc,
    utc_now,
)

logger = structlog.get_logger(__name__)

Day = Union[datetime, date_type]


def _as_date(day: Day) -> date_type:
    if isinstance(day, datetime):
        return ensure_utc(day).date()
    return day


def _format_time(value: datetime) -> str:
    return value.strftime("%H:%M")


class AvailableSlots:
    """Bookable start times for one day, produced lazily in start order.

    Each ``async for`` starts over: the service rules and the day's active
    appointments are read again, so iterating twice reflects bookings made
    in between.
    """

    def __init__(
        self,
        service: "AvailabilityService",
        day: Day,
        service_type_id: Optional[str],
        duration: int,
        exclude_appointment_id: Optional[str] = None,
    ):
        self.service = service
        self.day = _as_date(day)
        self.service_type_id = service_type_id
        self.duration = duration
        self.exclude_appointment_id = exclude_appointment_id

    def __aiter__(self) -> AsyncIterator[TimeSlotSuggestion]:
        return self._generate()

    async def _generate(self) -> AsyncIterator[TimeSlotSuggestion]:
        rules: Optional[ServiceTypeRules] = None
        if self.service_type_id:
            rules = await self.service.service_types.get_service_type_by_id(
                self.service_type_id
            )
            if not rules or not rules.is_active:
                return

        weekday = day_of_week(self.day)
        if rules and not rules.allows_day(weekday):
            return

        windows = await self.service.get_operating_windows(
            weekday, self.service_type_id
        )
        if not windows:
            return

        day_start, day_end = calendar_day_bounds(self.day)
        max_buffer = await self.service.service_types.get_max_buffer_minutes()
        reach = timedelta(minutes=max_buffer)
        appointments = await self.service.appointments.find_active_in_range(
            day_start - reach, day_end + reach, self.exclude_appointment_id
        )

        day_total = sum(
            1 for apt in appointments if day_start <= apt.scheduled_date < day_end
        )
        limits = [w.max_bookings_per_day for w in windows if w.max_bookings_per_day]
        if limits and day_total >= max(limits):
            return

        own_buffer = rules.buffer_minutes if rules else 0
        now = self.service.clock()

        for start in self._candidate_starts(windows):
            start, end = appointment_range(start, self.duration)
            if rules and not check_advance_booking_time(rules, start, now).is_valid:
                continue
            if any(
                collides(
                    start,
                    end,
                    own_buffer,
                    apt.scheduled_date,
                    apt.end_date,
                    apt.service_type.buffer_minutes,
                )
                for apt in appointments
            ):
                continue

            yield TimeSlotSuggestion(
                date=self.day,
                time=_format_time(start),
                end_time=_format_time(end),
                duration=self.duration,
                start_datetime=start,
            )

    def _candidate_starts(self, windows: list[OperatingWindow]) -> list[datetime]:
        length = timedelta(minutes=self.duration)
        starts = set()
        for window in windows:
            step = timedelta(
                minutes=settings.SLOT_STEP_MINUTES
                or self.duration + window.buffer_minutes
            )
            cursor, window_end = window.bounds_on(self.day)
            while cursor + length <= window_end:
                starts.add(cursor)
                cursor += step
        return sorted(starts)


class AvailabilityService:
    """Operating windows, slot calculation and availability rule management."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utc_now,
        cache: Optional[RedisClient] = None,
    ):
        self.db = db
        self.clock = clock
        self.service_types = ServiceTypeService(db, cache)
        self.appointments = AppointmentService(db, clock)

    async def get_availability_for_day(
        self, weekday: int, service_type_id: Optional[str] = None
    ) -> list[AvailabilityRule]:
        """Open rules for a weekday; service-specific rules replace general ones."""
        if weekday < 0 or weekday > 6:
            raise ValueError("Day of week must be between 0 (Sunday) and 6 (Saturday)")

        query = (
            select(AvailabilityRule)
            .where(
                AvailabilityRule.day_of_week == weekday,
                AvailabilityRule.is_available.is_(True),
                or_(
                    AvailabilityRule.service_type_id.is_(None),
                    AvailabilityRule.service_type_id == service_type_id,
                ),
            )
            .order_by(AvailabilityRule.start_time)
        )
        result = await self.db.execute(query)
        rules = list(result.scalars().all())

        if service_type_id:
            specific = [r for r in rules if r.service_type_id == service_type_id]
            if specific:
                return specific
        return [r for r in rules if r.service_type_id is None]

    async def get_operating_windows(
        self, weekday: int, service_type_id: Optional[str] = None
    ) -> list[OperatingWindow]:
        """Windows for a weekday.

        Without any configured rules in scope the default opening hours apply
        on every day.
        """
        rules = await self.get_availability_for_day(weekday, service_type_id)
        if rules:
            return [
                OperatingWindow(
                    start_time=rule.start_time,
                    end_time=rule.end_time,
                    buffer_minutes=rule.buffer_minutes,
                    max_bookings_per_day=rule.max_bookings_per_day,
                )
                for rule in rules
            ]

        if await self._has_rules(service_type_id):
            return []

        return [
            OperatingWindow(
                start_time=time.fromisoformat(settings.DEFAULT_OPENING_TIME),
                end_time=time.fromisoformat(settings.DEFAULT_CLOSING_TIME),
            )
        ]

    async def get_buffer_time_for_service(
        self, weekday: int, service_type_id: Optional[str] = None
    ) -> int:
        """Largest rule buffer on a weekday, or the default when no rule applies."""
        rules = await self.get_availability_for_day(weekday, service_type_id)
        if not rules:
            return settings.DEFAULT_RULE_BUFFER_MINUTES
        return max(rule.buffer_minutes for rule in rules)

    def available_slots(
        self,
        day: Day,
        service_type_id: Optional[str] = None,
        duration: int = 60,
        exclude_appointment_id: Optional[str] = None,
    ) -> AvailableSlots:
        return AvailableSlots(
            self, day, service_type_id, duration, exclude_appointment_id
        )

    async def calculate_available_slots(
        self,
        day: Day,
        service_type_id: Optional[str] = None,
        duration: int = 60,
        exclude_appointment_id: Optional[str] = None,
    ) -> list[TimeSlotSuggestion]:
        return [
            slot
            async for slot in self.available_slots(
                day, service_type_id, duration, exclude_appointment_id
            )
        ]

    async def calculate_available_slots_for_range(
        self,
        start_date: Day,
        end_date: Day,
        service_type_id: Optional[str] = None,
        duration: int = 60,
    ) -> dict[date_type, list[TimeSlotSuggestion]]:
        """Slots per calendar day from ``start_date`` to ``end_date`` inclusive."""
        result = {}
        current = _as_date(start_date)
        last = _as_date(end_date)
        while current <= last:
            result[current] = await self.calculate_available_slots(
                current, service_type_id, duration
            )
            current += timedelta(days=1)
        return result

    async def get_next_available_slot(
        self,
        from_instant: datetime,
        duration: int = 60,
        service_type_id: Optional[str] = None,
        max_days_to_search: int = 30,
    ) -> Optional[TimeSlotSuggestion]:
        """First slot starting strictly after ``from_instant``."""
        from_instant = ensure_utc(from_instant)
        current = from_instant.date()
        for _ in range(max_days_to_search + 1):
            async for slot in self.available_slots(current, service_type_id, duration):
                if slot.start_datetime > from_instant:
                    return slot
            current += timedelta(days=1)
        return None

    async def is_slot_available(
        self,
        start: datetime,
        duration: int,
        service_type_id: Optional[str] = None,
        exclude_appointment_id: Optional[str] = None,
    ) -> bool:
        """Raw availability: inside a window, no plain overlap, day not full."""
        start, end = appointment_range(start, duration)
        day = start.date()
        windows = await self.get_operating_windows(day_of_week(day), service_type_id)

        if not any(
            window_start <= start and end <= window_end
            for window_start, window_end in (w.bounds_on(day) for w in windows)
        ):
            return False

        overlapping = await self.appointments.find_active_in_range(
            start, end, exclude_appointment_id
        )
        if overlapping:
            return False

        limits = [w.max_bookings_per_day for w in windows if w.max_bookings_per_day]
        if limits:
            same_day = await self.appointments.find_active_on_day(
                day, exclude_appointment_id
            )
            if len(same_day) >= max(limits):
                return False

        return True

    # Rule management

    async def create_availability_rule(
        self, data: AvailabilityRuleCreate
    ) -> AvailabilityRule:
        rule = await self._add_rule(data)
        await self.db.commit()
        await self.db.refresh(rule)

        logger.info(
            "Availability rule created",
            rule_id=rule.id,
            day_of_week=rule.day_of_week,
            service_type_id=rule.service_type_id,
        )
        return rule

    async def bulk_update_availability_rules(
        self, items: list[AvailabilityRuleBulkItem]
    ) -> list[AvailabilityRule]:
        """
        Create or update several rules in one transaction.

        Items carrying an ``id`` update that rule; the others create a new
        one. Items are applied in order, so a later item is checked against
        the windows written by earlier ones. Any failure rolls back the batch.

        Args:
            items: Rule changes to apply

        Returns:
            The created or updated rules, in input order
        """
        try:
            rules = []
            for item in items:
                changes = item.model_dump(exclude_unset=True, exclude={"id"})
                if item.id:
                    rule = await self._apply_rule_update(
                        item.id, AvailabilityRuleUpdate(**changes)
                    )
                else:
                    rule = await self._add_rule(AvailabilityRuleCreate(**changes))
                rules.append(rule)

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        for rule in rules:
            await self.db.refresh(rule)

        logger.info(
            "Availability rules bulk updated",
            created=sum(1 for item in items if not item.id),
            updated=sum(1 for item in items if item.id),
        )
        return rules

    async def get_availability_rules(
        self,
        day_of_week: Optional[int] = None,
        service_type_id: Optional[str] = None,
        is_available: Optional[bool] = None,
    ) -> list[AvailabilityRule]:
        query = select(AvailabilityRule).order_by(
            AvailabilityRule.day_of_week, AvailabilityRule.start_time
        )
        if day_of_week is not None:
            query = query.where(AvailabilityRule.day_of_week == day_of_week)
        if service_type_id is not None:
            query = query.where(AvailabilityRule.service_type_id == service_type_id)
        if is_available is not None:
            query = query.where(AvailabilityRule.is_available.is_(is_available))

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_availability_rule(self, rule_id: str) -> AvailabilityRule:
        result = await self.db.execute(
            select(AvailabilityRule).where(AvailabilityRule.id == rule_id)
        )
        rule = result.scalar_one_or_none()
        if not rule:
            raise AvailabilityRuleNotFoundError(rule_id)
        return rule

    async def update_availability_rule(
        self, rule_id: str, data: AvailabilityRuleUpdate
    ) -> AvailabilityRule:
        rule = await self._apply_rule_update(rule_id, data)
        await self.db.commit()
        await self.db.refresh(rule)

        logger.info("Availability rule updated", rule_id=rule_id)
        return rule

    async def delete_availability_rule(self, rule_id: str) -> None:
        rule = await self.get_availability_rule(rule_id)
        await self.db.delete(rule)
        await self.db.commit()
        logger.info("Availability rule deleted", rule_id=rule_id)

    async def _add_rule(self, data: AvailabilityRuleCreate) -> AvailabilityRule:
        if data.service_type_id:
            await self._ensure_service_type(data.service_type_id)

        await self._check_rule_conflicts(
            data.day_of_week, data.service_type_id, data.start_time, data.end_time
        )

        rule = AvailabilityRule(**data.model_dump())
        self.db.add(rule)
        await self.db.flush()
        return rule

    async def _apply_rule_update(
        self, rule_id: str, data: AvailabilityRuleUpdate
    ) -> AvailabilityRule:
        rule = await self.get_availability_rule(rule_id)
        update_data = data.model_dump(exclude_unset=True)

        day = update_data.get("day_of_week", rule.day_of_week)
        service_type_id = update_data.get("service_type_id", rule.service_type_id)
        start_time = update_data.get("start_time", rule.start_time)
        end_time = update_data.get("end_time", rule.end_time)

        if start_time >= end_time:
            raise ValueError("Start time must be before end time")
        if service_type_id:
            await self._ensure_service_type(service_type_id)

        await self._check_rule_conflicts(
            day, service_type_id, start_time, end_time, exclude_id=rule_id
        )

        for field, value in update_data.items():
            setattr(rule, field, value)
        await self.db.flush()
        return rule

    async def _check_rule_conflicts(
        self,
        weekday: int,
        service_type_id: Optional[str],
        start_time: time,
        end_time: time,
        exclude_id: Optional[str] = None,
    ) -> None:
        query = select(AvailabilityRule).where(AvailabilityRule.day_of_week == weekday)
        if service_type_id:
            query = query.where(AvailabilityRule.service_type_id == service_type_id)
        else:
            query = query.where(AvailabilityRule.service_type_id.is_(None))
        if exclude_id:
            query = query.where(AvailabilityRule.id != exclude_id)

        result = await self.db.execute(query)
        for rule in result.scalars().all():
            if start_time < rule.end_time and rule.start_time < end_time:
                raise AvailabilityRuleConflictError(
                    "Time slot conflicts with existing rule: "
                    f"{rule.start_time.strftime('%H:%M')}-{rule.end_time.strftime('%H:%M')}"
                )

    async def _has_rules(self, service_type_id: Optional[str]) -> bool:
        query = select(func.count(AvailabilityRule.id))
        if service_type_id:
            query = query.where(
                or_(
                    AvailabilityRule.service_type_id.is_(None),
                    AvailabilityRule.service_type_id == service_type_id,
                )
            )
        else:
            query = query.where(AvailabilityRule.service_type_id.is_(None))
        result = await self.db.execute(query)
        return (result.scalar() or 0) > 0

    async def _ensure_service_type(self, service_type_id: str) -> None:
        if not await self.service_types.get_service_type_by_id(service_type_id):
            raise ServiceTypeNotFoundError(service_type_id)
