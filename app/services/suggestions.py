from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.redis import RedisClient
from app.models.appointment import Appointment
from app.schemas.scheduling import (
    DateSuggestion,
    ServiceTypeRules,
    TimeSlotSuggestion,
)
from app.services.availability import AvailabilityService, Day
from app.services.service_type import check_advance_booking_time
from app.utils.intervals import (
    appointment_range,
    collides,
    day_name,
    day_of_week,
    ensure_utc,
    utc_now,
)

logger = structlog.get_logger(__name__)


class AlternativeSuggestionService:
    """Searches for replacement dates and times when a booking is rejected.

    Every search is bounded and returns results in chronological order. A
    repository failure during a search is logged and yields no suggestions.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utc_now,
        cache: Optional[RedisClient] = None,
    ):
        self.db = db
        self.clock = clock
        self.availability = AvailabilityService(db, clock, cache)
        self.service_types = self.availability.service_types
        self.appointments = self.availability.appointments

    async def find_alternative_dates(
        self,
        service_type_id: str,
        original_date: datetime,
        days_to_search: Optional[int] = None,
        duration: Optional[int] = None,
        exclude_appointment_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> list[DateSuggestion]:
        """Later days on which the same time of day could be booked.

        Args:
            service_type_id: Service type being booked
            original_date: Rejected start instant; the scan begins the next day
            days_to_search: Horizon in days, defaults to ALTERNATIVE_DATES_SEARCH_DAYS
            duration: Appointment length, defaults to the service duration
            exclude_appointment_id: Appointment being moved, if any
            customer_id: Requesting customer; days they are already booked on
                are skipped

        Returns:
            Up to ALTERNATIVE_DATES_LIMIT suggestions
        """
        try:
            rules = await self.service_types.get_service_type_by_id(service_type_id)
            if not rules:
                return []

            days_to_search = days_to_search or settings.ALTERNATIVE_DATES_SEARCH_DAYS
            duration = duration or rules.duration
            original_date = ensure_utc(original_date)
            now = self.clock()

            alternatives = []
            for offset in range(1, days_to_search + 1):
                candidate = original_date + timedelta(days=offset)
                if await self._is_bookable(
                    rules, candidate, duration, now, exclude_appointment_id, customer_id
                ):
                    alternatives.append(self._date_suggestion(candidate))
                    if len(alternatives) >= settings.ALTERNATIVE_DATES_LIMIT:
                        break
            return alternatives
        except Exception as e:
            logger.error(
                "Error finding alternative dates",
                service_type_id=service_type_id,
                exc_info=e,
            )
            return []

    async def find_alternative_time_slots(
        self,
        service_type_id: str,
        day: Day,
        duration: int,
        exclude_appointment_id: Optional[str] = None,
    ) -> list[TimeSlotSuggestion]:
        """Earliest open slots on the same day."""
        try:
            return await self._same_day_slots(
                service_type_id,
                day,
                duration,
                settings.ALTERNATIVE_TIME_SLOTS_LIMIT,
                exclude_appointment_id,
            )
        except Exception as e:
            logger.error(
                "Error finding alternative time slots",
                service_type_id=service_type_id,
                exc_info=e,
            )
            return []

    async def find_non_conflicting_time_slots(
        self,
        service_type_id: str,
        day: Day,
        duration: int,
        conflicting_appointments: list[Appointment],
        exclude_appointment_id: Optional[str] = None,
    ) -> list[TimeSlotSuggestion]:
        """Same-day slots clear of the appointments that caused an overlap."""
        try:
            rules = await self.service_types.get_service_type_by_id(service_type_id)
            if not rules:
                return []

            def clear(slot: TimeSlotSuggestion) -> bool:
                start, end = appointment_range(slot.start_datetime, slot.duration)
                return not any(
                    collides(
                        start,
                        end,
                        rules.buffer_minutes,
                        apt.scheduled_date,
                        apt.end_date,
                        apt.service_type.buffer_minutes,
                    )
                    for apt in conflicting_appointments
                )

            return await self._same_day_slots(
                service_type_id,
                day,
                duration,
                settings.NON_CONFLICTING_SLOTS_LIMIT,
                exclude_appointment_id,
                keep=clear,
            )
        except Exception as e:
            logger.error(
                "Error finding non-conflicting time slots",
                service_type_id=service_type_id,
                exc_info=e,
            )
            return []

    async def find_exclusive_dates(
        self,
        service_type_id: str,
        original_date: datetime,
        days_to_search: Optional[int] = None,
        duration: Optional[int] = None,
        exclude_appointment_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> list[DateSuggestion]:
        """Later exclusive days for the service that have no appointments yet."""
        try:
            rules = await self.service_types.get_service_type_by_id(service_type_id)
            if not rules:
                return []

            days_to_search = days_to_search or settings.EXCLUSIVE_DATES_SEARCH_DAYS
            duration = duration or rules.duration
            original_date = ensure_utc(original_date)
            now = self.clock()

            alternatives = []
            for offset in range(1, days_to_search + 1):
                candidate = original_date + timedelta(days=offset)
                if not rules.is_exclusive_on(day_of_week(candidate)):
                    continue
                booked = await self.appointments.find_active_on_day(
                    candidate, exclude_appointment_id
                )
                if booked:
                    continue
                if await self._is_bookable(
                    rules, candidate, duration, now, exclude_appointment_id, customer_id
                ):
                    alternatives.append(self._date_suggestion(candidate))
                    if len(alternatives) >= settings.EXCLUSIVE_DATES_LIMIT:
                        break
            return alternatives
        except Exception as e:
            logger.error(
                "Error finding exclusive dates",
                service_type_id=service_type_id,
                exc_info=e,
            )
            return []

    async def _same_day_slots(
        self,
        service_type_id: str,
        day: Day,
        duration: int,
        limit: int,
        exclude_appointment_id: Optional[str] = None,
        keep: Optional[Callable[[TimeSlotSuggestion], bool]] = None,
    ) -> list[TimeSlotSuggestion]:
        rules = await self.service_types.get_service_type_by_id(service_type_id)
        if not rules or not await self._day_is_open(
            rules, day, exclude_appointment_id
        ):
            return []

        slots = []
        async for slot in self.availability.available_slots(
            day, service_type_id, duration, exclude_appointment_id
        ):
            if keep and not keep(slot):
                continue
            slots.append(slot)
            if len(slots) >= limit:
                break
        return slots

    async def _day_is_open(
        self,
        rules: ServiceTypeRules,
        day: Day,
        exclude_appointment_id: Optional[str] = None,
    ) -> bool:
        """Quota and exclusivity allow one more booking of this type on ``day``."""
        booked = await self.appointments.count_active(
            rules.id, day, exclude_appointment_id
        )
        if booked >= rules.max_bookings_per_day:
            return False

        weekday = day_of_week(day)
        same_day = await self.appointments.find_active_on_day(
            day, exclude_appointment_id
        )
        if same_day and rules.is_exclusive_on(weekday):
            return False
        return not any(apt.service_type.is_exclusive_on(weekday) for apt in same_day)

    async def _is_bookable(
        self,
        rules: ServiceTypeRules,
        start: datetime,
        duration: int,
        now: datetime,
        exclude_appointment_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> bool:
        if not rules.allows_day(day_of_week(start)):
            return False
        if not check_advance_booking_time(rules, start, now).is_valid:
            return False
        if not await self._day_is_open(rules, start, exclude_appointment_id):
            return False
        if not await self.availability.is_slot_available(
            start, duration, rules.id, exclude_appointment_id
        ):
            return False
        if customer_id and await self.appointments.find_active_for_customer_on_day(
            customer_id, start, exclude_appointment_id
        ):
            return False

        start, end = appointment_range(start, duration)
        reach = timedelta(minutes=await self.service_types.get_max_buffer_minutes())
        nearby = await self.appointments.find_active_in_range(
            start - reach, end + reach, exclude_appointment_id
        )
        return not any(
            collides(
                start,
                end,
                rules.buffer_minutes,
                apt.scheduled_date,
                apt.end_date,
                apt.service_type.buffer_minutes,
            )
            for apt in nearby
        )

    @staticmethod
    def _date_suggestion(candidate: datetime) -> DateSuggestion:
        return DateSuggestion(date=candidate, day_name=day_name(day_of_week(candidate)))
