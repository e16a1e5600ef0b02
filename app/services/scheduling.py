from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.redis import RedisClient
from app.models.appointment import Appointment
from app.schemas.scheduling import (
    AppointmentSummary,
    BookingWarning,
    CheckResult,
    ConflictType,
    SchedulingConflict,
    ValidationRequest,
    ValidationResult,
    WarningType,
)
from app.services.service_type import check_advance_booking_time
from app.services.suggestions import AlternativeSuggestionService
from app.utils.intervals import (
    appointment_range,
    collides,
    day_name,
    day_of_week,
    ensure_utc,
    utc_now,
)

logger = structlog.get_logger(__name__)


def _summarize(appointment: Appointment, detailed: bool = False) -> AppointmentSummary:
    summary = AppointmentSummary(
        id=appointment.id,
        service_type=appointment.service_type.display_name,
        scheduled_date=appointment.scheduled_date,
    )
    if detailed:
        summary.duration = appointment.duration
        summary.buffer_minutes = appointment.service_type.buffer_minutes
    return summary


def _invalid_service_type() -> CheckResult:
    return CheckResult.failed(
        [
            SchedulingConflict(
                type=ConflictType.INVALID_SERVICE_TYPE,
                message="Invalid or inactive service type",
            )
        ]
    )


class AdvancedSchedulingService:
    """Validates booking requests against every calendar and customer rule."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utc_now,
        cache: Optional[RedisClient] = None,
    ):
        self.db = db
        self.clock = clock
        self.suggestions = AlternativeSuggestionService(db, clock, cache)
        self.availability = self.suggestions.availability
        self.service_types = self.suggestions.service_types
        self.appointments = self.suggestions.appointments

    async def validate_advanced_booking(
        self, request: ValidationRequest
    ) -> ValidationResult:
        """
        Run every booking rule against a request.

        An unknown or inactive service type stops validation immediately. All
        other checks run even after one fails, so the result lists every
        violation at once.

        Args:
            request: Service type, start, duration, customer and optionally
                the appointment being moved

        Returns:
            ValidationResult with conflicts, suggestions and warnings
        """
        scheduled_date = ensure_utc(request.scheduled_date)
        exclude_id = request.exclude_appointment_id

        try:
            rules = await self.service_types.get_service_type_by_id(
                request.service_type_id
            )
            if not rules or not rules.is_active:
                result = ValidationResult(is_valid=False)
                result.add_check(_invalid_service_type())
                return result

            result = ValidationResult()
            result.add_check(
                await self.check_daily_booking_limits(
                    request.service_type_id,
                    scheduled_date,
                    exclude_id,
                    duration=request.duration,
                    customer_id=request.customer_id,
                )
            )
            result.add_check(
                await self.check_service_specific_availability(
                    request.service_type_id,
                    scheduled_date,
                    request.duration,
                    exclude_id,
                    customer_id=request.customer_id,
                )
            )
            result.add_check(
                await self.check_overlapping_service_requirements(
                    request.service_type_id,
                    scheduled_date,
                    request.duration,
                    exclude_id,
                )
            )
            result.add_check(
                await self.check_exclusive_service_conflicts(
                    request.service_type_id,
                    scheduled_date,
                    exclude_id,
                    duration=request.duration,
                    customer_id=request.customer_id,
                )
            )
            result.add_check(
                await self.check_customer_booking_restrictions(
                    request.customer_id,
                    request.service_type_id,
                    scheduled_date,
                    exclude_id,
                )
            )
            result.warnings.extend(
                await self.check_booking_warnings(
                    request.service_type_id, scheduled_date, request.duration
                )
            )
        except Exception as e:
            logger.error(
                "Error validating booking request",
                service_type_id=request.service_type_id,
                exc_info=e,
            )
            return ValidationResult(
                is_valid=False,
                conflicts=[
                    SchedulingConflict.infrastructure(
                        ConflictType.VALIDATION_ERROR,
                        "Error validating booking request",
                    )
                ],
            )

        logger.info(
            "Booking request validated",
            service_type_id=request.service_type_id,
            scheduled_date=scheduled_date.isoformat(),
            is_valid=result.is_valid,
            conflicts=[c.value for c in result.conflict_types],
        )
        return result

    async def check_daily_booking_limits(
        self,
        service_type_id: str,
        scheduled_date: datetime,
        exclude_appointment_id: Optional[str] = None,
        duration: Optional[int] = None,
        customer_id: Optional[str] = None,
    ) -> CheckResult:
        """Reject when the service type's daily quota is already used up."""
        try:
            rules = await self.service_types.get_service_type_by_id(service_type_id)
            if not rules or not rules.is_active:
                return _invalid_service_type()

            booked = await self.appointments.count_active(
                service_type_id, scheduled_date, exclude_appointment_id
            )
            if booked < rules.max_bookings_per_day:
                return CheckResult.passed()

            suggestions = await self.suggestions.find_alternative_dates(
                service_type_id,
                scheduled_date,
                duration=duration,
                exclude_appointment_id=exclude_appointment_id,
                customer_id=customer_id,
            )
            return CheckResult.failed(
                [
                    SchedulingConflict(
                        type=ConflictType.DAILY_LIMIT_EXCEEDED,
                        message=(
                            f"Maximum {rules.max_bookings_per_day} bookings per day "
                            f"reached for {rules.display_name}"
                        ),
                        current_count=booked,
                        max_allowed=rules.max_bookings_per_day,
                    )
                ],
                suggestions,
            )
        except Exception as e:
            logger.error(
                "Error checking daily booking limits",
                service_type_id=service_type_id,
                exc_info=e,
            )
            return CheckResult.failed(
                [
                    SchedulingConflict.infrastructure(
                        ConflictType.LIMIT_CHECK_ERROR,
                        "Error checking daily booking limits",
                    )
                ]
            )

    async def check_service_specific_availability(
        self,
        service_type_id: str,
        scheduled_date: datetime,
        duration: int,
        exclude_appointment_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> CheckResult:
        """Day rules, then lead time, then the raw slot."""
        try:
            rules = await self.service_types.get_service_type_by_id(service_type_id)
            if not rules or not rules.is_active:
                return _invalid_service_type()

            weekday = day_of_week(scheduled_date)
            if not rules.allows_day(weekday):
                suggestions = await self.suggestions.find_alternative_dates(
                    service_type_id,
                    scheduled_date,
                    duration=duration,
                    exclude_appointment_id=exclude_appointment_id,
                    customer_id=customer_id,
                )
                return CheckResult.failed(
                    [
                        SchedulingConflict(
                            type=ConflictType.DAY_NOT_ALLOWED,
                            message=(
                                f"{rules.display_name} is not available on "
                                f"{day_name(weekday)}"
                            ),
                            service_type=rules.display_name,
                            requested_day=day_name(weekday),
                            allowed_days=[day_name(d) for d in rules.allowed_days],
                        )
                    ],
                    suggestions,
                )

            advance = check_advance_booking_time(rules, scheduled_date, self.clock())
            if not advance.is_valid:
                return CheckResult.failed(
                    [
                        SchedulingConflict(
                            type=ConflictType.ADVANCE_TIME_VIOLATION,
                            message=advance.message,
                        )
                    ]
                )

            if not await self.availability.is_slot_available(
                scheduled_date, duration, service_type_id, exclude_appointment_id
            ):
                suggestions = await self.suggestions.find_alternative_time_slots(
                    service_type_id, scheduled_date, duration, exclude_appointment_id
                )
                return CheckResult.failed(
                    [
                        SchedulingConflict(
                            type=ConflictType.SLOT_NOT_AVAILABLE,
                            message=(
                                "The requested time slot is not available for "
                                "this service type"
                            ),
                        )
                    ],
                    suggestions,
                )

            return CheckResult.passed()
        except Exception as e:
            logger.error(
                "Error checking service availability",
                service_type_id=service_type_id,
                exc_info=e,
            )
            return CheckResult.failed(
                [
                    SchedulingConflict.infrastructure(
                        ConflictType.AVAILABILITY_CHECK_ERROR,
                        "Error checking service availability",
                    )
                ]
            )

    async def check_overlapping_service_requirements(
        self,
        service_type_id: str,
        scheduled_date: datetime,
        duration: int,
        exclude_appointment_id: Optional[str] = None,
    ) -> CheckResult:
        """Buffered overlap against every active appointment, any service type."""
        try:
            rules = await self.service_types.get_service_type_by_id(service_type_id)
            if not rules or not rules.is_active:
                return _invalid_service_type()

            start, end = appointment_range(scheduled_date, duration)

            # Coarse pass: widen by the largest buffer any service type uses.
            reach = timedelta(minutes=await self.service_types.get_max_buffer_minutes())
            candidates = await self.appointments.find_active_in_range(
                start - reach, end + reach, exclude_appointment_id
            )

            colliding = [
                apt
                for apt in candidates
                if collides(
                    start,
                    end,
                    rules.buffer_minutes,
                    apt.scheduled_date,
                    apt.end_date,
                    apt.service_type.buffer_minutes,
                )
            ]
            if not colliding:
                return CheckResult.passed()

            conflicts = [
                SchedulingConflict(
                    type=ConflictType.OVERLAPPING_APPOINTMENT,
                    message=(
                        "Conflicts with existing "
                        f"{apt.service_type.display_name} appointment"
                    ),
                    conflicting_appointment=_summarize(apt, detailed=True),
                )
                for apt in colliding
            ]
            suggestions = await self.suggestions.find_non_conflicting_time_slots(
                service_type_id,
                scheduled_date,
                duration,
                colliding,
                exclude_appointment_id,
            )
            return CheckResult.failed(conflicts, suggestions)
        except Exception as e:
            logger.error(
                "Error checking for overlapping appointments",
                service_type_id=service_type_id,
                exc_info=e,
            )
            return CheckResult.failed(
                [
                    SchedulingConflict.infrastructure(
                        ConflictType.OVERLAP_CHECK_ERROR,
                        "Error checking for overlapping appointments",
                    )
                ]
            )

    async def check_exclusive_service_conflicts(
        self,
        service_type_id: str,
        scheduled_date: datetime,
        exclude_appointment_id: Optional[str] = None,
        duration: Optional[int] = None,
        customer_id: Optional[str] = None,
    ) -> CheckResult:
        """An exclusive booking must be the only appointment of its day."""
        try:
            rules = await self.service_types.get_service_type_by_id(service_type_id)
            if not rules or not rules.is_active:
                return _invalid_service_type()

            weekday = day_of_week(scheduled_date)
            if rules.is_exclusive_on(weekday):
                existing = await self.service_types.get_exclusive_service_conflicts(
                    service_type_id, scheduled_date, exclude_appointment_id
                )
                if not existing:
                    return CheckResult.passed()

                suggestions = await self.suggestions.find_exclusive_dates(
                    service_type_id,
                    scheduled_date,
                    duration=duration,
                    exclude_appointment_id=exclude_appointment_id,
                    customer_id=customer_id,
                )
                return CheckResult.failed(
                    [
                        SchedulingConflict(
                            type=ConflictType.EXCLUSIVE_SERVICE_CONFLICT,
                            message=(
                                f"{rules.display_name} requires exclusive booking on "
                                f"this day, but there are {len(existing)} existing "
                                "appointment(s)"
                            ),
                            conflicting_appointments=[_summarize(a) for a in existing],
                        )
                    ],
                    suggestions,
                )

            # The day may already hold another service's exclusive booking.
            same_day = await self.appointments.find_active_on_day(
                scheduled_date, exclude_appointment_id
            )
            blocking = [
                apt for apt in same_day if apt.service_type.is_exclusive_on(weekday)
            ]
            if not blocking:
                return CheckResult.passed()

            suggestions = await self.suggestions.find_alternative_dates(
                service_type_id,
                scheduled_date,
                duration=duration,
                exclude_appointment_id=exclude_appointment_id,
                customer_id=customer_id,
            )
            return CheckResult.failed(
                [
                    SchedulingConflict(
                        type=ConflictType.EXCLUSIVE_SERVICE_CONFLICT,
                        message=(
                            f"{blocking[0].service_type.display_name} is booked "
                            "exclusively on this day"
                        ),
                        conflicting_appointments=[_summarize(a) for a in blocking],
                    )
                ],
                suggestions,
            )
        except Exception as e:
            logger.error(
                "Error checking exclusive service conflicts",
                service_type_id=service_type_id,
                exc_info=e,
            )
            return CheckResult.failed(
                [
                    SchedulingConflict.infrastructure(
                        ConflictType.EXCLUSIVE_CHECK_ERROR,
                        "Error checking exclusive service conflicts",
                    )
                ]
            )

    async def check_customer_booking_restrictions(
        self,
        customer_id: str,
        service_type_id: str,
        scheduled_date: datetime,
        exclude_appointment_id: Optional[str] = None,
    ) -> CheckResult:
        """Pending backlog, same-day bookings and recent cancellations."""
        try:
            conflicts = []

            pending = await self.appointments.count_active_pending_for_customer(
                customer_id, exclude_appointment_id
            )
            if pending >= settings.MAX_PENDING_APPOINTMENTS:
                conflicts.append(
                    SchedulingConflict(
                        type=ConflictType.TOO_MANY_PENDING,
                        message=(
                            f"Customer has {pending} pending appointments. "
                            f"Maximum allowed: {settings.MAX_PENDING_APPOINTMENTS}"
                        ),
                        current_count=pending,
                        max_allowed=settings.MAX_PENDING_APPOINTMENTS,
                    )
                )

            same_day = await self.appointments.find_active_for_customer_on_day(
                customer_id, scheduled_date, exclude_appointment_id
            )
            if same_day:
                conflicts.append(
                    SchedulingConflict(
                        type=ConflictType.CUSTOMER_SAME_DAY_CONFLICT,
                        message=(
                            f"Customer already has {len(same_day)} appointment(s) "
                            "on this day"
                        ),
                        existing_appointments=[_summarize(a) for a in same_day],
                    )
                )

            window_days = settings.RECENT_CANCELLATION_WINDOW_DAYS
            cancelled = await self.appointments.count_recent_cancellations(
                customer_id,
                service_type_id,
                self.clock() - timedelta(days=window_days),
            )
            if cancelled >= settings.MAX_RECENT_CANCELLATIONS:
                conflicts.append(
                    SchedulingConflict(
                        type=ConflictType.TOO_MANY_RECENT_CANCELLATIONS,
                        message=(
                            f"Customer has cancelled {cancelled} appointments for "
                            f"this service type in the last {window_days} days"
                        ),
                        current_count=cancelled,
                        max_allowed=settings.MAX_RECENT_CANCELLATIONS,
                    )
                )

            if conflicts:
                return CheckResult.failed(conflicts)
            return CheckResult.passed()
        except Exception as e:
            logger.error(
                "Error checking customer booking restrictions",
                customer_id=customer_id,
                exc_info=e,
            )
            return CheckResult.failed(
                [
                    SchedulingConflict.infrastructure(
                        ConflictType.CUSTOMER_CHECK_ERROR,
                        "Error checking customer booking restrictions",
                    )
                ]
            )

    async def check_booking_warnings(
        self, service_type_id: str, scheduled_date: datetime, duration: int
    ) -> list[BookingWarning]:
        """Non-blocking advice; an error here just means no warnings."""
        try:
            rules = await self.service_types.get_service_type_by_id(service_type_id)
            if not rules:
                return []

            warnings = []
            hours_in_advance = (
                ensure_utc(scheduled_date) - self.clock()
            ).total_seconds() / 3600

            if hours_in_advance < rules.min_advance_hours * settings.SHORT_NOTICE_FACTOR:
                warnings.append(
                    BookingWarning(
                        type=WarningType.SHORT_NOTICE_BOOKING,
                        message=(
                            f"Booking is only {round(hours_in_advance)} hours in "
                            "advance. Consider booking earlier for better "
                            "availability."
                        ),
                        severity="medium",
                    )
                )

            if day_of_week(scheduled_date) in settings.BUSY_DAYS:
                warnings.append(
                    BookingWarning(
                        type=WarningType.BUSY_DAY_BOOKING,
                        message=(
                            "This is typically a busy day. Consider alternative "
                            "days for more flexibility."
                        ),
                        severity="low",
                    )
                )

            if rules.requires_approval:
                warnings.append(
                    BookingWarning(
                        type=WarningType.REQUIRES_APPROVAL,
                        message=(
                            "This service type requires admin approval before "
                            "confirmation."
                        ),
                        severity="info",
                    )
                )

            return warnings
        except Exception as e:
            logger.error(
                "Error checking booking warnings",
                service_type_id=service_type_id,
                exc_info=e,
            )
            return []
