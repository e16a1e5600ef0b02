"""Booking validation against calendar, service and customer rules."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.models.appointment import AppointmentStatus
from app.schemas.scheduling import (
    ConflictType,
    DateSuggestion,
    TimeSlotSuggestion,
    ValidationRequest,
    WarningType,
)
from tests.fixtures.scheduling_fixtures import (
    MONDAY,
    NOW,
    SATURDAY,
    TUESDAY,
    WEEKDAYS,
    at,
)

THURSDAY = datetime(2025, 1, 2, tzinfo=timezone.utc)
NEXT_TUESDAY = datetime(2025, 1, 14, tzinfo=timezone.utc)


def request_for(
    service_type, scheduled_date, customer_id="c-new", duration=None, **extra
):
    return ValidationRequest(
        service_type_id=service_type.id,
        scheduled_date=scheduled_date,
        duration=duration or service_type.duration,
        customer_id=customer_id,
        **extra,
    )


class TestDailyLimits:
    @pytest.mark.asyncio
    async def test_limit_reached_suggests_other_dates(
        self, scheduler, make_service_type, make_appointment
    ):
        limited = await make_service_type(
            max_bookings_per_day=2, allowed_days=list(WEEKDAYS)
        )
        await make_appointment(limited, at(MONDAY, 9))
        await make_appointment(limited, at(MONDAY, 13))

        result = await scheduler.validate_advanced_booking(
            request_for(limited, at(MONDAY, 15))
        )

        assert not result.is_valid
        assert result.conflict_types == [ConflictType.DAILY_LIMIT_EXCEEDED]
        conflict = result.conflicts[0]
        assert conflict.current_count == 2
        assert conflict.max_allowed == 2
        assert result.suggestions
        assert all(isinstance(s, DateSuggestion) for s in result.suggestions)
        assert result.suggestions[0].date == at(TUESDAY, 15)
        assert result.suggestions[0].day_name == "Tuesday"

    @pytest.mark.asyncio
    async def test_cancelled_appointments_do_not_count(
        self, scheduler, make_service_type, make_appointment
    ):
        limited = await make_service_type(max_bookings_per_day=1)
        await make_appointment(
            limited, at(MONDAY, 9), status=AppointmentStatus.CANCELLED
        )

        check = await scheduler.check_daily_booking_limits(limited.id, at(MONDAY, 13))
        assert check.is_valid

    @pytest.mark.asyncio
    async def test_unknown_service_type(self, scheduler):
        check = await scheduler.check_daily_booking_limits("missing", at(MONDAY, 9))
        assert check.conflict.type == ConflictType.INVALID_SERVICE_TYPE


class TestOverlaps:
    @pytest.mark.asyncio
    async def test_request_inside_buffer_overlaps(
        self, scheduler, consultation, make_appointment
    ):
        existing = await make_appointment(consultation, at(MONDAY, 9))

        result = await scheduler.validate_advanced_booking(
            request_for(consultation, at(MONDAY, 10))
        )

        assert result.conflict_types == [ConflictType.OVERLAPPING_APPOINTMENT]
        conflict = result.conflicts[0]
        assert conflict.message == "Conflicts with existing Consultation appointment"
        assert conflict.conflicting_appointment.id == existing.id
        assert conflict.conflicting_appointment.duration == 60
        assert conflict.conflicting_appointment.buffer_minutes == 30
        assert [s.time for s in result.suggestions] == ["11:00", "12:00", "13:00"]
        assert all(isinstance(s, TimeSlotSuggestion) for s in result.suggestions)

    @pytest.mark.asyncio
    async def test_request_after_buffer_passes(
        self, scheduler, consultation, make_appointment
    ):
        await make_appointment(consultation, at(MONDAY, 9))

        result = await scheduler.validate_advanced_booking(
            request_for(consultation, at(MONDAY, 10, 31))
        )

        assert result.is_valid
        assert result.conflicts == []

    @pytest.mark.asyncio
    async def test_overlap_spans_service_types(
        self, scheduler, consultation, deep_clean, make_appointment
    ):
        # Deep clean 09:00-11:00 plus 15 minutes; the consultation's own
        # 30 minute buffer reaches back into it as well
        await make_appointment(deep_clean, at(MONDAY, 9))

        check = await scheduler.check_overlapping_service_requirements(
            consultation.id, at(MONDAY, 11, 20), 60
        )
        assert not check.is_valid

        check = await scheduler.check_overlapping_service_requirements(
            consultation.id, at(MONDAY, 11, 30), 60
        )
        assert check.is_valid

    @pytest.mark.asyncio
    async def test_every_colliding_appointment_reported(
        self, scheduler, make_service_type, make_appointment
    ):
        short = await make_service_type(duration=30, buffer_minutes=0)
        first = await make_appointment(short, at(MONDAY, 10))
        second = await make_appointment(short, at(MONDAY, 10, 30))

        check = await scheduler.check_overlapping_service_requirements(
            short.id, at(MONDAY, 10), 60
        )

        assert [c.conflicting_appointment.id for c in check.conflicts] == [
            first.id,
            second.id,
        ]


class TestServiceAvailability:
    @pytest.mark.asyncio
    async def test_day_not_allowed(self, scheduler, consultation):
        result = await scheduler.validate_advanced_booking(
            request_for(consultation, at(SATURDAY, 10))
        )

        assert result.conflict_types == [ConflictType.DAY_NOT_ALLOWED]
        conflict = result.conflicts[0]
        assert conflict.message == "Consultation is not available on Saturday"
        assert conflict.requested_day == "Saturday"
        assert conflict.allowed_days == [
            "Monday", "Tuesday", "Wednesday", "Thursday", "Friday"
        ]
        assert result.suggestions[0].date == datetime(
            2025, 1, 13, 10, 0, tzinfo=timezone.utc
        )

    @pytest.mark.asyncio
    async def test_too_short_notice(self, scheduler, consultation):
        result = await scheduler.validate_advanced_booking(
            request_for(consultation, at(THURSDAY, 7))
        )

        assert result.conflict_types == [ConflictType.ADVANCE_TIME_VIOLATION]
        assert result.conflicts[0].message == (
            "Appointments must be booked at least 24 hours in advance"
        )

    @pytest.mark.asyncio
    async def test_too_far_ahead(self, scheduler, consultation):
        result = await scheduler.validate_advanced_booking(
            request_for(consultation, at(MONDAY + timedelta(days=28), 10))
        )
        assert result.conflict_types == [ConflictType.ADVANCE_TIME_VIOLATION]

    @pytest.mark.asyncio
    async def test_outside_operating_hours(self, scheduler, consultation):
        result = await scheduler.validate_advanced_booking(
            request_for(consultation, at(MONDAY, 16, 30))
        )

        assert result.conflict_types == [ConflictType.SLOT_NOT_AVAILABLE]
        assert [s.time for s in result.suggestions] == [
            "09:00", "10:00", "11:00", "12:00", "13:00"
        ]


class TestExclusiveServices:
    @pytest.mark.asyncio
    async def test_exclusive_day_with_existing_appointment(
        self, scheduler, consultation, deep_clean, make_appointment
    ):
        existing = await make_appointment(consultation, at(TUESDAY, 14))

        result = await scheduler.validate_advanced_booking(
            request_for(deep_clean, at(TUESDAY, 9))
        )

        assert result.conflict_types == [ConflictType.EXCLUSIVE_SERVICE_CONFLICT]
        conflict = result.conflicts[0]
        assert conflict.message == (
            "Deep Clean requires exclusive booking on this day, "
            "but there are 1 existing appointment(s)"
        )
        assert [a.id for a in conflict.conflicting_appointments] == [existing.id]
        assert [s.date for s in result.suggestions] == [
            at(NEXT_TUESDAY, 9),
            at(NEXT_TUESDAY + timedelta(days=7), 9),
        ]

    @pytest.mark.asyncio
    async def test_exclusive_suggestions_skip_booked_days(
        self, scheduler, consultation, deep_clean, make_appointment
    ):
        await make_appointment(consultation, at(TUESDAY, 14))
        await make_appointment(consultation, at(NEXT_TUESDAY, 14))

        result = await scheduler.validate_advanced_booking(
            request_for(deep_clean, at(TUESDAY, 9))
        )

        assert [s.date for s in result.suggestions] == [
            at(NEXT_TUESDAY + timedelta(days=7), 9)
        ]

    @pytest.mark.asyncio
    async def test_day_held_by_another_exclusive_booking(
        self, scheduler, consultation, deep_clean, make_appointment
    ):
        await make_appointment(deep_clean, at(TUESDAY, 9))

        result = await scheduler.validate_advanced_booking(
            request_for(consultation, at(TUESDAY, 14))
        )

        assert result.conflict_types == [ConflictType.EXCLUSIVE_SERVICE_CONFLICT]
        assert result.conflicts[0].message == (
            "Deep Clean is booked exclusively on this day"
        )

    @pytest.mark.asyncio
    async def test_exclusive_service_on_ordinary_day(
        self, scheduler, consultation, deep_clean, make_appointment
    ):
        await make_appointment(consultation, at(MONDAY, 14))

        check = await scheduler.check_exclusive_service_conflicts(
            deep_clean.id, at(MONDAY, 9)
        )
        assert check.is_valid


class TestCustomerRestrictions:
    @pytest.mark.asyncio
    async def test_too_many_pending(
        self, scheduler, consultation, make_appointment
    ):
        for day in (6, 7, 8):
            await make_appointment(
                consultation,
                datetime(2025, 1, day, 9, tzinfo=timezone.utc),
                customer_id="c-1",
            )

        thursday = datetime(2025, 1, 9, 10, tzinfo=timezone.utc)
        result = await scheduler.validate_advanced_booking(
            request_for(consultation, thursday, "c-1")
        )

        assert result.conflict_types == [ConflictType.TOO_MANY_PENDING]
        assert result.conflicts[0].current_count == 3
        assert result.conflicts[0].max_allowed == 3

    @pytest.mark.asyncio
    async def test_confirmed_appointments_are_not_pending(
        self, scheduler, consultation, make_appointment
    ):
        for day in (6, 7, 8):
            await make_appointment(
                consultation,
                datetime(2025, 1, day, 9, tzinfo=timezone.utc),
                customer_id="c-1",
                status=AppointmentStatus.CONFIRMED,
            )

        check = await scheduler.check_customer_booking_restrictions(
            "c-1", consultation.id, datetime(2025, 1, 9, 10, tzinfo=timezone.utc)
        )
        assert check.is_valid

    @pytest.mark.asyncio
    async def test_same_day_booking(
        self, scheduler, consultation, make_service_type, make_appointment
    ):
        other = await make_service_type()
        existing = await make_appointment(other, at(MONDAY, 9), customer_id="c-1")

        result = await scheduler.validate_advanced_booking(
            request_for(consultation, at(MONDAY, 14), "c-1")
        )

        assert result.conflict_types == [ConflictType.CUSTOMER_SAME_DAY_CONFLICT]
        conflict = result.conflicts[0]
        assert conflict.message == "Customer already has 1 appointment(s) on this day"
        assert [a.id for a in conflict.existing_appointments] == [existing.id]

    @pytest.mark.asyncio
    async def test_recent_cancellations_per_service_type(
        self, scheduler, consultation, make_service_type, make_appointment
    ):
        other = await make_service_type()
        for hour in (9, 11):
            await make_appointment(
                consultation,
                at(MONDAY, hour),
                customer_id="c-1",
                status=AppointmentStatus.CANCELLED,
            )
        # Too old to count
        await make_appointment(
            consultation,
            at(TUESDAY, 9),
            customer_id="c-1",
            status=AppointmentStatus.CANCELLED,
            updated_at=NOW - timedelta(days=10),
        )

        check = await scheduler.check_customer_booking_restrictions(
            "c-1", consultation.id, at(TUESDAY, 14)
        )
        assert check.conflict.type == ConflictType.TOO_MANY_RECENT_CANCELLATIONS
        assert check.conflict.current_count == 2

        other_check = await scheduler.check_customer_booking_restrictions(
            "c-1", other.id, at(TUESDAY, 14)
        )
        assert other_check.is_valid

    @pytest.mark.asyncio
    async def test_violations_accumulate(
        self, scheduler, consultation, make_appointment
    ):
        for day in (6, 7, 8):
            await make_appointment(
                consultation,
                datetime(2025, 1, day, 9, tzinfo=timezone.utc),
                customer_id="c-1",
            )

        result = await scheduler.validate_advanced_booking(
            request_for(consultation, at(MONDAY, 10), "c-1")
        )

        assert set(result.conflict_types) == {
            ConflictType.OVERLAPPING_APPOINTMENT,
            ConflictType.TOO_MANY_PENDING,
            ConflictType.CUSTOMER_SAME_DAY_CONFLICT,
        }


class TestWarnings:
    @pytest.mark.asyncio
    async def test_busy_day(self, scheduler, consultation):
        result = await scheduler.validate_advanced_booking(
            request_for(consultation, at(MONDAY, 10))
        )

        assert result.is_valid
        assert [w.type for w in result.warnings] == [WarningType.BUSY_DAY_BOOKING]
        assert result.warnings[0].severity == "low"

    @pytest.mark.asyncio
    async def test_short_notice(self, scheduler, consultation):
        warnings = await scheduler.check_booking_warnings(
            consultation.id, at(THURSDAY, 19), 60
        )

        assert [w.type for w in warnings] == [WarningType.SHORT_NOTICE_BOOKING]
        assert warnings[0].message.startswith("Booking is only 35 hours in advance")

    @pytest.mark.asyncio
    async def test_requires_approval(self, scheduler, make_service_type):
        gated = await make_service_type(requires_approval=True)
        warnings = await scheduler.check_booking_warnings(
            gated.id, datetime(2025, 1, 10, 10, tzinfo=timezone.utc), 60
        )

        assert [w.type for w in warnings] == [WarningType.REQUIRES_APPROVAL]
        assert warnings[0].severity == "info"


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_service_type_short_circuits(self, scheduler):
        result = await scheduler.validate_advanced_booking(
            ValidationRequest(
                service_type_id="missing",
                scheduled_date=at(MONDAY, 10),
                duration=60,
                customer_id="c-1",
            )
        )

        assert not result.is_valid
        assert result.conflict_types == [ConflictType.INVALID_SERVICE_TYPE]
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_inactive_service_type(self, scheduler, make_service_type):
        retired = await make_service_type(is_active=False)
        result = await scheduler.validate_advanced_booking(
            request_for(retired, at(MONDAY, 10))
        )
        assert result.conflict_types == [ConflictType.INVALID_SERVICE_TYPE]

    @pytest.mark.asyncio
    async def test_validation_is_idempotent(
        self, scheduler, consultation, make_appointment
    ):
        await make_appointment(consultation, at(MONDAY, 9))
        request = request_for(consultation, at(MONDAY, 10))

        first = await scheduler.validate_advanced_booking(request)
        second = await scheduler.validate_advanced_booking(request)

        assert first.model_dump() == second.model_dump()

    @pytest.mark.asyncio
    async def test_suggestions_validate_cleanly(
        self, scheduler, consultation, make_service_type, make_appointment
    ):
        limited = await make_service_type(max_bookings_per_day=1)
        await make_appointment(limited, at(MONDAY, 9))
        await make_appointment(consultation, at(MONDAY, 12))

        result = await scheduler.validate_advanced_booking(
            request_for(limited, at(MONDAY, 12, 30))
        )
        assert result.suggestions

        for suggestion in result.suggestions:
            start = (
                suggestion.start_datetime
                if isinstance(suggestion, TimeSlotSuggestion)
                else suggestion.date
            )
            retry = await scheduler.validate_advanced_booking(
                request_for(limited, start)
            )
            assert retry.is_valid, (start, retry.conflict_types)

    @pytest.mark.asyncio
    async def test_date_suggestions_skip_days_customer_is_booked(
        self, scheduler, consultation, make_service_type, make_appointment
    ):
        limited = await make_service_type(
            max_bookings_per_day=2, allowed_days=list(WEEKDAYS)
        )
        await make_appointment(limited, at(MONDAY, 9))
        await make_appointment(limited, at(MONDAY, 13))
        await make_appointment(consultation, at(TUESDAY, 9), customer_id="c-new")

        result = await scheduler.validate_advanced_booking(
            request_for(limited, at(MONDAY, 15))
        )

        assert result.conflict_types == [ConflictType.DAILY_LIMIT_EXCEEDED]
        assert [s.date for s in result.suggestions] == [
            at(MONDAY + timedelta(days=2), 15),
            at(MONDAY + timedelta(days=3), 15),
            at(MONDAY + timedelta(days=4), 15),
        ]
        for suggestion in result.suggestions:
            retry = await scheduler.validate_advanced_booking(
                request_for(limited, suggestion.date)
            )
            assert retry.is_valid, (suggestion.date, retry.conflict_types)

    @pytest.mark.asyncio
    async def test_dates_around_exclusive_booking_skip_customer_days(
        self, scheduler, consultation, deep_clean, make_appointment
    ):
        await make_appointment(deep_clean, at(TUESDAY, 9))
        await make_appointment(
            consultation, at(TUESDAY + timedelta(days=1), 9), customer_id="c-new"
        )

        result = await scheduler.validate_advanced_booking(
            request_for(consultation, at(TUESDAY, 14))
        )

        assert result.conflict_types == [ConflictType.EXCLUSIVE_SERVICE_CONFLICT]
        assert [s.date for s in result.suggestions] == [
            at(TUESDAY + timedelta(days=2), 14),
            at(TUESDAY + timedelta(days=3), 14),
            at(TUESDAY + timedelta(days=6), 14),
        ]
        for suggestion in result.suggestions:
            retry = await scheduler.validate_advanced_booking(
                request_for(consultation, suggestion.date)
            )
            assert retry.is_valid, (suggestion.date, retry.conflict_types)

    @pytest.mark.asyncio
    async def test_exclusive_date_suggestions_validate_cleanly(
        self, scheduler, consultation, deep_clean, make_appointment
    ):
        await make_appointment(consultation, at(TUESDAY, 14))
        await make_appointment(
            consultation, at(TUESDAY + timedelta(days=1), 9), customer_id="c-new"
        )

        result = await scheduler.validate_advanced_booking(
            request_for(deep_clean, at(TUESDAY, 9))
        )

        assert [s.date for s in result.suggestions] == [
            at(NEXT_TUESDAY, 9),
            at(NEXT_TUESDAY + timedelta(days=7), 9),
        ]
        for suggestion in result.suggestions:
            retry = await scheduler.validate_advanced_booking(
                request_for(deep_clean, suggestion.date)
            )
            assert retry.is_valid, (suggestion.date, retry.conflict_types)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "check,args",
        [
            ("check_daily_booking_limits", ()),
            ("check_service_specific_availability", (60,)),
            ("check_overlapping_service_requirements", (60,)),
            ("check_exclusive_service_conflicts", ()),
        ],
    )
    async def test_sub_checks_reject_inactive_service_type(
        self, scheduler, make_service_type, check, args
    ):
        retired = await make_service_type(is_active=False)

        result = await getattr(scheduler, check)(retired.id, at(MONDAY, 10), *args)

        assert not result.is_valid
        assert [c.type for c in result.conflicts] == [
            ConflictType.INVALID_SERVICE_TYPE
        ]

    @pytest.mark.asyncio
    async def test_rescheduled_appointment_ignores_itself(
        self, scheduler, consultation, make_appointment
    ):
        existing = await make_appointment(
            consultation, at(MONDAY, 9), customer_id="c-1"
        )

        result = await scheduler.validate_advanced_booking(
            request_for(
                consultation,
                at(MONDAY, 10),
                "c-1",
                exclude_appointment_id=existing.id,
            )
        )

        assert result.is_valid

    @pytest.mark.asyncio
    async def test_failed_check_does_not_stop_others(
        self, scheduler, consultation
    ):
        with patch.object(
            scheduler.appointments,
            "count_active",
            side_effect=Exception("database unavailable"),
        ):
            result = await scheduler.validate_advanced_booking(
                request_for(consultation, at(MONDAY, 10))
            )

        assert result.conflict_types == [ConflictType.LIMIT_CHECK_ERROR]
        assert result.conflicts[0].retryable
        assert result.has_infrastructure_errors
        assert [w.type for w in result.warnings] == [WarningType.BUSY_DAY_BOOKING]

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_reported_as_validation_error(
        self, scheduler, consultation
    ):
        with patch.object(
            scheduler.service_types,
            "get_service_type_by_id",
            side_effect=Exception("database unavailable"),
        ):
            result = await scheduler.validate_advanced_booking(
                request_for(consultation, at(MONDAY, 10))
            )

        assert not result.is_valid
        assert result.conflict_types == [ConflictType.VALIDATION_ERROR]
        assert result.conflicts[0].retryable
