from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from app.core.exceptions import (
    AppointmentNotFoundError,
    BookingConflictError,
    InvalidStatusTransitionError,
)
from app.models.appointment import AppointmentStatus
from app.schemas.appointment import AppointmentCreate, AppointmentReschedule
from app.schemas.scheduling import ConflictType, ValidationResult, WarningType
from app.services.booking import BookingWorkflow
from tests.fixtures.scheduling_fixtures import MONDAY, TUESDAY, at, fixed_clock


@pytest.fixture
def workflow(db):
    return BookingWorkflow(db, clock=fixed_clock)


def booking(service_type, scheduled_date, customer_id="c-1"):
    return AppointmentCreate(
        service_type_id=service_type.id,
        scheduled_date=scheduled_date,
        duration=service_type.duration,
        customer_id=customer_id,
    )


def locked_error():
    return OperationalError("INSERT INTO appointments", {}, Exception("database is locked"))


class TestBook:
    @pytest.mark.asyncio
    async def test_valid_request_is_committed(self, workflow, consultation):
        response = await workflow.book(booking(consultation, at(MONDAY, 10)))

        assert response.appointment.status == AppointmentStatus.PENDING
        assert response.appointment.scheduled_date == at(MONDAY, 10)
        assert [w.type for w in response.warnings] == [WarningType.BUSY_DAY_BOOKING]

        stored = await workflow.appointments.get_appointment(response.appointment.id)
        assert stored.customer_id == "c-1"

    @pytest.mark.asyncio
    async def test_rejection_carries_validation_result(
        self, workflow, consultation, make_appointment
    ):
        await make_appointment(consultation, at(MONDAY, 9))

        with pytest.raises(BookingConflictError) as exc_info:
            await workflow.book(booking(consultation, at(MONDAY, 10)))

        assert str(exc_info.value) == "Booking request conflicts with scheduling rules"
        result = exc_info.value.result
        assert result.conflict_types == [ConflictType.OVERLAPPING_APPOINTMENT]
        assert result.suggestions

    @pytest.mark.asyncio
    async def test_infrastructure_failure_asks_for_retry(self, workflow, consultation):
        with patch.object(
            workflow.appointments,
            "count_active",
            side_effect=Exception("database unavailable"),
        ):
            with pytest.raises(BookingConflictError, match="please retry") as exc_info:
                await workflow.book(booking(consultation, at(MONDAY, 10)))

        assert exc_info.value.result.has_infrastructure_errors

    @pytest.mark.asyncio
    async def test_commit_rechecks_calendar(
        self, workflow, consultation, make_appointment
    ):
        await make_appointment(consultation, at(MONDAY, 9))

        # Validation saw an empty calendar; the insert must still refuse
        with patch.object(
            workflow.scheduler,
            "validate_advanced_booking",
            AsyncMock(return_value=ValidationResult()),
        ):
            with pytest.raises(BookingConflictError, match="Overlaps appointment") as exc_info:
                await workflow.book(booking(consultation, at(MONDAY, 10)))

        assert exc_info.value.result is None

    @pytest.mark.asyncio
    async def test_locked_database_is_retried(
        self, workflow, consultation, make_appointment
    ):
        stored = await make_appointment(consultation, at(MONDAY, 10), customer_id="c-1")
        create = AsyncMock(side_effect=[locked_error(), stored])

        with patch.object(workflow.appointments, "create_appointment", create):
            response = await workflow.book(booking(consultation, at(TUESDAY, 10)))

        assert create.await_count == 2
        assert response.appointment.id == stored.id

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, workflow, consultation):
        create = AsyncMock(side_effect=locked_error())

        with patch.object(workflow.appointments, "create_appointment", create):
            with pytest.raises(OperationalError):
                await workflow.book(booking(consultation, at(MONDAY, 10)))

        assert create.await_count == 3


class TestReschedule:
    @pytest.mark.asyncio
    async def test_move_to_free_slot(self, workflow, consultation, make_appointment):
        existing = await make_appointment(consultation, at(MONDAY, 9), customer_id="c-1")

        response = await workflow.reschedule(
            existing.id, AppointmentReschedule(new_scheduled_date=at(MONDAY, 10))
        )

        assert response.appointment.id == existing.id
        assert response.appointment.scheduled_date == at(MONDAY, 10)

    @pytest.mark.asyncio
    async def test_move_into_conflict_rejected(
        self, workflow, consultation, make_appointment
    ):
        existing = await make_appointment(consultation, at(MONDAY, 9), customer_id="c-1")
        await make_appointment(consultation, at(MONDAY, 14))

        with pytest.raises(BookingConflictError) as exc_info:
            await workflow.reschedule(
                existing.id,
                AppointmentReschedule(new_scheduled_date=at(MONDAY, 13, 30)),
            )

        assert ConflictType.OVERLAPPING_APPOINTMENT in exc_info.value.result.conflict_types

    @pytest.mark.asyncio
    async def test_cancelled_appointment_cannot_move(
        self, workflow, consultation, make_appointment
    ):
        cancelled = await make_appointment(
            consultation, at(MONDAY, 9), status=AppointmentStatus.CANCELLED
        )
        with pytest.raises(InvalidStatusTransitionError):
            await workflow.reschedule(
                cancelled.id, AppointmentReschedule(new_scheduled_date=at(MONDAY, 10))
            )

    @pytest.mark.asyncio
    async def test_missing_appointment(self, workflow):
        with pytest.raises(AppointmentNotFoundError):
            await workflow.reschedule(
                "missing", AppointmentReschedule(new_scheduled_date=at(MONDAY, 10))
            )
