from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AppointmentNotFoundError,
    BookingConflictError,
    InvalidStatusTransitionError,
)
from app.core.redis import RedisClient
from app.models.appointment import Appointment
from app.schemas.appointment import (
    AppointmentCreate,
    AppointmentRead,
    AppointmentReschedule,
    BookingResponse,
)
from app.schemas.scheduling import ValidationRequest, ValidationResult
from app.services.scheduling import AdvancedSchedulingService
from app.utils.intervals import utc_now

logger = structlog.get_logger(__name__)


class BookingWorkflow:
    """Validate a request, then commit it through the atomic insert."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utc_now,
        cache: Optional[RedisClient] = None,
    ):
        self.db = db
        self.scheduler = AdvancedSchedulingService(db, clock, cache)
        self.appointments = self.scheduler.appointments

    async def book(self, data: AppointmentCreate) -> BookingResponse:
        result = await self.scheduler.validate_advanced_booking(data)
        self._raise_if_rejected(result)

        appointment = await self._commit(
            lambda: self.appointments.create_appointment(data)
        )
        return BookingResponse(
            appointment=AppointmentRead.model_validate(appointment),
            warnings=result.warnings,
        )

    async def reschedule(
        self, appointment_id: str, data: AppointmentReschedule
    ) -> BookingResponse:
        appointment = await self.appointments.get_appointment(appointment_id)
        if not appointment:
            raise AppointmentNotFoundError(appointment_id)
        if not appointment.is_active:
            raise InvalidStatusTransitionError(appointment.status, "RESCHEDULED")

        request = ValidationRequest(
            service_type_id=appointment.service_type_id,
            scheduled_date=data.new_scheduled_date,
            duration=data.duration or appointment.duration,
            customer_id=appointment.customer_id,
            exclude_appointment_id=appointment.id,
        )
        result = await self.scheduler.validate_advanced_booking(request)
        self._raise_if_rejected(result)

        updated = await self._commit(
            lambda: self.appointments.reschedule_appointment(
                appointment_id, request.scheduled_date, request.duration
            )
        )
        return BookingResponse(
            appointment=AppointmentRead.model_validate(updated),
            warnings=result.warnings,
        )

    @staticmethod
    def _raise_if_rejected(result: ValidationResult) -> None:
        if result.is_valid:
            return
        if result.has_infrastructure_errors:
            message = "Booking could not be validated, please retry"
        else:
            message = "Booking request conflicts with scheduling rules"
        raise BookingConflictError(message, result=result)

    async def _commit(
        self, operation: Callable[[], Awaitable[Appointment]]
    ) -> Appointment:
        attempts = max(settings.BOOKING_COMMIT_RETRIES, 1)
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except OperationalError as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Booking commit failed, retrying",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e),
                )
