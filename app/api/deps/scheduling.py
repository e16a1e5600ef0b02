from datetime import datetime
from typing import Callable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.redis import redis_client
from app.services.appointment import AppointmentService
from app.services.availability import AvailabilityService
from app.services.booking import BookingWorkflow
from app.services.scheduling import AdvancedSchedulingService
from app.services.service_type import ServiceTypeService
from app.services.suggestions import AlternativeSuggestionService
from app.utils.intervals import utc_now


def get_clock() -> Callable[[], datetime]:
    """Source of "now" for lead-time rules; overridden in tests."""
    return utc_now


async def get_service_type_service(
    db: AsyncSession = Depends(get_db),
) -> ServiceTypeService:
    return ServiceTypeService(db, redis_client)


async def get_appointment_service(
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AppointmentService:
    return AppointmentService(db, clock)


async def get_availability_service(
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AvailabilityService:
    return AvailabilityService(db, clock, redis_client)


async def get_scheduling_service(
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AdvancedSchedulingService:
    return AdvancedSchedulingService(db, clock, redis_client)


async def get_suggestion_service(
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AlternativeSuggestionService:
    return AlternativeSuggestionService(db, clock, redis_client)


async def get_booking_workflow(
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> BookingWorkflow:
    return BookingWorkflow(db, clock, redis_client)
