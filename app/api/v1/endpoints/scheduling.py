from datetime import date as date_type, datetime
from typing import Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps.scheduling import (
    get_availability_service,
    get_scheduling_service,
    get_suggestion_service,
)
from app.schemas.scheduling import (
    CheckResult,
    DateSuggestion,
    TimeSlotSuggestion,
    ValidationRequest,
    ValidationResult,
)
from app.services.availability import AvailabilityService
from app.services.scheduling import AdvancedSchedulingService
from app.services.suggestions import AlternativeSuggestionService

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/validate", response_model=ValidationResult)
async def validate_booking(
    request: ValidationRequest,
    scheduler: AdvancedSchedulingService = Depends(get_scheduling_service),
) -> ValidationResult:
    """
    Validate a booking request against every scheduling rule.

    The result lists all conflicts found, suggested alternatives and
    non-blocking warnings. Conflicts marked ``retryable`` come from a
    temporary failure rather than a rule violation.
    """
    return await scheduler.validate_advanced_booking(request)


@router.get("/daily-limits", response_model=CheckResult)
async def check_daily_limits(
    service_type_id: str = Query(..., description="Service type ID"),
    scheduled_date: datetime = Query(..., description="Requested start (UTC)"),
    exclude_appointment_id: Optional[str] = Query(None),
    customer_id: Optional[str] = Query(None, description="Requesting customer"),
    scheduler: AdvancedSchedulingService = Depends(get_scheduling_service),
) -> CheckResult:
    """Check the daily booking quota for a service type on one day."""
    return await scheduler.check_daily_booking_limits(
        service_type_id,
        scheduled_date,
        exclude_appointment_id,
        customer_id=customer_id,
    )


@router.get("/alternatives/dates", response_model=List[DateSuggestion])
async def get_alternative_dates(
    service_type_id: str = Query(...),
    scheduled_date: datetime = Query(..., description="Rejected start (UTC)"),
    duration: Optional[int] = Query(None, gt=0, le=1440),
    days_to_search: Optional[int] = Query(None, ge=1, le=60),
    customer_id: Optional[str] = Query(None),
    suggestions: AlternativeSuggestionService = Depends(get_suggestion_service),
) -> List[DateSuggestion]:
    return await suggestions.find_alternative_dates(
        service_type_id,
        scheduled_date,
        days_to_search,
        duration,
        customer_id=customer_id,
    )


@router.get("/alternatives/time-slots", response_model=List[TimeSlotSuggestion])
async def get_alternative_time_slots(
    service_type_id: str = Query(...),
    scheduled_date: datetime = Query(...),
    duration: int = Query(..., gt=0, le=1440),
    suggestions: AlternativeSuggestionService = Depends(get_suggestion_service),
) -> List[TimeSlotSuggestion]:
    return await suggestions.find_alternative_time_slots(
        service_type_id, scheduled_date, duration
    )


@router.get("/alternatives/exclusive-dates", response_model=List[DateSuggestion])
async def get_exclusive_dates(
    service_type_id: str = Query(...),
    scheduled_date: datetime = Query(...),
    days_to_search: Optional[int] = Query(None, ge=1, le=60),
    customer_id: Optional[str] = Query(None),
    suggestions: AlternativeSuggestionService = Depends(get_suggestion_service),
) -> List[DateSuggestion]:
    return await suggestions.find_exclusive_dates(
        service_type_id, scheduled_date, days_to_search, customer_id=customer_id
    )


@router.get("/slots", response_model=List[TimeSlotSuggestion])
async def get_available_slots(
    day: date_type = Query(..., description="Calendar day (UTC)"),
    service_type_id: Optional[str] = Query(None),
    duration: int = Query(60, gt=0, le=1440),
    availability: AvailabilityService = Depends(get_availability_service),
) -> List[TimeSlotSuggestion]:
    """Open start times on one day, in order."""
    try:
        return await availability.calculate_available_slots(
            day, service_type_id, duration
        )
    except Exception as e:
        logger.error("Failed to calculate available slots", exc_info=e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to calculate available slots",
        )


@router.get("/slots/range", response_model=Dict[date_type, List[TimeSlotSuggestion]])
async def get_available_slots_for_range(
    start_date: date_type = Query(...),
    end_date: date_type = Query(...),
    service_type_id: Optional[str] = Query(None),
    duration: int = Query(60, gt=0, le=1440),
    availability: AvailabilityService = Depends(get_availability_service),
) -> Dict[date_type, List[TimeSlotSuggestion]]:
    if end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end_date must not be before start_date",
        )
    if (end_date - start_date).days > 31:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Date range cannot exceed 31 days",
        )

    try:
        return await availability.calculate_available_slots_for_range(
            start_date, end_date, service_type_id, duration
        )
    except Exception as e:
        logger.error("Failed to calculate slots for range", exc_info=e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to calculate available slots",
        )


@router.get("/slots/next", response_model=Optional[TimeSlotSuggestion])
async def get_next_available_slot(
    from_datetime: datetime = Query(..., description="Search strictly after (UTC)"),
    service_type_id: Optional[str] = Query(None),
    duration: int = Query(60, gt=0, le=1440),
    max_days_to_search: int = Query(30, ge=1, le=90),
    availability: AvailabilityService = Depends(get_availability_service),
) -> Optional[TimeSlotSuggestion]:
    try:
        return await availability.get_next_available_slot(
            from_datetime, duration, service_type_id, max_days_to_search
        )
    except Exception as e:
        logger.error("Failed to find next available slot", exc_info=e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to find next available slot",
        )
