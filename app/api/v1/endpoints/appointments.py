import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps.scheduling import get_appointment_service, get_booking_workflow
from app.core.exceptions import (
    AppointmentNotFoundError,
    BookingConflictError,
    InvalidStatusTransitionError,
    ServiceTypeNotFoundError,
)
from app.schemas.appointment import (
    AppointmentCreate,
    AppointmentRead,
    AppointmentReschedule,
    AppointmentStatusTransition,
    BookingResponse,
)
from app.services.appointment import AppointmentService
from app.services.booking import BookingWorkflow

logger = structlog.get_logger(__name__)

router = APIRouter()


def _conflict_exception(error: BookingConflictError) -> HTTPException:
    detail = {"message": str(error)}
    status_code = status.HTTP_409_CONFLICT
    if error.result is not None:
        detail["result"] = error.result.model_dump(mode="json")
        if error.result.has_infrastructure_errors:
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HTTPException(status_code=status_code, detail=detail)


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    appointment_data: AppointmentCreate,
    workflow: BookingWorkflow = Depends(get_booking_workflow),
):
    """Validate and book an appointment.

    Rejected requests return 409 with the full validation result, or 503 when
    validation could not complete and the request may be retried.
    """
    try:
        return await workflow.book(appointment_data)
    except BookingConflictError as e:
        raise _conflict_exception(e)
    except ServiceTypeNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error("Failed to book appointment", exc_info=e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to book appointment",
        )


@router.get("/{appointment_id}", response_model=AppointmentRead)
async def get_appointment(
    appointment_id: str,
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = await service.get_appointment(appointment_id)
    if not appointment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found"
        )
    return appointment


@router.patch("/{appointment_id}/status", response_model=AppointmentRead)
async def transition_appointment_status(
    appointment_id: str,
    transition: AppointmentStatusTransition,
    service: AppointmentService = Depends(get_appointment_service),
):
    """Move an appointment along PENDING -> CONFIRMED -> COMPLETED, or cancel it."""
    try:
        return await service.transition_status(appointment_id, transition.new_status)
    except AppointmentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStatusTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        )


@router.put("/{appointment_id}/reschedule", response_model=BookingResponse)
async def reschedule_appointment(
    appointment_id: str,
    reschedule_data: AppointmentReschedule,
    workflow: BookingWorkflow = Depends(get_booking_workflow),
):
    """Move an appointment, re-validating it without counting itself."""
    try:
        return await workflow.reschedule(appointment_id, reschedule_data)
    except AppointmentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStatusTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        )
    except BookingConflictError as e:
        raise _conflict_exception(e)
