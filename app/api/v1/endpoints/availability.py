from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps.scheduling import get_availability_service
from app.core.exceptions import (
    AvailabilityRuleConflictError,
    AvailabilityRuleNotFoundError,
    ServiceTypeNotFoundError,
)
from app.schemas.availability import (
    AvailabilityRuleBulkItem,
    AvailabilityRuleCreate,
    AvailabilityRuleRead,
    AvailabilityRuleUpdate,
    OperatingWindow,
)
from app.services.availability import AvailabilityService

router = APIRouter()


@router.get("/rules", response_model=list[AvailabilityRuleRead])
async def list_availability_rules(
    day_of_week: Optional[int] = Query(None, ge=0, le=6),
    service_type_id: Optional[str] = Query(None),
    is_available: Optional[bool] = Query(None),
    service: AvailabilityService = Depends(get_availability_service),
):
    return await service.get_availability_rules(
        day_of_week, service_type_id, is_available
    )


@router.post(
    "/rules", response_model=AvailabilityRuleRead, status_code=status.HTTP_201_CREATED
)
async def create_availability_rule(
    rule_data: AvailabilityRuleCreate,
    service: AvailabilityService = Depends(get_availability_service),
):
    """Add an operating window; overlapping windows in the same scope are refused."""
    try:
        return await service.create_availability_rule(rule_data)
    except ServiceTypeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AvailabilityRuleConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/rules/bulk", response_model=list[AvailabilityRuleRead])
async def bulk_update_availability_rules(
    items: list[AvailabilityRuleBulkItem],
    service: AvailabilityService = Depends(get_availability_service),
):
    """Create or update several rules at once; nothing is saved if one fails."""
    try:
        return await service.bulk_update_availability_rules(items)
    except (AvailabilityRuleNotFoundError, ServiceTypeNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AvailabilityRuleConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/rules/{rule_id}", response_model=AvailabilityRuleRead)
async def get_availability_rule(
    rule_id: str,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        return await service.get_availability_rule(rule_id)
    except AvailabilityRuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/rules/{rule_id}", response_model=AvailabilityRuleRead)
async def update_availability_rule(
    rule_id: str,
    rule_data: AvailabilityRuleUpdate,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        return await service.update_availability_rule(rule_id, rule_data)
    except (AvailabilityRuleNotFoundError, ServiceTypeNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AvailabilityRuleConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_availability_rule(
    rule_id: str,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        await service.delete_availability_rule(rule_id)
    except AvailabilityRuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/days/{day_of_week}", response_model=list[OperatingWindow])
async def get_operating_windows(
    day_of_week: int,
    service_type_id: Optional[str] = Query(None),
    service: AvailabilityService = Depends(get_availability_service),
):
    """Operating windows that apply on a weekday (0 = Sunday)."""
    if day_of_week < 0 or day_of_week > 6:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Day of week must be between 0 (Sunday) and 6 (Saturday)",
        )
    return await service.get_operating_windows(day_of_week, service_type_id)


@router.get("/days/{day_of_week}/buffer", response_model=int)
async def get_buffer_time(
    day_of_week: int,
    service_type_id: Optional[str] = Query(None),
    service: AvailabilityService = Depends(get_availability_service),
):
    """Largest buffer among the rules that apply on a weekday."""
    try:
        return await service.get_buffer_time_for_service(day_of_week, service_type_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
