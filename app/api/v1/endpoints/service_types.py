from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps.scheduling import get_service_type_service
from app.core.exceptions import ServiceTypeInUseError, ServiceTypeNotFoundError
from app.schemas.service_type import (
    ServiceTypeCreate,
    ServiceTypeRead,
    ServiceTypeStats,
    ServiceTypeUpdate,
)
from app.services.service_type import ServiceTypeService

router = APIRouter()


@router.get("/", response_model=list[ServiceTypeRead])
async def list_service_types(
    include_inactive: bool = Query(False),
    service: ServiceTypeService = Depends(get_service_type_service),
):
    """List service types, active ones only unless asked otherwise."""
    return await service.get_service_types(include_inactive)


@router.post("/", response_model=ServiceTypeRead, status_code=status.HTTP_201_CREATED)
async def create_service_type(
    service_type_data: ServiceTypeCreate,
    service: ServiceTypeService = Depends(get_service_type_service),
):
    try:
        return await service.create_service_type(service_type_data)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/{service_type_id}", response_model=ServiceTypeRead)
async def get_service_type(
    service_type_id: str,
    service: ServiceTypeService = Depends(get_service_type_service),
):
    service_type = await service.get_service_type(service_type_id)
    if not service_type:
        raise HTTPException(status_code=404, detail="Service type not found")
    return service_type


@router.put("/{service_type_id}", response_model=ServiceTypeRead)
async def update_service_type(
    service_type_id: str,
    service_type_data: ServiceTypeUpdate,
    service: ServiceTypeService = Depends(get_service_type_service),
):
    try:
        return await service.update_service_type(service_type_id, service_type_data)
    except ServiceTypeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.delete("/{service_type_id}", response_model=ServiceTypeRead)
async def delete_service_type(
    service_type_id: str,
    service: ServiceTypeService = Depends(get_service_type_service),
):
    """Deactivate a service type that has no active appointments."""
    try:
        return await service.delete_service_type(service_type_id)
    except ServiceTypeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ServiceTypeInUseError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/{service_type_id}/stats", response_model=ServiceTypeStats)
async def get_service_type_stats(
    service_type_id: str,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    service: ServiceTypeService = Depends(get_service_type_service),
):
    if not await service.get_service_type(service_type_id):
        raise HTTPException(status_code=404, detail="Service type not found")
    return await service.get_service_type_stats(service_type_id, start_date, end_date)
