from fastapi import APIRouter

from app.api.v1.endpoints import (
    appointments,
    availability,
    scheduling,
    service_types,
)

api_router = APIRouter()

# Booking validation, alternatives and slot search
api_router.include_router(scheduling.router, prefix="/scheduling", tags=["scheduling"])

# Appointment booking and lifecycle
api_router.include_router(
    appointments.router, prefix="/appointments", tags=["appointments"]
)

# Service type management
api_router.include_router(
    service_types.router, prefix="/service-types", tags=["service-types"]
)

# Operating windows
api_router.include_router(
    availability.router, prefix="/availability", tags=["availability"]
)
