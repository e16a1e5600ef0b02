from typing import Any, Optional


class SchedulingError(Exception):
    """Base class for scheduling errors raised to callers."""


class ServiceTypeNotFoundError(SchedulingError):
    def __init__(self, service_type_id: str):
        self.service_type_id = service_type_id
        super().__init__(f"Service type {service_type_id} not found")


class AppointmentNotFoundError(SchedulingError):
    def __init__(self, appointment_id: str):
        self.appointment_id = appointment_id
        super().__init__(f"Appointment {appointment_id} not found")


class InvalidStatusTransitionError(SchedulingError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition from {current} to {requested}")


class AvailabilityRuleConflictError(SchedulingError):
    """Raised when an availability rule overlaps an existing rule."""


class ServiceTypeInUseError(SchedulingError):
    """Raised when a service type with active appointments is deleted."""


class BookingConflictError(SchedulingError):
    """Booking rejected by validation or by the commit-time invariant re-check.

    ``result`` holds the ValidationResult when validation rejected the request.
    """

    def __init__(self, message: str, result: Optional[Any] = None):
        self.result = result
        super().__init__(message)


class AvailabilityRuleNotFoundError(SchedulingError):
    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Availability rule {rule_id} not found")
