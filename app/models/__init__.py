# Import all models to ensure they are registered with SQLAlchemy
from . import appointment, availability_rule, service_type

__all__ = [
    "appointment",
    "availability_rule",
    "service_type",
]
