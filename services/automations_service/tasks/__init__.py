"""Public exports for automations background tasks."""

from services.automations_service.tasks.dropoff import run_dropoff_detection

__all__ = [
    "run_dropoff_detection",
]
