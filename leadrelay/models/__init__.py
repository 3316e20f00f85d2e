"""
Database models - import all models here so Alembic can discover them.
"""
from leadrelay.models.delivery_job import DeliveryJob, JobState, Priority
from leadrelay.models.product import Product

__all__ = [
    "DeliveryJob",
    "JobState",
    "Priority",
    "Product",
]
