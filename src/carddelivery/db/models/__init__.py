"""SQLAlchemy ORM models for card delivery.

- base: Common metadata, annotated column types, and shared enums
- deliveries: Delivery requests and their append-only status history
"""

from carddelivery.db.models.base import (
    ActorType,
    Base,
    DeliveryState,
    DeliveryType,
    FailureReason,
    TimeSlot,
    metadata,
)
from carddelivery.db.models.deliveries import DeliveryRequestRow, StatusHistoryRow

__all__ = [
    "ActorType",
    "Base",
    "DeliveryRequestRow",
    "DeliveryState",
    "DeliveryType",
    "FailureReason",
    "StatusHistoryRow",
    "TimeSlot",
    "metadata",
]
