"""Card delivery service layer.

This package contains the delivery lifecycle logic and its storage seams:
- DeliveryStateMachine: Transition rules, guards and escalation to pickup
- DeliveryRequestRepository: In-memory view kept in sync with the store
- BulkPrintService: Batch transitions for the print queue
- StatusHistoryRecorder: Append-only status history
- DeliveryGateway: Storage port, with in-memory and PostgreSQL adapters
"""

from carddelivery.services.bulk import BulkItemOutcome, BulkPrintService, BulkResult
from carddelivery.services.errors import (
    ConcurrentUpdateError,
    DeliveryError,
    DeliveryRequestNotFoundError,
    DeliveryValidationError,
    InvalidTransitionError,
    TransientStorageError,
)
from carddelivery.services.gateway import (
    DeliveryGateway,
    GatewayUnavailableError,
    InMemoryDeliveryGateway,
)
from carddelivery.services.history import StatusHistoryRecorder
from carddelivery.services.lifecycle import DeliveryStateMachine, TransitionPlan
from carddelivery.services.records import (
    Actor,
    DeliveryAddress,
    DeliveryRequest,
    NewDeliveryRequest,
    StatusHistoryEntry,
    TransitionPayload,
    TransitionResult,
    TransitionTrigger,
)
from carddelivery.services.repository import BulkUpdate, DeliveryRequestRepository

__all__ = [
    "Actor",
    "BulkItemOutcome",
    "BulkPrintService",
    "BulkResult",
    "BulkUpdate",
    "ConcurrentUpdateError",
    "DeliveryAddress",
    "DeliveryError",
    "DeliveryGateway",
    "DeliveryRequest",
    "DeliveryRequestNotFoundError",
    "DeliveryRequestRepository",
    "DeliveryStateMachine",
    "DeliveryValidationError",
    "GatewayUnavailableError",
    "InMemoryDeliveryGateway",
    "InvalidTransitionError",
    "NewDeliveryRequest",
    "StatusHistoryEntry",
    "StatusHistoryRecorder",
    "TransientStorageError",
    "TransitionPayload",
    "TransitionPlan",
    "TransitionResult",
    "TransitionTrigger",
]
