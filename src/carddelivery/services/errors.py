"""Error taxonomy for the delivery lifecycle services.

- DeliveryValidationError: incomplete or inconsistent caller input. Never retried.
- InvalidTransitionError: not legal from the current state, or a guard failed.
  Re-fetch the request before trying a different trigger.
- TransientStorageError: the store failed or timed out before the change was
  stored. The same call may be retried; nothing was committed to the
  in-memory view. A failed audit append after a stored change is not raised;
  the entry is queued on the repository instead.
- DeliveryRequestNotFoundError: unknown id. Refresh and retry once.
- ConcurrentUpdateError: the request kept changing underneath the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from uuid import UUID

    from carddelivery.db.models.base import DeliveryState
    from carddelivery.services.records import TransitionTrigger


class DeliveryError(Exception):
    """Base exception for delivery lifecycle operations."""


class DeliveryValidationError(DeliveryError):
    """Raised when request data is incomplete or inconsistent."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


class InvalidTransitionError(DeliveryError):
    """Raised when a trigger is not allowed from the current state."""

    def __init__(
        self,
        from_state: DeliveryState,
        trigger: TransitionTrigger | str,
        reason: str | None = None,
    ) -> None:
        self.from_state = from_state
        self.trigger = trigger
        action = trigger if isinstance(trigger, str) else trigger.value
        self.reason = reason or f"Cannot {action} a request in state {from_state.value}"
        super().__init__(self.reason)


class DeliveryRequestNotFoundError(DeliveryError):
    """Raised when a delivery request is not known."""

    def __init__(self, request_id: UUID) -> None:
        self.request_id = request_id
        super().__init__(f"Delivery request {request_id} not found")


class TransientStorageError(DeliveryError):
    """Raised when the persistence gateway fails or times out."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Storage failure during {operation}{detail}")


class ConcurrentUpdateError(DeliveryError):
    """Raised when conditional updates keep losing to concurrent writers."""

    def __init__(self, request_id: UUID, attempts: int) -> None:
        self.request_id = request_id
        self.attempts = attempts
        super().__init__(
            f"Delivery request {request_id} changed concurrently; gave up after {attempts} attempts"
        )
