"""Immutable records exchanged between the delivery services and the gateway.

Records are frozen: every change to a delivery request produces a new
DeliveryRequest, so a cached copy can never be altered behind a caller's back.
"""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from carddelivery.db.models.base import (
    ActorType,
    DeliveryState,
    DeliveryType,
    FailureReason,
    TimeSlot,
)

if TYPE_CHECKING:
    from datetime import date, datetime
    from uuid import UUID


class TransitionTrigger(enum.Enum):
    """Actions that move a delivery request through its lifecycle."""

    SEND_TO_PRINT = "send_to_print"
    MARK_PRINTED = "mark_printed"
    DISPATCH = "dispatch"
    MARK_DELIVERED = "mark_delivered"
    CONFIRM_DELIVERY = "confirm_delivery"
    MARK_FAILED = "mark_failed"
    RESCHEDULE = "reschedule"
    UPDATE_ADDRESS = "update_address"
    RETRY = "retry"


@dataclass(frozen=True, slots=True)
class DeliveryAddress:
    """Structured delivery destination.

    Attributes:
        region: Province/region name.
        city: City or municipality name.
        area: Neighbourhood/district name.
        street: Free-text street line.
        region_code, city_code, area_code: Optional registry codes.
        postal_code: Optional postal code.
        landmark: Optional landmark to help the courier.
    """

    region: str
    city: str
    area: str
    street: str
    region_code: str | None = None
    city_code: str | None = None
    area_code: str | None = None
    postal_code: str | None = None
    landmark: str | None = None

    def missing_fields(self) -> list[str]:
        """Names of required fields that are empty or blank."""
        required = {
            "region": self.region,
            "city": self.city,
            "area": self.area,
            "street": self.street,
        }
        return [name for name, value in required.items() if not (value and value.strip())]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()


@dataclass(frozen=True, slots=True)
class Actor:
    """Who performed an action; recorded on every history entry."""

    actor_id: str
    actor_type: ActorType
    name: str | None = None

    @classmethod
    def staff(cls, actor_id: str, name: str | None = None) -> Actor:
        return cls(actor_id=actor_id, actor_type=ActorType.STAFF, name=name)

    @classmethod
    def resident(cls, actor_id: str, name: str | None = None) -> Actor:
        return cls(actor_id=actor_id, actor_type=ActorType.RESIDENT, name=name)


@dataclass(frozen=True, slots=True)
class NewDeliveryRequest:
    """Caller-supplied data for a new delivery request."""

    card_id: str
    owner_id: str
    service_area_code: str
    delivery_type: DeliveryType = DeliveryType.DELIVERY
    address: DeliveryAddress | None = None
    preferred_date: date | None = None
    preferred_time_slot: TimeSlot | None = None
    notes: str | None = None
    updated_photo_ref: str | None = None


@dataclass(frozen=True, slots=True)
class DeliveryRequest:
    """One physical card delivery job as stored."""

    request_id: UUID
    card_id: str
    owner_id: str
    service_area_code: str
    created_at: datetime
    delivery_type: DeliveryType = DeliveryType.DELIVERY
    address: DeliveryAddress | None = None
    preferred_date: date | None = None
    preferred_time_slot: TimeSlot | None = None
    notes: str | None = None
    state: DeliveryState = DeliveryState.REQUESTED
    failure_reason: FailureReason | None = None
    failed_attempts: int = 0
    updated_photo_ref: str | None = None
    delivery_confirmed_at: datetime | None = None
    delivery_photo_proof: str | None = None
    delivery_signature: str | None = None
    assigned_staff_id: str | None = None
    assigned_staff_name: str | None = None
    print_batch_id: str | None = None
    updated_at: datetime | None = None
    sent_to_print_at: datetime | None = None
    printed_at: datetime | None = None
    out_for_delivery_at: datetime | None = None
    delivered_at: datetime | None = None
    version: int = 1

    def with_updates(self, updates: dict[str, Any]) -> DeliveryRequest:
        """Return a copy with ``updates`` applied.

        Raises:
            ValueError: If an update names a field the record does not have.
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            msg = f"Unknown delivery request fields: {sorted(unknown)}"
            raise ValueError(msg)
        return dataclasses.replace(self, **updates)


# Fields a gateway update may touch; identity and creation fields are fixed.
UPDATABLE_FIELDS = frozenset(
    f.name
    for f in dataclasses.fields(DeliveryRequest)
    if f.name not in {"request_id", "card_id", "owner_id", "service_area_code", "created_at"}
)


@dataclass(frozen=True, slots=True)
class NewStatusHistoryEntry:
    """A history entry before the store assigns its id and timestamp."""

    request_id: UUID
    previous_state: DeliveryState | None
    new_state: DeliveryState
    actor: Actor
    reason: str | None = None
    batch_id: str | None = None


@dataclass(frozen=True, slots=True)
class StatusHistoryEntry:
    """Append-only audit record of one state change.

    Attributes:
        entry_id: Store-assigned identifier.
        request_id: Owning delivery request.
        previous_state: State before the change (None for the creation entry).
        new_state: State after the change.
        actor_type, actor_id, actor_name: Who made the change.
        reason: Optional free-text or failure reason.
        batch_id: Print batch the change belonged to, if any.
        created_at: Store-assigned timestamp.
    """

    entry_id: UUID
    request_id: UUID
    previous_state: DeliveryState | None
    new_state: DeliveryState
    actor_type: ActorType
    actor_id: str
    created_at: datetime
    actor_name: str | None = None
    reason: str | None = None
    batch_id: str | None = None


@dataclass(frozen=True, slots=True)
class TransitionPayload:
    """Trigger-specific inputs. Only the fields a trigger needs are read."""

    batch_id: str | None = None
    failure_reason: FailureReason | None = None
    photo_proof: str | None = None
    signature: str | None = None
    preferred_date: date | None = None
    preferred_time_slot: TimeSlot | None = None
    address: DeliveryAddress | None = None
    staff_name: str | None = None
    note: str | None = None


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """Result of applying a trigger to a delivery request.

    Attributes:
        request: The request after the transition (unchanged when already applied).
        previous_state: State before the transition.
        new_state: State after the transition.
        history_entry: Audit entry written (None when already applied or
            when the append is still pending).
        already_applied: True for an idempotent repeat, e.g. a double-submitted
            delivery confirmation.
        history_pending: True when the change was stored but its audit entry
            could not be appended yet. See ``flush_history``.
    """

    request: DeliveryRequest
    previous_state: DeliveryState
    new_state: DeliveryState
    history_entry: StatusHistoryEntry | None
    already_applied: bool = False
    history_pending: bool = False
