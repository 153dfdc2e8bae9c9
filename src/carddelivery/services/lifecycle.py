"""ID card delivery lifecycle state machine.

This module decides, without touching storage, what a trigger does to a
delivery request:
- Which state it moves to (including the escalation to office pickup)
- Which fields and lifecycle timestamps change
- What goes into the audit entry

The flow:
    requested -> printing -> printed -> out_for_delivery -> delivered
                                ^              |
                                |              v
                                +----- delivery_failed (reschedule / new address)
                                |              |
                                |              v (after max failed attempts)
                                +----- pickup_required (staff retry)

Persistence, history and caching are the repository's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, assert_never

from carddelivery.db.models.base import DeliveryState, DeliveryType, FailureReason
from carddelivery.services.errors import DeliveryValidationError, InvalidTransitionError
from carddelivery.services.records import TransitionPayload, TransitionTrigger

if TYPE_CHECKING:
    from datetime import datetime

    from carddelivery.services.records import Actor, DeliveryAddress, DeliveryRequest

# Second failed attempt sends the card to office pickup
DEFAULT_MAX_FAILED_ATTEMPTS = 2


@dataclass(frozen=True, slots=True)
class TransitionPlan:
    """What applying a trigger would do.

    Attributes:
        trigger: The trigger that was planned.
        previous_state: State before the transition.
        next_state: State after the transition.
        updates: Field changes to persist, keyed by DeliveryRequest field name.
        reason: Reason to record in the audit entry.
        batch_id: Print batch to record in the audit entry.
        noop: True when the trigger was already applied and nothing should change.
    """

    trigger: TransitionTrigger
    previous_state: DeliveryState
    next_state: DeliveryState
    updates: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    batch_id: str | None = None
    noop: bool = False


class DeliveryStateMachine:
    """Pure transition logic for card delivery requests.

    Example:
        machine = DeliveryStateMachine()
        plan = machine.plan(request, TransitionTrigger.DISPATCH, None, actor, now=now)
        # plan.next_state is OUT_FOR_DELIVERY, plan.updates stamps out_for_delivery_at
    """

    VALID_TRANSITIONS: ClassVar[dict[DeliveryState, set[DeliveryState]]] = {
        DeliveryState.REQUESTED: {DeliveryState.PRINTING},
        DeliveryState.PRINTING: {DeliveryState.PRINTED},
        DeliveryState.PRINTED: {DeliveryState.OUT_FOR_DELIVERY},
        DeliveryState.OUT_FOR_DELIVERY: {
            DeliveryState.DELIVERED,
            DeliveryState.DELIVERY_FAILED,
            DeliveryState.PICKUP_REQUIRED,  # Escalation on the last allowed failure
        },
        DeliveryState.DELIVERY_FAILED: {DeliveryState.PRINTED},
        DeliveryState.PICKUP_REQUIRED: {DeliveryState.PRINTED},
        DeliveryState.DELIVERED: set(),
    }

    # States each trigger may be applied from
    TRIGGER_SOURCES: ClassVar[dict[TransitionTrigger, frozenset[DeliveryState]]] = {
        TransitionTrigger.SEND_TO_PRINT: frozenset({DeliveryState.REQUESTED}),
        TransitionTrigger.MARK_PRINTED: frozenset({DeliveryState.PRINTING}),
        TransitionTrigger.DISPATCH: frozenset({DeliveryState.PRINTED}),
        TransitionTrigger.MARK_DELIVERED: frozenset({DeliveryState.OUT_FOR_DELIVERY}),
        TransitionTrigger.CONFIRM_DELIVERY: frozenset({DeliveryState.OUT_FOR_DELIVERY}),
        TransitionTrigger.MARK_FAILED: frozenset({DeliveryState.OUT_FOR_DELIVERY}),
        TransitionTrigger.RESCHEDULE: frozenset({DeliveryState.DELIVERY_FAILED}),
        TransitionTrigger.UPDATE_ADDRESS: frozenset({DeliveryState.DELIVERY_FAILED}),
        TransitionTrigger.RETRY: frozenset({DeliveryState.PICKUP_REQUIRED}),
    }

    # Failure reason a resident-side correction requires
    REQUIRED_FAILURE_REASON: ClassVar[dict[TransitionTrigger, FailureReason]] = {
        TransitionTrigger.RESCHEDULE: FailureReason.NOT_HOME,
        TransitionTrigger.UPDATE_ADDRESS: FailureReason.WRONG_ADDRESS,
    }

    RESIDENT_TRIGGERS: ClassVar[frozenset[TransitionTrigger]] = frozenset(
        {
            TransitionTrigger.CONFIRM_DELIVERY,
            TransitionTrigger.RESCHEDULE,
            TransitionTrigger.UPDATE_ADDRESS,
        }
    )

    def __init__(self, max_failed_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS) -> None:
        """Initialize the state machine.

        Args:
            max_failed_attempts: Failed attempts after which redelivery is no
                longer offered and the card goes to office pickup.
        """
        if max_failed_attempts < 1:
            msg = "max_failed_attempts must be at least 1"
            raise ValueError(msg)
        self.max_failed_attempts = max_failed_attempts

    def is_valid_transition(self, from_state: DeliveryState, to_state: DeliveryState) -> bool:
        """Check if a state transition is valid."""
        return to_state in self.VALID_TRANSITIONS.get(from_state, set())

    def is_terminal_state(self, state: DeliveryState) -> bool:
        """Check if a state is terminal (no outgoing transitions)."""
        return len(self.VALID_TRANSITIONS.get(state, set())) == 0

    def is_staff_trigger(self, trigger: TransitionTrigger) -> bool:
        return trigger not in self.RESIDENT_TRIGGERS

    def allowed_triggers(self, request: DeliveryRequest) -> list[TransitionTrigger]:
        """Triggers that would currently pass state and failure-reason guards.

        Payload validation is not considered; this is what a UI may offer.
        """
        allowed = []
        for trigger, sources in self.TRIGGER_SOURCES.items():
            if request.state not in sources:
                continue
            required_reason = self.REQUIRED_FAILURE_REASON.get(trigger)
            if required_reason is not None and request.failure_reason is not required_reason:
                continue
            allowed.append(trigger)
        return allowed

    def plan(
        self,
        request: DeliveryRequest,
        trigger: TransitionTrigger,
        payload: TransitionPayload | None,
        actor: Actor | None,
        *,
        now: datetime,
    ) -> TransitionPlan:
        """Compute the outcome of applying ``trigger`` to ``request``.

        Args:
            request: Current record.
            trigger: Requested action.
            payload: Trigger-specific inputs.
            actor: Who is acting; required for every trigger.
            now: Timestamp to stamp on changed lifecycle fields.

        Returns:
            The transition plan. ``plan.noop`` is set for an already-confirmed
            delivery.

        Raises:
            ValueError: If no actor identity was supplied (caller error).
            InvalidTransitionError: If the trigger is not allowed from the
                current state or its failure-reason guard does not hold.
            DeliveryValidationError: If the payload is missing required input.
        """
        if actor is None or not actor.actor_id:
            msg = "An actor identity is required for every delivery transition"
            raise ValueError(msg)
        payload = payload or TransitionPayload()
        from_state = request.state

        # Double submit from a slow UI: report success, change nothing
        if trigger is TransitionTrigger.CONFIRM_DELIVERY and from_state is DeliveryState.DELIVERED:
            return TransitionPlan(
                trigger=trigger,
                previous_state=from_state,
                next_state=from_state,
                noop=True,
            )

        if from_state not in self.TRIGGER_SOURCES[trigger]:
            raise InvalidTransitionError(from_state, trigger)

        required_reason = self.REQUIRED_FAILURE_REASON.get(trigger)
        if required_reason is not None and request.failure_reason is not required_reason:
            current = request.failure_reason.value if request.failure_reason else "none"
            raise InvalidTransitionError(
                from_state,
                trigger,
                reason=(
                    f"Cannot {trigger.value}: requires failure reason "
                    f"{required_reason.value}, got {current}"
                ),
            )

        updates: dict[str, Any] = {"updated_at": now}
        reason = payload.note
        batch_id = None

        if trigger is TransitionTrigger.SEND_TO_PRINT:
            next_state = DeliveryState.PRINTING
            updates["sent_to_print_at"] = now
            if payload.batch_id:
                updates["print_batch_id"] = payload.batch_id
                batch_id = payload.batch_id
        elif trigger is TransitionTrigger.MARK_PRINTED:
            next_state = DeliveryState.PRINTED
            updates["printed_at"] = now
            batch_id = request.print_batch_id
        elif trigger is TransitionTrigger.DISPATCH:
            next_state = DeliveryState.OUT_FOR_DELIVERY
            updates["out_for_delivery_at"] = now
        elif trigger is TransitionTrigger.MARK_DELIVERED:
            next_state = DeliveryState.DELIVERED
            updates["delivered_at"] = now
        elif trigger is TransitionTrigger.CONFIRM_DELIVERY:
            if not payload.photo_proof or not payload.signature:
                raise DeliveryValidationError(
                    "A photo and a signature are required to confirm delivery",
                    field="photo_proof" if not payload.photo_proof else "signature",
                )
            next_state = DeliveryState.DELIVERED
            updates.update(
                delivered_at=now,
                delivery_confirmed_at=now,
                delivery_photo_proof=payload.photo_proof,
                delivery_signature=payload.signature,
            )
        elif trigger is TransitionTrigger.MARK_FAILED:
            if payload.failure_reason is None:
                raise DeliveryValidationError(
                    "Select a reason before marking the delivery failed",
                    field="failure_reason",
                )
            attempts = request.failed_attempts + 1
            next_state = (
                DeliveryState.PICKUP_REQUIRED
                if attempts >= self.max_failed_attempts
                else DeliveryState.DELIVERY_FAILED
            )
            updates["failure_reason"] = payload.failure_reason
            updates["failed_attempts"] = attempts
            reason = payload.failure_reason.value
            if payload.note:
                reason = f"{reason}: {payload.note}"
        elif trigger is TransitionTrigger.RESCHEDULE:
            if payload.preferred_date is None:
                raise DeliveryValidationError(
                    "Choose a new delivery date to reschedule",
                    field="preferred_date",
                )
            next_state = DeliveryState.PRINTED
            updates.update(
                preferred_date=payload.preferred_date,
                preferred_time_slot=payload.preferred_time_slot or request.preferred_time_slot,
                failure_reason=None,
                out_for_delivery_at=None,
            )
        elif trigger is TransitionTrigger.UPDATE_ADDRESS:
            address = payload.address
            if address is None or not address.is_complete:
                missing = address.missing_fields() if address is not None else ["address"]
                raise DeliveryValidationError(
                    f"Delivery address is incomplete: missing {', '.join(missing)}",
                    field=missing[0],
                )
            next_state = DeliveryState.PRINTED
            updates.update(address=address, failure_reason=None, out_for_delivery_at=None)
        elif trigger is TransitionTrigger.RETRY:
            next_state = DeliveryState.PRINTED
            updates.update(failure_reason=None)
        else:
            assert_never(trigger)

        if payload.staff_name and self.is_staff_trigger(trigger):
            updates["assigned_staff_name"] = payload.staff_name

        return TransitionPlan(
            trigger=trigger,
            previous_state=from_state,
            next_state=next_state,
            updates={"state": next_state, **updates},
            reason=reason,
            batch_id=batch_id,
        )


def validate_new_request_destination(
    delivery_type: DeliveryType,
    address: DeliveryAddress | None,
) -> None:
    """Check that a courier delivery has a complete destination.

    Pickup requests need no address.

    Raises:
        DeliveryValidationError: If a delivery-type request lacks an address
            or any of region/city/area/street is blank.
    """
    if delivery_type is DeliveryType.PICKUP:
        return
    if address is None:
        raise DeliveryValidationError(
            "A delivery address is required for courier delivery",
            field="address",
        )
    missing = address.missing_fields()
    if missing:
        raise DeliveryValidationError(
            f"Delivery address is incomplete: missing {', '.join(missing)}",
            field=missing[0],
        )
