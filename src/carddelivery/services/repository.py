"""Delivery request repository.

Keeps an in-memory view of the most recent delivery requests in sync with the
persistence gateway and is the single entry point for changing them:
1. Plan the change with the state machine (no store call if it is rejected)
2. Persist it with a conditional update on the row version
3. Update the in-memory view, only after the store accepted the change
4. Append the status history entry. A stored change is never reported as a
   failure because its audit entry could not be written: the entry is queued
   and appended by `flush_history`.

A conditional update that loses a race re-reads the row, re-plans and tries
again a bounded number of times.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

from carddelivery.core.config import DeliverySettings
from carddelivery.db.models.base import DeliveryState
from carddelivery.services.errors import (
    ConcurrentUpdateError,
    DeliveryRequestNotFoundError,
    DeliveryValidationError,
    InvalidTransitionError,
    TransientStorageError,
)
from carddelivery.services.history import StatusHistoryRecorder
from carddelivery.services.lifecycle import (
    DeliveryStateMachine,
    TransitionPlan,
    validate_new_request_destination,
)
from carddelivery.services.records import (
    NewStatusHistoryEntry,
    TransitionPayload,
    TransitionResult,
    TransitionTrigger,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable
    from datetime import date
    from uuid import UUID

    from carddelivery.db.models.base import FailureReason, TimeSlot
    from carddelivery.services.gateway import DeliveryGateway
    from carddelivery.services.records import (
        Actor,
        DeliveryAddress,
        DeliveryRequest,
        NewDeliveryRequest,
        StatusHistoryEntry,
    )

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class BulkUpdate:
    """Outcome of one bulk store call.

    Attributes:
        updated: Records the store transitioned.
        skipped: Ids not in the expected state in the view (stale selection)
            or not in the view at all.
        lost: Ids that qualified in the view but the store no longer had in
            the expected state.
        history_entries: One audit entry per updated record.
        history_error: Why the audit entries could not be appended; they
            are queued for `flush_history` and the updates stand.
    """

    updated: list[DeliveryRequest] = field(default_factory=list)
    skipped: list[UUID] = field(default_factory=list)
    lost: list[UUID] = field(default_factory=list)
    history_entries: list[StatusHistoryEntry] = field(default_factory=list)
    history_error: str | None = None


class DeliveryRequestRepository:
    """In-memory view of delivery requests backed by a persistence gateway.

    One instance owns its view; share the instance, not the view.

    Example:
        repository = DeliveryRequestRepository(gateway)
        await repository.load()
        request = await repository.create(new_request, actor=resident)
        result = await repository.apply_transition(
            request.request_id,
            TransitionTrigger.SEND_TO_PRINT,
            actor=staff,
        )
    """

    # Only triggers with a single source state can be applied as a batch
    BULK_TRIGGERS: ClassVar[frozenset[TransitionTrigger]] = frozenset(
        {TransitionTrigger.SEND_TO_PRINT, TransitionTrigger.MARK_PRINTED}
    )

    def __init__(
        self,
        gateway: DeliveryGateway,
        *,
        settings: DeliverySettings | None = None,
        recorder: StatusHistoryRecorder | None = None,
        state_machine: DeliveryStateMachine | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the repository.

        Args:
            gateway: Store of record.
            settings: Delivery tuning; defaults apply when omitted.
            recorder: History recorder; one over ``gateway`` when omitted.
            state_machine: Transition rules; built from settings when omitted.
            clock: Source of "now" for lifecycle timestamps.
        """
        self._gateway = gateway
        self._settings = settings or DeliverySettings()
        self._recorder = recorder or StatusHistoryRecorder(gateway)
        self._machine = state_machine or DeliveryStateMachine(
            max_failed_attempts=self._settings.max_failed_attempts
        )
        self._clock = clock or (lambda: datetime.now(UTC))
        self._view: dict[UUID, DeliveryRequest] = {}
        self._pending_history: list[NewStatusHistoryEntry] = []
        self.is_loaded = False

    @property
    def settings(self) -> DeliverySettings:
        return self._settings

    @property
    def state_machine(self) -> DeliveryStateMachine:
        return self._machine

    @property
    def recorder(self) -> StatusHistoryRecorder:
        return self._recorder

    @property
    def requests(self) -> list[DeliveryRequest]:
        """Every request in the view, newest first."""
        return sorted(self._view.values(), key=lambda r: r.created_at, reverse=True)

    @property
    def pending_history(self) -> list[NewStatusHistoryEntry]:
        """Audit entries of stored changes that still have to be appended."""
        return list(self._pending_history)

    async def flush_history(self) -> list[StatusHistoryEntry]:
        """Append every queued audit entry in one store call.

        Returns:
            The stored entries (empty when nothing was queued).

        Raises:
            TransientStorageError: If the append failed; the queue is kept
                and the call can be repeated.
        """
        if not self._pending_history:
            return []
        queued = list(self._pending_history)
        stored = await self._call_gateway("record_history", self._recorder.record_many(queued))
        del self._pending_history[: len(queued)]
        logger.info("Queued status history appended", extra={"count": len(stored)})
        return stored

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> bool:
        """Initial load of the view; same contract as ``refresh``."""
        return await self.refresh()

    async def refresh(self) -> bool:
        """Replace the view with the newest ``page_size`` rows from the store.

        The round trip is bounded by ``load_timeout_seconds``. On timeout the
        view is left as it was. ``is_loaded`` is set either way so callers
        waiting for readiness never hang.

        Returns:
            True if the view was replaced, False on timeout.

        Raises:
            TransientStorageError: If the store call failed.
        """
        try:
            async with asyncio.timeout(self._settings.load_timeout_seconds):
                rows = await self._gateway.select_requests(limit=self._settings.page_size)
        except TimeoutError:
            logger.warning(
                "Delivery request load timed out, keeping current view",
                extra={
                    "timeout_seconds": self._settings.load_timeout_seconds,
                    "cached": len(self._view),
                },
            )
            return False
        except Exception as e:
            logger.error("Failed to load delivery requests: %s", e)
            raise TransientStorageError("select_requests", e) from e
        finally:
            self.is_loaded = True

        self._view = {row.request_id: row for row in rows}
        logger.info("Delivery request view refreshed", extra={"count": len(rows)})
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_id(self, request_id: UUID) -> DeliveryRequest | None:
        return self._view.get(request_id)

    def get_by_card_id(self, card_id: str) -> DeliveryRequest | None:
        """Newest request for a card, if any is in the view."""
        for request in self.requests:
            if request.card_id == card_id:
                return request
        return None

    def list_by_owner(
        self, owner_id: str, *, before: datetime | None = None, limit: int | None = None
    ) -> list[DeliveryRequest]:
        return self._filter(lambda r: r.owner_id == owner_id, before, limit)

    def list_by_service_area(
        self, service_area_code: str, *, before: datetime | None = None, limit: int | None = None
    ) -> list[DeliveryRequest]:
        return self._filter(lambda r: r.service_area_code == service_area_code, before, limit)

    def list_by_state(
        self, state: DeliveryState, *, before: datetime | None = None, limit: int | None = None
    ) -> list[DeliveryRequest]:
        return self._filter(lambda r: r.state is state, before, limit)

    def count_by_state(self) -> dict[DeliveryState, int]:
        """Number of requests in the view per state, every state included."""
        counts = dict.fromkeys(DeliveryState, 0)
        for request in self._view.values():
            counts[request.state] += 1
        return counts

    async def fetch_page(
        self,
        *,
        owner_id: str | None = None,
        service_area_code: str | None = None,
        state: DeliveryState | None = None,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[DeliveryRequest]:
        """Page through the store beyond the in-memory window.

        Pass the ``created_at`` of the last row of the previous page as
        ``before``. The view is not modified.
        """
        return await self._call_gateway(
            "select_requests",
            self._gateway.select_requests(
                limit=self._page_limit(limit),
                owner_id=owner_id,
                service_area_code=service_area_code,
                state=state,
                before=before,
            ),
        )

    async def history(self, request_id: UUID) -> list[StatusHistoryEntry]:
        """Status timeline of a request, oldest first."""
        return await self._call_gateway("select_history", self._recorder.history(request_id))

    def _page_limit(self, limit: int | None) -> int:
        if limit is None:
            return self._settings.page_size
        if limit < 1:
            msg = "limit must be positive"
            raise ValueError(msg)
        return min(limit, self._settings.page_size)

    def _filter(
        self,
        predicate: Callable[[DeliveryRequest], bool],
        before: datetime | None,
        limit: int | None,
    ) -> list[DeliveryRequest]:
        rows = [
            r
            for r in self.requests
            if predicate(r) and (before is None or r.created_at < before)
        ]
        return rows[: self._page_limit(limit)]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, data: NewDeliveryRequest, actor: Actor) -> DeliveryRequest:
        """Validate, persist and cache a new request in state REQUESTED.

        Raises:
            ValueError: If no actor was supplied.
            DeliveryValidationError: If identity fields are blank or a
                courier delivery lacks a complete address.
            TransientStorageError: If the insert failed. Once the insert
                succeeded the request is returned even if its creation entry
                could not be appended; the entry is queued instead.
        """
        self._require_actor(actor)
        for name in ("card_id", "owner_id", "service_area_code"):
            if not (getattr(data, name) or "").strip():
                raise DeliveryValidationError(f"{name} is required", field=name)
        try:
            validate_new_request_destination(data.delivery_type, data.address)
        except DeliveryValidationError as e:
            logger.warning(
                "Rejected delivery request",
                extra={"card_id": data.card_id, "field": e.field, "error": e.message},
            )
            raise

        request = await self._call_gateway("insert_request", self._gateway.insert_request(data))
        self._view[request.request_id] = request
        await self._record(
            NewStatusHistoryEntry(
                request_id=request.request_id,
                previous_state=None,
                new_state=request.state,
                actor=actor,
                reason="created",
            )
        )

        logger.info(
            "Delivery request created",
            extra={
                "request_id": str(request.request_id),
                "card_id": request.card_id,
                "delivery_type": request.delivery_type.value,
            },
        )
        return request

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def apply_transition(
        self,
        request_id: UUID,
        trigger: TransitionTrigger,
        payload: TransitionPayload | None = None,
        actor: Actor | None = None,
    ) -> TransitionResult:
        """Apply a lifecycle trigger to one request.

        Returns:
            TransitionResult whose ``request`` is the fresh record. For a
            repeated delivery confirmation ``already_applied`` is True and
            nothing was written.

        Raises:
            ValueError: If no actor was supplied.
            DeliveryRequestNotFoundError: If the id is not in the view.
            InvalidTransitionError: If the trigger is not allowed.
            DeliveryValidationError: If the payload is incomplete.
            TransientStorageError: If the store failed; the view is unchanged.
            ConcurrentUpdateError: If every retry lost a race.
        """
        self._require_actor(actor)
        plans: list[TransitionPlan] = []

        def compute(current: DeliveryRequest) -> dict[str, Any] | None:
            plan = self._plan(current, trigger, payload, actor)
            plans.append(plan)
            return None if plan.noop else plan.updates

        basis, updated = await self._update_with_retry(request_id, trigger.value, compute)
        plan = plans[-1]

        if updated is None:
            logger.info(
                "Transition already applied",
                extra={"request_id": str(request_id), "trigger": trigger.value},
            )
            return TransitionResult(
                request=basis,
                previous_state=basis.state,
                new_state=basis.state,
                history_entry=None,
                already_applied=True,
            )

        entry = await self._record(
            NewStatusHistoryEntry(
                request_id=request_id,
                previous_state=plan.previous_state,
                new_state=plan.next_state,
                actor=actor,
                reason=plan.reason,
                batch_id=plan.batch_id,
            )
        )

        logger.info(
            "State transition completed",
            extra={
                "request_id": str(request_id),
                "trigger": trigger.value,
                "from_state": plan.previous_state.value,
                "to_state": plan.next_state.value,
                "failed_attempts": updated.failed_attempts,
                "actor_id": actor.actor_id,
            },
        )
        if plan.next_state is DeliveryState.PICKUP_REQUIRED:
            logger.info(
                "Delivery escalated to office pickup",
                extra={"request_id": str(request_id), "failed_attempts": updated.failed_attempts},
            )

        return TransitionResult(
            request=updated,
            previous_state=plan.previous_state,
            new_state=plan.next_state,
            history_entry=entry,
            history_pending=entry is None,
        )

    async def send_to_print(
        self,
        request_id: UUID,
        actor: Actor,
        *,
        batch_id: str | None = None,
        staff_name: str | None = None,
    ) -> TransitionResult:
        return await self.apply_transition(
            request_id,
            TransitionTrigger.SEND_TO_PRINT,
            TransitionPayload(batch_id=batch_id, staff_name=staff_name),
            actor,
        )

    async def mark_printed(self, request_id: UUID, actor: Actor) -> TransitionResult:
        return await self.apply_transition(request_id, TransitionTrigger.MARK_PRINTED, None, actor)

    async def dispatch(
        self, request_id: UUID, actor: Actor, *, staff_name: str | None = None
    ) -> TransitionResult:
        return await self.apply_transition(
            request_id,
            TransitionTrigger.DISPATCH,
            TransitionPayload(staff_name=staff_name),
            actor,
        )

    async def mark_delivered(
        self, request_id: UUID, actor: Actor, *, note: str | None = None
    ) -> TransitionResult:
        return await self.apply_transition(
            request_id, TransitionTrigger.MARK_DELIVERED, TransitionPayload(note=note), actor
        )

    async def confirm_delivery(
        self, request_id: UUID, actor: Actor, *, photo_proof: str, signature: str
    ) -> TransitionResult:
        """Resident confirms receipt with a photo and a signature."""
        return await self.apply_transition(
            request_id,
            TransitionTrigger.CONFIRM_DELIVERY,
            TransitionPayload(photo_proof=photo_proof, signature=signature),
            actor,
        )

    async def mark_failed(
        self,
        request_id: UUID,
        actor: Actor,
        *,
        failure_reason: FailureReason | None,
        note: str | None = None,
    ) -> TransitionResult:
        return await self.apply_transition(
            request_id,
            TransitionTrigger.MARK_FAILED,
            TransitionPayload(failure_reason=failure_reason, note=note),
            actor,
        )

    async def reschedule(
        self,
        request_id: UUID,
        actor: Actor,
        *,
        preferred_date: date,
        preferred_time_slot: TimeSlot | None = None,
    ) -> TransitionResult:
        """Resident picks a new date after a not-home failure."""
        return await self.apply_transition(
            request_id,
            TransitionTrigger.RESCHEDULE,
            TransitionPayload(
                preferred_date=preferred_date, preferred_time_slot=preferred_time_slot
            ),
            actor,
        )

    async def update_address(
        self, request_id: UUID, actor: Actor, *, address: DeliveryAddress
    ) -> TransitionResult:
        """Resident corrects the address after a wrong-address failure."""
        return await self.apply_transition(
            request_id, TransitionTrigger.UPDATE_ADDRESS, TransitionPayload(address=address), actor
        )

    async def retry(
        self, request_id: UUID, actor: Actor, *, note: str | None = None
    ) -> TransitionResult:
        """Staff put an office-pickup card back into the dispatch queue."""
        return await self.apply_transition(
            request_id, TransitionTrigger.RETRY, TransitionPayload(note=note), actor
        )

    # ------------------------------------------------------------------
    # Non-lifecycle updates
    # ------------------------------------------------------------------

    async def assign_staff(
        self, request_id: UUID, staff_id: str, staff_name: str, actor: Actor
    ) -> DeliveryRequest:
        """Assign a staff member; the state does not change and no history is written."""
        self._require_actor(actor)
        if not staff_id or not staff_name:
            raise DeliveryValidationError("Staff id and name are required", field="staff_id")

        def compute(_current: DeliveryRequest) -> dict[str, Any]:
            return {
                "assigned_staff_id": staff_id,
                "assigned_staff_name": staff_name,
                "updated_at": self._clock(),
            }

        _, updated = await self._update_with_retry(request_id, "assign_staff", compute)
        logger.info(
            "Staff assigned",
            extra={"request_id": str(request_id), "staff_id": staff_id, "actor_id": actor.actor_id},
        )
        return updated

    async def update_photo(
        self, request_id: UUID, photo_ref: str, actor: Actor
    ) -> DeliveryRequest:
        """Replace the card photo; only allowed before the card goes to print."""
        self._require_actor(actor)
        if not photo_ref:
            raise DeliveryValidationError(
                "A photo reference is required", field="updated_photo_ref"
            )

        def compute(current: DeliveryRequest) -> dict[str, Any]:
            if current.state is not DeliveryState.REQUESTED:
                raise InvalidTransitionError(
                    current.state,
                    "update photo",
                    reason="The photo can only be replaced before the card is sent to print",
                )
            return {"updated_photo_ref": photo_ref, "updated_at": self._clock()}

        _, updated = await self._update_with_retry(request_id, "update_photo", compute)
        return updated

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def apply_bulk_transition(
        self,
        request_ids: Iterable[UUID],
        trigger: TransitionTrigger,
        payload: TransitionPayload | None,
        actor: Actor,
    ) -> BulkUpdate:
        """Apply a single-source trigger to many requests in one store call.

        Ids whose cached state does not match the trigger's source state are
        skipped. The store update carries the same state predicate, so rows
        that moved on in the store are left alone and reported as ``lost``.

        Raises:
            ValueError: If the trigger cannot be batched or no actor was given.
            TransientStorageError: If the store call failed; the view is unchanged.
        """
        self._require_actor(actor)
        if trigger not in self.BULK_TRIGGERS:
            msg = f"{trigger.value} cannot be applied in bulk"
            raise ValueError(msg)
        (expected_state,) = self._machine.TRIGGER_SOURCES[trigger]

        skipped: list[UUID] = []
        plans: dict[UUID, TransitionPlan] = {}
        now = self._clock()
        for request_id in dict.fromkeys(request_ids):
            current = self._view.get(request_id)
            if current is None or current.state is not expected_state:
                skipped.append(request_id)
                continue
            plans[request_id] = self._machine.plan(current, trigger, payload, actor, now=now)

        if not plans:
            return BulkUpdate(skipped=skipped)

        # Bulk triggers stamp the same fields on every row
        updates = next(iter(plans.values())).updates
        updated = await self._call_gateway(
            "update_requests",
            self._gateway.update_requests(list(plans), updates, expected_state=expected_state),
        )
        for record in updated:
            self._view[record.request_id] = record
        updated_ids = {r.request_id for r in updated}
        lost = [request_id for request_id in plans if request_id not in updated_ids]
        if lost:
            logger.warning(
                "Bulk update skipped rows changed in the store",
                extra={"trigger": trigger.value, "lost": [str(i) for i in lost]},
            )

        new_entries = [
            NewStatusHistoryEntry(
                request_id=record.request_id,
                previous_state=expected_state,
                new_state=plans[record.request_id].next_state,
                actor=actor,
                reason=plans[record.request_id].reason,
                batch_id=plans[record.request_id].batch_id,
            )
            for record in updated
        ]
        try:
            entries = await self._call_gateway(
                "record_history", self._recorder.record_many(new_entries)
            )
        except TransientStorageError as e:
            self._queue_history(new_entries)
            return BulkUpdate(
                updated=updated, skipped=skipped, lost=lost, history_error=str(e)
            )
        return BulkUpdate(updated=updated, skipped=skipped, lost=lost, history_entries=entries)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_actor(self, actor: Actor | None) -> None:
        if actor is None or not actor.actor_id:
            msg = "An actor identity is required"
            raise ValueError(msg)

    def _plan(
        self,
        current: DeliveryRequest,
        trigger: TransitionTrigger,
        payload: TransitionPayload | None,
        actor: Actor | None,
    ) -> TransitionPlan:
        try:
            return self._machine.plan(current, trigger, payload, actor, now=self._clock())
        except (InvalidTransitionError, DeliveryValidationError) as e:
            logger.warning(
                "Invalid transition attempted",
                extra={
                    "request_id": str(current.request_id),
                    "from_state": current.state.value,
                    "trigger": trigger.value,
                    "error": str(e),
                    "actor_id": actor.actor_id if actor else None,
                },
            )
            raise

    async def _update_with_retry(
        self,
        request_id: UUID,
        operation: str,
        compute: Callable[[DeliveryRequest], dict[str, Any] | None],
    ) -> tuple[DeliveryRequest, DeliveryRequest | None]:
        """Conditionally update a row, re-reading and recomputing on conflict.

        ``compute`` turns the current record into field updates, returns None
        for a no-op, or raises to reject. It is called again with the store's
        copy after every lost race.

        Returns:
            The record the final computation was based on, and the updated
            record (None for a no-op).
        """
        current = self._view.get(request_id)
        if current is None:
            raise DeliveryRequestNotFoundError(request_id)

        attempts = self._settings.conflict_retry_attempts
        for attempt in range(1, attempts + 1):
            updates = compute(current)
            if updates is None:
                return current, None
            updated = await self._call_gateway(
                "update_request",
                self._gateway.update_request(request_id, updates, expected_version=current.version),
            )
            if updated is not None:
                self._view[request_id] = updated
                return current, updated

            logger.info(
                "Concurrent update detected, re-reading request",
                extra={
                    "request_id": str(request_id),
                    "operation": operation,
                    "attempt": attempt,
                    "expected_version": current.version,
                },
            )
            fresh = await self._call_gateway("get_request", self._gateway.get_request(request_id))
            if fresh is None:
                self._view.pop(request_id, None)
                raise DeliveryRequestNotFoundError(request_id)
            # The store's copy is authoritative, so caching it is not an optimistic write
            self._view[request_id] = fresh
            current = fresh

        raise ConcurrentUpdateError(request_id, attempts)

    async def _record(self, entry: NewStatusHistoryEntry) -> StatusHistoryEntry | None:
        """Append the entry of a stored change, queueing it if the append fails."""
        try:
            return await self._call_gateway(
                "record_history",
                self._recorder.record(
                    entry.request_id,
                    entry.previous_state,
                    entry.new_state,
                    entry.actor,
                    reason=entry.reason,
                    batch_id=entry.batch_id,
                ),
            )
        except TransientStorageError:
            self._queue_history([entry])
            return None

    def _queue_history(self, entries: list[NewStatusHistoryEntry]) -> None:
        self._pending_history.extend(entries)
        logger.warning(
            "Status history queued after a failed append",
            extra={
                "request_ids": [str(e.request_id) for e in entries],
                "pending": len(self._pending_history),
            },
        )

    async def _call_gateway(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except Exception as e:
            logger.error(
                "Delivery store call failed: %s",
                e,
                extra={"operation": operation},
            )
            raise TransientStorageError(operation, e) from e
