"""Append-only status history for delivery requests.

Every state change of a delivery request is recorded here with its previous
and new state, the actor and an optional reason. The live record only keeps
the latest failure reason and a running count, so history is the only place
the sequence of failed attempts can be recovered from.

Entries are never updated or deleted.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from carddelivery.db.models.base import DeliveryState, FailureReason
from carddelivery.services.records import NewStatusHistoryEntry

if TYPE_CHECKING:
    from collections.abc import Sequence
    from uuid import UUID

    from carddelivery.services.gateway import DeliveryGateway
    from carddelivery.services.records import Actor, StatusHistoryEntry

logger = logging.getLogger(__name__)

_FAILURE_STATES = frozenset({DeliveryState.DELIVERY_FAILED, DeliveryState.PICKUP_REQUIRED})


class StatusHistoryRecorder:
    """Records and reads back delivery status history.

    Example:
        recorder = StatusHistoryRecorder(gateway)
        await recorder.record(
            request_id,
            DeliveryState.OUT_FOR_DELIVERY,
            DeliveryState.DELIVERY_FAILED,
            Actor.staff("staff-7"),
            reason="not_home",
        )
        timeline = await recorder.history(request_id)
    """

    def __init__(self, gateway: DeliveryGateway) -> None:
        """Initialize the recorder.

        Args:
            gateway: Store the history rows are appended to.
        """
        self._gateway = gateway

    async def record(
        self,
        request_id: UUID,
        previous_state: DeliveryState | None,
        new_state: DeliveryState,
        actor: Actor,
        reason: str | None = None,
        batch_id: str | None = None,
    ) -> StatusHistoryEntry:
        """Append one entry.

        Args:
            request_id: Delivery request the change belongs to.
            previous_state: State before the change (None for creation).
            new_state: State after the change.
            actor: Who made the change.
            reason: Optional reason shown on the timeline.
            batch_id: Print batch the change was part of.

        Returns:
            The stored entry with its id and timestamp.
        """
        entry = await self._gateway.insert_history(
            NewStatusHistoryEntry(
                request_id=request_id,
                previous_state=previous_state,
                new_state=new_state,
                actor=actor,
                reason=reason,
                batch_id=batch_id,
            )
        )
        logger.debug(
            "Status history recorded",
            extra={
                "request_id": str(request_id),
                "previous_state": previous_state.value if previous_state else None,
                "new_state": new_state.value,
                "actor_id": actor.actor_id,
            },
        )
        return entry

    async def record_many(
        self, entries: Sequence[NewStatusHistoryEntry]
    ) -> list[StatusHistoryEntry]:
        """Append several entries in one store call (used for print batches)."""
        if not entries:
            return []
        return await self._gateway.insert_history_many(entries)

    async def history(self, request_id: UUID) -> list[StatusHistoryEntry]:
        """Timeline of a request, oldest entry first."""
        entries = await self._gateway.select_history(request_id)
        # Stable sort keeps store order for entries sharing a timestamp
        return sorted(entries, key=lambda e: e.created_at)

    async def failure_reasons(self, request_id: UUID) -> list[FailureReason | None]:
        """Failure reasons of every failed attempt, in order.

        The reason of an attempt is the code at the start of the reason on the
        entry that moved the request into a failure state; entries without a
        recognizable code yield None.
        """
        reasons: list[FailureReason | None] = []
        for entry in await self.history(request_id):
            if entry.previous_state is not DeliveryState.OUT_FOR_DELIVERY:
                continue
            if entry.new_state not in _FAILURE_STATES:
                continue
            try:
                reasons.append(FailureReason((entry.reason or "").split(":", 1)[0]))
            except ValueError:
                reasons.append(None)
        return reasons
