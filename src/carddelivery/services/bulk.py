"""Bulk print queue operations.

Staff select many requests in the print queue and move them together:
- send_to_print: requested -> printing, under one print batch id
- mark_printed: printing -> printed

Each operation issues a single store call for the whole selection. Ids whose
state no longer matches (stale selections) are skipped, never failed.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from carddelivery.core.config import BulkFailurePolicy
from carddelivery.services.errors import TransientStorageError
from carddelivery.services.records import TransitionPayload, TransitionTrigger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from uuid import UUID

    from carddelivery.core.config import DeliverySettings
    from carddelivery.services.records import Actor
    from carddelivery.services.repository import BulkUpdate, DeliveryRequestRepository

logger = logging.getLogger(__name__)


class BulkItemOutcome(enum.Enum):
    """What happened to one id of a bulk selection."""

    TRANSITIONED = "transitioned"
    SKIPPED = "skipped"  # Not in the trigger's source state when selected
    CONFLICT = "conflict"  # Changed in the store before the batch landed
    FAILED = "failed"  # The store call itself failed


@dataclass(frozen=True, slots=True)
class BulkResult:
    """Result of a bulk print operation.

    Attributes:
        success: Whether the batch is reported as successful under the
            configured failure policy.
        batch_id: Print batch id (None for mark_printed).
        transitioned: Ids that changed state.
        skipped: Ids left alone because their state did not match.
        outcomes: Outcome per requested id.
        error: Error message when the store call failed, or when the
            transitions were stored but their audit entries are still queued.
    """

    success: bool
    batch_id: str | None = None
    transitioned: list[UUID] = field(default_factory=list)
    skipped: list[UUID] = field(default_factory=list)
    outcomes: dict[UUID, BulkItemOutcome] = field(default_factory=dict)
    error: str | None = None


class BulkPrintService:
    """Batch transitions for the print queue.

    Example:
        service = BulkPrintService(repository)
        result = await service.send_to_print(selected_ids, Actor.staff("staff-1"))
        if result.success:
            print(f"Batch {result.batch_id}: {len(result.transitioned)} cards")
    """

    def __init__(
        self,
        repository: DeliveryRequestRepository,
        *,
        settings: DeliverySettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or repository.settings
        self._clock = clock or (lambda: datetime.now(UTC))

    def generate_batch_id(self) -> str:
        """Batch id of the form ``<prefix>-<epoch millis>``."""
        millis = int(self._clock().timestamp() * 1000)
        return f"{self._settings.batch_id_prefix}-{millis}"

    async def send_to_print(
        self,
        request_ids: Iterable[UUID],
        actor: Actor,
        batch_id: str | None = None,
    ) -> BulkResult:
        """Move every selected request still in ``requested`` to ``printing``.

        Args:
            request_ids: Selected requests.
            actor: Staff member running the batch.
            batch_id: Print batch id; generated when omitted.
        """
        batch_id = batch_id or self.generate_batch_id()
        return await self._run(
            TransitionTrigger.SEND_TO_PRINT,
            request_ids,
            actor,
            TransitionPayload(batch_id=batch_id),
            batch_id,
        )

    async def mark_printed(self, request_ids: Iterable[UUID], actor: Actor) -> BulkResult:
        """Move every selected request still in ``printing`` to ``printed``."""
        return await self._run(TransitionTrigger.MARK_PRINTED, request_ids, actor, None, None)

    async def _run(
        self,
        trigger: TransitionTrigger,
        request_ids: Iterable[UUID],
        actor: Actor,
        payload: TransitionPayload | None,
        batch_id: str | None,
    ) -> BulkResult:
        ids = list(dict.fromkeys(request_ids))
        try:
            update = await self._repository.apply_bulk_transition(ids, trigger, payload, actor)
        except TransientStorageError as e:
            logger.error(
                "Bulk %s failed: %s",
                trigger.value,
                e,
                extra={"batch_id": batch_id, "count": len(ids)},
            )
            return BulkResult(
                success=False,
                batch_id=batch_id,
                outcomes=dict.fromkeys(ids, BulkItemOutcome.FAILED),
                error=str(e),
            )

        result = self._build_result(ids, update, batch_id)
        logger.info(
            "Bulk %s completed",
            trigger.value,
            extra={
                "batch_id": batch_id,
                "transitioned": len(result.transitioned),
                "skipped": len(result.skipped),
                "conflicts": len(update.lost),
                "success": result.success,
                "history_pending": update.history_error is not None,
                "actor_id": actor.actor_id,
            },
        )
        return result

    def _build_result(
        self, ids: list[UUID], update: BulkUpdate, batch_id: str | None
    ) -> BulkResult:
        transitioned = [r.request_id for r in update.updated]
        outcomes = dict.fromkeys(ids, BulkItemOutcome.SKIPPED)
        outcomes.update(dict.fromkeys(update.lost, BulkItemOutcome.CONFLICT))
        outcomes.update(dict.fromkeys(transitioned, BulkItemOutcome.TRANSITIONED))

        if self._settings.bulk_failure_policy is BulkFailurePolicy.FAIL_FAST:
            success = not update.lost
        else:
            success = True

        return BulkResult(
            success=success,
            batch_id=batch_id,
            transitioned=transitioned,
            skipped=list(update.skipped),
            outcomes=outcomes,
            error=update.history_error,
        )
