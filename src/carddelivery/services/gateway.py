"""Persistence gateway port for delivery requests and their history.

The lifecycle services program against DeliveryGateway; adapters are chosen
by whoever builds the repository. Two adapters exist:
- InMemoryDeliveryGateway (this module): for tests and local development,
  with failure and latency injection
- SqlAlchemyDeliveryGateway (sql_gateway): PostgreSQL through async SQLAlchemy

Every method is a suspension point and may raise any exception on storage
failure; the repository converts those into TransientStorageError.
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
from abc import ABC, abstractmethod
from collections import Counter
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from carddelivery.services.records import (
    DeliveryRequest,
    NewDeliveryRequest,
    NewStatusHistoryEntry,
    StatusHistoryEntry,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from carddelivery.db.models.base import DeliveryState


class DeliveryGateway(ABC):
    """Abstract interface for delivery request storage."""

    @abstractmethod
    async def insert_request(self, data: NewDeliveryRequest) -> DeliveryRequest:
        """Insert a new request in state REQUESTED.

        Returns:
            The stored record with its assigned id, timestamps and version 1.
        """
        ...

    @abstractmethod
    async def get_request(self, request_id: UUID) -> DeliveryRequest | None:
        """Read one request straight from the store."""
        ...

    @abstractmethod
    async def update_request(
        self,
        request_id: UUID,
        updates: dict[str, Any],
        *,
        expected_version: int,
    ) -> DeliveryRequest | None:
        """Apply ``updates`` only if the stored version still matches.

        Returns:
            The updated record (version incremented), or None when the row is
            missing or its version moved on (lost race).
        """
        ...

    @abstractmethod
    async def update_requests(
        self,
        request_ids: Sequence[UUID],
        updates: dict[str, Any],
        *,
        expected_state: DeliveryState,
    ) -> list[DeliveryRequest]:
        """Apply ``updates`` to every listed row still in ``expected_state``.

        Returns:
            The records that were actually updated.
        """
        ...

    @abstractmethod
    async def select_requests(
        self,
        *,
        limit: int,
        owner_id: str | None = None,
        service_area_code: str | None = None,
        state: DeliveryState | None = None,
        card_id: str | None = None,
        before: datetime | None = None,
    ) -> list[DeliveryRequest]:
        """Select requests matching every given filter, newest first.

        Args:
            limit: Maximum rows to return.
            before: Only rows created strictly before this time (page cursor).
        """
        ...

    @abstractmethod
    async def insert_history(self, entry: NewStatusHistoryEntry) -> StatusHistoryEntry:
        """Append one history entry."""
        ...

    @abstractmethod
    async def insert_history_many(
        self, entries: Sequence[NewStatusHistoryEntry]
    ) -> list[StatusHistoryEntry]:
        """Append several history entries in one call."""
        ...

    @abstractmethod
    async def select_history(self, request_id: UUID) -> list[StatusHistoryEntry]:
        """History of one request, oldest first."""
        ...


class GatewayUnavailableError(Exception):
    """Injected storage failure raised by the in-memory gateway."""


class InMemoryDeliveryGateway(DeliveryGateway):
    """Dict-backed gateway for testing and development.

    Succeeds by default. ``configure`` makes chosen operations fail or stall,
    and ``calls`` counts every operation so tests can assert that nothing
    reached storage.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._requests: dict[UUID, DeliveryRequest] = {}
        self._history: list[StatusHistoryEntry] = []
        # Tie-breaker so rows created in the same instant keep insertion order
        self._sequence: dict[UUID, int] = {}
        self._counter = itertools.count()
        self.calls: Counter[str] = Counter()
        self.failing_operations: set[str] = set()
        self.failure_message = "Storage unavailable"
        self.delay_seconds = 0.0

    def configure(
        self,
        *,
        fail_on: Iterable[str] = (),
        failure_message: str = "Storage unavailable",
        delay_seconds: float = 0.0,
    ) -> None:
        """Configure the fake gateway behavior for testing.

        Args:
            fail_on: Operation names (method names) that should raise.
            failure_message: Message of the raised GatewayUnavailableError.
            delay_seconds: Sleep before every operation, to exercise timeouts.
        """
        self.failing_operations = set(fail_on)
        self.failure_message = failure_message
        self.delay_seconds = delay_seconds

    def seed(self, request: DeliveryRequest) -> DeliveryRequest:
        """Store ``request`` as-is, bypassing the lifecycle (test setup only)."""
        self._requests[request.request_id] = request
        self._sequence.setdefault(request.request_id, next(self._counter))
        return request

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if operation in self.failing_operations:
            raise GatewayUnavailableError(self.failure_message)

    def _sort_key(self, request: DeliveryRequest) -> tuple[datetime, int]:
        return request.created_at, self._sequence[request.request_id]

    async def insert_request(self, data: NewDeliveryRequest) -> DeliveryRequest:
        await self._enter("insert_request")
        now = self._clock()
        fields = {f.name: getattr(data, f.name) for f in dataclasses.fields(data)}
        request = DeliveryRequest(request_id=uuid4(), created_at=now, updated_at=now, **fields)
        return self.seed(request)

    async def get_request(self, request_id: UUID) -> DeliveryRequest | None:
        await self._enter("get_request")
        return self._requests.get(request_id)

    async def update_request(
        self,
        request_id: UUID,
        updates: dict[str, Any],
        *,
        expected_version: int,
    ) -> DeliveryRequest | None:
        await self._enter("update_request")
        current = self._requests.get(request_id)
        if current is None or current.version != expected_version:
            return None
        updated = current.with_updates({**updates, "version": current.version + 1})
        self._requests[request_id] = updated
        return updated

    async def update_requests(
        self,
        request_ids: Sequence[UUID],
        updates: dict[str, Any],
        *,
        expected_state: DeliveryState,
    ) -> list[DeliveryRequest]:
        await self._enter("update_requests")
        updated = []
        for request_id in dict.fromkeys(request_ids):
            current = self._requests.get(request_id)
            if current is None or current.state is not expected_state:
                continue
            record = current.with_updates({**updates, "version": current.version + 1})
            self._requests[request_id] = record
            updated.append(record)
        return updated

    async def select_requests(
        self,
        *,
        limit: int,
        owner_id: str | None = None,
        service_area_code: str | None = None,
        state: DeliveryState | None = None,
        card_id: str | None = None,
        before: datetime | None = None,
    ) -> list[DeliveryRequest]:
        await self._enter("select_requests")
        rows = [
            r
            for r in self._requests.values()
            if (owner_id is None or r.owner_id == owner_id)
            and (service_area_code is None or r.service_area_code == service_area_code)
            and (state is None or r.state is state)
            and (card_id is None or r.card_id == card_id)
            and (before is None or r.created_at < before)
        ]
        rows.sort(key=self._sort_key, reverse=True)
        return rows[:limit]

    async def insert_history(self, entry: NewStatusHistoryEntry) -> StatusHistoryEntry:
        await self._enter("insert_history")
        return self._append_history(entry)

    async def insert_history_many(
        self, entries: Sequence[NewStatusHistoryEntry]
    ) -> list[StatusHistoryEntry]:
        await self._enter("insert_history_many")
        return [self._append_history(entry) for entry in entries]

    async def select_history(self, request_id: UUID) -> list[StatusHistoryEntry]:
        await self._enter("select_history")
        return [e for e in self._history if e.request_id == request_id]

    def _append_history(self, entry: NewStatusHistoryEntry) -> StatusHistoryEntry:
        stored = StatusHistoryEntry(
            entry_id=uuid4(),
            request_id=entry.request_id,
            previous_state=entry.previous_state,
            new_state=entry.new_state,
            actor_type=entry.actor.actor_type,
            actor_id=entry.actor.actor_id,
            actor_name=entry.actor.name,
            reason=entry.reason,
            batch_id=entry.batch_id,
            created_at=self._clock(),
        )
        self._history.append(stored)
        return stored
