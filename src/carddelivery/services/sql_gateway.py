"""PostgreSQL persistence gateway for delivery requests.

Each gateway call runs in its own session and transaction, so a call either
commits completely or not at all. Conditional updates are single
``UPDATE ... WHERE ... RETURNING`` statements; the database decides who wins
a race, not the caller.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import insert, select, update

from carddelivery.db.models import DeliveryRequestRow, DeliveryState, StatusHistoryRow
from carddelivery.services.gateway import DeliveryGateway
from carddelivery.services.records import (
    DeliveryAddress,
    DeliveryRequest,
    StatusHistoryEntry,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from carddelivery.services.records import NewDeliveryRequest, NewStatusHistoryEntry

logger = logging.getLogger(__name__)

ADDRESS_COLUMNS = (
    "region",
    "region_code",
    "city",
    "city_code",
    "area",
    "area_code",
    "street",
    "postal_code",
    "landmark",
)

# Record fields stored in a column of the same name
_PLAIN_COLUMNS = (
    "card_id",
    "owner_id",
    "service_area_code",
    "delivery_type",
    "preferred_date",
    "preferred_time_slot",
    "notes",
    "state",
    "failure_reason",
    "failed_attempts",
    "updated_photo_ref",
    "delivery_confirmed_at",
    "delivery_photo_proof",
    "delivery_signature",
    "assigned_staff_id",
    "assigned_staff_name",
    "print_batch_id",
    "updated_at",
    "sent_to_print_at",
    "printed_at",
    "out_for_delivery_at",
    "delivered_at",
    "version",
)


def row_to_request(row: DeliveryRequestRow) -> DeliveryRequest:
    """Map an ORM row to an immutable record."""
    address = None
    if any(getattr(row, name) is not None for name in ADDRESS_COLUMNS):
        address = DeliveryAddress(
            **{name: getattr(row, name) or "" for name in ("region", "city", "area", "street")},
            region_code=row.region_code,
            city_code=row.city_code,
            area_code=row.area_code,
            postal_code=row.postal_code,
            landmark=row.landmark,
        )
    return DeliveryRequest(
        request_id=row.request_id,
        created_at=row.created_at,
        address=address,
        **{name: getattr(row, name) for name in _PLAIN_COLUMNS},
    )


def row_to_history(row: StatusHistoryRow) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        entry_id=row.entry_id,
        request_id=row.request_id,
        previous_state=row.previous_state,
        new_state=row.new_state,
        actor_type=row.actor_type,
        actor_id=row.actor_id,
        actor_name=row.actor_name,
        reason=row.reason,
        batch_id=row.batch_id,
        created_at=row.created_at,
    )


def flatten_address(address: DeliveryAddress | None) -> dict[str, Any]:
    """Address columns for ``address`` (all NULL when there is none)."""
    return {name: getattr(address, name) if address else None for name in ADDRESS_COLUMNS}


def to_column_values(updates: dict[str, Any]) -> dict[str, Any]:
    """Translate record field updates into column values."""
    values = dict(updates)
    if "address" in values:
        values.update(flatten_address(values.pop("address")))
    return values


def history_values(entry: NewStatusHistoryEntry) -> dict[str, Any]:
    actor = entry.actor
    return {
        "request_id": entry.request_id,
        "previous_state": entry.previous_state,
        "new_state": entry.new_state,
        "actor_type": actor.actor_type,
        "actor_id": actor.actor_id,
        "actor_name": actor.name,
        "reason": entry.reason,
        "batch_id": entry.batch_id,
    }


class SqlAlchemyDeliveryGateway(DeliveryGateway):
    """Delivery gateway backed by PostgreSQL through async SQLAlchemy.

    Example:
        engine = create_engine(settings.database)
        gateway = SqlAlchemyDeliveryGateway(create_session_factory(engine))
        repository = DeliveryRequestRepository(gateway, settings=settings.delivery)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the gateway.

        Args:
            session_factory: Factory producing sessions bound to the engine.
        """
        self._session_factory = session_factory

    async def insert_request(self, data: NewDeliveryRequest) -> DeliveryRequest:
        row = DeliveryRequestRow(
            card_id=data.card_id,
            owner_id=data.owner_id,
            service_area_code=data.service_area_code,
            delivery_type=data.delivery_type,
            preferred_date=data.preferred_date,
            preferred_time_slot=data.preferred_time_slot,
            notes=data.notes,
            updated_photo_ref=data.updated_photo_ref,
            state=DeliveryState.REQUESTED,
            failed_attempts=0,
            version=1,
            **flatten_address(data.address),
        )
        async with self._session_factory() as session, session.begin():
            session.add(row)
            await session.flush()
            # Load server defaults (id, timestamps) before the session closes
            await session.refresh(row)
        logger.debug("Inserted delivery request", extra={"request_id": str(row.request_id)})
        return row_to_request(row)

    async def get_request(self, request_id: UUID) -> DeliveryRequest | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeliveryRequestRow).where(DeliveryRequestRow.request_id == request_id)
            )
            row = result.scalar_one_or_none()
        return row_to_request(row) if row is not None else None

    async def update_request(
        self,
        request_id: UUID,
        updates: dict[str, Any],
        *,
        expected_version: int,
    ) -> DeliveryRequest | None:
        stmt = (
            update(DeliveryRequestRow)
            .where(
                DeliveryRequestRow.request_id == request_id,
                DeliveryRequestRow.version == expected_version,
            )
            .values(**to_column_values(updates), version=DeliveryRequestRow.version + 1)
            .returning(DeliveryRequestRow)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
        if row is None:
            logger.debug(
                "Conditional update matched no row",
                extra={"request_id": str(request_id), "expected_version": expected_version},
            )
            return None
        return row_to_request(row)

    async def update_requests(
        self,
        request_ids: Sequence[UUID],
        updates: dict[str, Any],
        *,
        expected_state: DeliveryState,
    ) -> list[DeliveryRequest]:
        if not request_ids:
            return []
        stmt = (
            update(DeliveryRequestRow)
            .where(
                DeliveryRequestRow.request_id.in_(list(request_ids)),
                DeliveryRequestRow.state == expected_state,
            )
            .values(**to_column_values(updates), version=DeliveryRequestRow.version + 1)
            .returning(DeliveryRequestRow)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            rows = list(result.scalars().all())
        return [row_to_request(row) for row in rows]

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
        stmt = select(DeliveryRequestRow)
        if owner_id is not None:
            stmt = stmt.where(DeliveryRequestRow.owner_id == owner_id)
        if service_area_code is not None:
            stmt = stmt.where(DeliveryRequestRow.service_area_code == service_area_code)
        if state is not None:
            stmt = stmt.where(DeliveryRequestRow.state == state)
        if card_id is not None:
            stmt = stmt.where(DeliveryRequestRow.card_id == card_id)
        if before is not None:
            stmt = stmt.where(DeliveryRequestRow.created_at < before)
        stmt = stmt.order_by(DeliveryRequestRow.created_at.desc()).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = list(result.scalars().all())
        return [row_to_request(row) for row in rows]

    async def insert_history(self, entry: NewStatusHistoryEntry) -> StatusHistoryEntry:
        (stored,) = await self.insert_history_many([entry])
        return stored

    async def insert_history_many(
        self, entries: Sequence[NewStatusHistoryEntry]
    ) -> list[StatusHistoryEntry]:
        if not entries:
            return []
        stmt = (
            insert(StatusHistoryRow)
            .values([history_values(entry) for entry in entries])
            .returning(StatusHistoryRow)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            rows = list(result.scalars().all())
        return [row_to_history(row) for row in rows]

    async def select_history(self, request_id: UUID) -> list[StatusHistoryEntry]:
        stmt = (
            select(StatusHistoryRow)
            .where(StatusHistoryRow.request_id == request_id)
            .order_by(StatusHistoryRow.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = list(result.scalars().all())
        return [row_to_history(row) for row in rows]
