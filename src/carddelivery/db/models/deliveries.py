"""Delivery request and status history tables."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import date  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Date, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from carddelivery.db.models.base import (
    ActorType,
    Base,
    DeliveryState,
    DeliveryType,
    FailureReason,
    OptionalTimestampTZ,
    ShortString,
    TimeSlot,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)


class DeliveryRequestRow(Base):
    """One physical ID card delivery job.

    Rows are never deleted; delivered requests stay as a historical record.
    """

    __tablename__ = "delivery_requests"

    request_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    card_id: Mapped[ShortString]
    owner_id: Mapped[ShortString]
    service_area_code: Mapped[str] = mapped_column(String(50), nullable=False)

    delivery_type: Mapped[DeliveryType] = mapped_column(
        Enum(
            DeliveryType,
            name="delivery_type",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=DeliveryType.DELIVERY,
    )

    # Destination (nullable for pickup requests)
    region: Mapped[str | None] = mapped_column(String(255), nullable=True)
    region_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    city: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    area: Mapped[str | None] = mapped_column(String(255), nullable=True)
    area_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    street: Mapped[str | None] = mapped_column(String(500), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    landmark: Mapped[str | None] = mapped_column(String(500), nullable=True)

    preferred_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    preferred_time_slot: Mapped[TimeSlot | None] = mapped_column(
        Enum(
            TimeSlot,
            name="time_slot",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    state: Mapped[DeliveryState] = mapped_column(
        Enum(
            DeliveryState,
            name="delivery_state",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=DeliveryState.REQUESTED,
    )
    failure_reason: Mapped[FailureReason | None] = mapped_column(
        Enum(
            FailureReason,
            name="failure_reason",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=True,
    )
    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_photo_ref: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    # Set together, once, on resident-confirmed delivery
    delivery_confirmed_at: Mapped[OptionalTimestampTZ]
    delivery_photo_proof: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    delivery_signature: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    assigned_staff_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    assigned_staff_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    print_batch_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Key lifecycle timestamps
    sent_to_print_at: Mapped[OptionalTimestampTZ]
    printed_at: Mapped[OptionalTimestampTZ]
    out_for_delivery_at: Mapped[OptionalTimestampTZ]
    delivered_at: Mapped[OptionalTimestampTZ]

    # Optimistic concurrency token, bumped on every update
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    history: Mapped[list[StatusHistoryRow]] = relationship(
        "StatusHistoryRow",
        back_populates="request",
        order_by="StatusHistoryRow.created_at",
    )

    __table_args__ = (
        Index("ix_delivery_requests_card_id", "card_id"),
        Index("ix_delivery_requests_owner_id", "owner_id"),
        Index("ix_delivery_requests_service_area_code", "service_area_code"),
        Index("ix_delivery_requests_state", "state"),
        Index("ix_delivery_requests_created_at", "created_at"),
        Index("ix_delivery_requests_print_batch_id", "print_batch_id"),
    )


class StatusHistoryRow(Base):
    """Append-only record of one state change."""

    __tablename__ = "delivery_status_history"

    entry_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("delivery_requests.request_id", ondelete="RESTRICT"),
        nullable=False,
    )

    # NULL for the creation entry
    previous_state: Mapped[DeliveryState | None] = mapped_column(
        Enum(
            DeliveryState,
            name="delivery_state",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=True,
    )
    new_state: Mapped[DeliveryState] = mapped_column(
        Enum(
            DeliveryState,
            name="delivery_state",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )

    actor_type: Mapped[ActorType] = mapped_column(
        Enum(
            ActorType,
            name="actor_type",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )
    actor_id: Mapped[ShortString]
    actor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    request: Mapped[DeliveryRequestRow] = relationship(
        "DeliveryRequestRow",
        back_populates="history",
    )

    __table_args__ = (
        Index("ix_delivery_status_history_request_id", "request_id"),
        Index("ix_delivery_status_history_created_at", "created_at"),
    )
