"""Base model definitions, mixins, and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common annotated column types for timestamps and UUIDs
- Enum types shared by the ORM models and the lifecycle services
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key with server-side default generation
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values (lowercase) rather than member names."""
    return [member.value for member in enum_cls]


ShortString = Annotated[str, mapped_column(String(100))]


class Base(DeclarativeBase):
    """Declarative base for all card delivery models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class DeliveryState(enum.Enum):
    """ID card delivery lifecycle states.

    States:
        REQUESTED: Resident asked for the card, nothing printed yet
        PRINTING: Sent to the print queue (possibly as part of a batch)
        PRINTED: Card printed, waiting for dispatch
        OUT_FOR_DELIVERY: Courier has the card
        DELIVERED: Card handed to the resident (terminal)
        DELIVERY_FAILED: Courier could not deliver, redelivery possible
        PICKUP_REQUIRED: Too many failures, resident must pick up at the office
    """

    REQUESTED = "requested"
    PRINTING = "printing"
    PRINTED = "printed"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    PICKUP_REQUIRED = "pickup_required"


class FailureReason(enum.Enum):
    """Why a delivery attempt failed."""

    NOT_HOME = "not_home"
    WRONG_ADDRESS = "wrong_address"
    REFUSED = "refused"


class TimeSlot(enum.Enum):
    """Preferred delivery window."""

    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"


class DeliveryType(enum.Enum):
    """Courier delivery to an address, or pickup at the office."""

    DELIVERY = "delivery"
    PICKUP = "pickup"


class ActorType(enum.Enum):
    """Type of actor performing an action.

    Values:
        RESIDENT: The card owner
        STAFF: Back-office staff member
        SYSTEM: Automated action
    """

    RESIDENT = "resident"
    STAFF = "staff"
    SYSTEM = "system"
