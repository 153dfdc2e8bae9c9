"""Test data factories for card delivery.

This module provides factory functions for creating test data.
Use these to build consistent, valid test objects without duplicating
data structures across tests.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, date, datetime, timedelta
from uuid import uuid4

from carddelivery.db.models.base import DeliveryState, DeliveryType, FailureReason, TimeSlot
from carddelivery.services.records import (
    Actor,
    DeliveryAddress,
    DeliveryRequest,
    NewDeliveryRequest,
)

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

STAFF = Actor.staff("staff-1", name="Print Desk")
COURIER = Actor.staff("courier-7", name="Courier Seven")
RESIDENT = Actor.resident("resident-42", name="Resident")


class TickingClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime = BASE_TIME, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current


def create_address(**overrides) -> DeliveryAddress:
    """Create a complete delivery address.

    Args:
        **overrides: Field values replacing the defaults.

    Returns:
        DeliveryAddress with every required field filled.
    """
    address = DeliveryAddress(
        region="Central",
        region_code="CEN",
        city="Riverside",
        city_code="RIV",
        area="Old Town",
        area_code="OT",
        street="12 Mill Lane",
        postal_code="10115",
        landmark="Opposite the library",
    )
    return replace(address, **overrides)


def create_new_request(
    card_id: str | None = None,
    owner_id: str = "resident-42",
    service_area_code: str = "SA-01",
    delivery_type: DeliveryType = DeliveryType.DELIVERY,
    address: DeliveryAddress | None = None,
    **overrides,
) -> NewDeliveryRequest:
    """Create caller data for a new delivery request.

    Courier deliveries get a complete address unless one is given; pickups
    get none.
    """
    if address is None and delivery_type is DeliveryType.DELIVERY:
        address = create_address()
    return NewDeliveryRequest(
        card_id=card_id or f"CARD-{uuid4().hex[:8]}",
        owner_id=owner_id,
        service_area_code=service_area_code,
        delivery_type=delivery_type,
        address=address,
        preferred_date=overrides.pop("preferred_date", date(2026, 3, 10)),
        preferred_time_slot=overrides.pop("preferred_time_slot", TimeSlot.MORNING),
        **overrides,
    )


def create_request(
    state: DeliveryState = DeliveryState.REQUESTED,
    failure_reason: FailureReason | None = None,
    failed_attempts: int = 0,
    created_at: datetime | None = None,
    **overrides,
) -> DeliveryRequest:
    """Create a stored delivery request record in any state.

    Args:
        state: Lifecycle state.
        failure_reason: Latest failure reason.
        failed_attempts: Failed attempts so far.
        created_at: Creation time. Defaults to BASE_TIME.
        **overrides: Any other DeliveryRequest field.

    Returns:
        DeliveryRequest ready to seed into a gateway.
    """
    created_at = created_at or BASE_TIME
    fields = {
        "request_id": uuid4(),
        "card_id": f"CARD-{uuid4().hex[:8]}",
        "owner_id": "resident-42",
        "service_area_code": "SA-01",
        "created_at": created_at,
        "updated_at": created_at,
        "address": create_address(),
        "preferred_date": date(2026, 3, 10),
        "preferred_time_slot": TimeSlot.MORNING,
        "state": state,
        "failure_reason": failure_reason,
        "failed_attempts": failed_attempts,
    }
    fields.update(overrides)
    return DeliveryRequest(**fields)
