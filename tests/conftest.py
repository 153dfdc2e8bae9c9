"""Pytest configuration and shared fixtures.

Unit tests run against InMemoryDeliveryGateway with a deterministic clock;
the SQL gateway tests mock the async session. No database is needed.
"""

from __future__ import annotations

import pytest

from carddelivery.core.config import DeliverySettings
from carddelivery.services.bulk import BulkPrintService
from carddelivery.services.gateway import InMemoryDeliveryGateway
from carddelivery.services.repository import DeliveryRequestRepository
from tests.factories import TickingClock


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def delivery_settings() -> DeliverySettings:
    """Delivery settings with the standard defaults, independent of the environment."""
    return DeliverySettings(
        page_size=100,
        load_timeout_seconds=5.0,
        max_failed_attempts=2,
        conflict_retry_attempts=3,
    )


@pytest.fixture
def gateway(clock: TickingClock) -> InMemoryDeliveryGateway:
    return InMemoryDeliveryGateway(clock=clock)


@pytest.fixture
def repository(
    gateway: InMemoryDeliveryGateway,
    delivery_settings: DeliverySettings,
    clock: TickingClock,
) -> DeliveryRequestRepository:
    return DeliveryRequestRepository(gateway, settings=delivery_settings, clock=clock)


@pytest.fixture
def bulk_service(
    repository: DeliveryRequestRepository, clock: TickingClock
) -> BulkPrintService:
    return BulkPrintService(repository, clock=clock)


@pytest.fixture
def seed(gateway: InMemoryDeliveryGateway, repository: DeliveryRequestRepository):
    """Seed records into the gateway and load them into the repository view."""

    async def _seed(*requests):
        for request in requests:
            gateway.seed(request)
        await repository.load()
        gateway.calls.clear()
        return requests

    return _seed
