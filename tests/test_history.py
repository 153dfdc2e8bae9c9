"""Tests for the status history recorder."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from carddelivery.db.models.base import ActorType, DeliveryState, FailureReason
from carddelivery.services.history import StatusHistoryRecorder
from carddelivery.services.records import NewStatusHistoryEntry, StatusHistoryEntry
from tests.factories import BASE_TIME, COURIER, RESIDENT, STAFF


@pytest.fixture
def recorder(gateway) -> StatusHistoryRecorder:
    return StatusHistoryRecorder(gateway)


def make_entry(request_id, previous_state, new_state, reason=None, offset_seconds=0):
    return StatusHistoryEntry(
        entry_id=uuid4(),
        request_id=request_id,
        previous_state=previous_state,
        new_state=new_state,
        actor_type=ActorType.STAFF,
        actor_id="staff-1",
        created_at=BASE_TIME + timedelta(seconds=offset_seconds),
        reason=reason,
    )


class TestRecord:
    """Tests for appending entries."""

    async def test_record_stores_actor_and_reason(self, recorder, gateway):
        request_id = uuid4()

        entry = await recorder.record(
            request_id,
            DeliveryState.OUT_FOR_DELIVERY,
            DeliveryState.DELIVERY_FAILED,
            COURIER,
            reason="not_home",
        )

        assert entry.request_id == request_id
        assert entry.actor_type == ActorType.STAFF
        assert entry.actor_id == COURIER.actor_id
        assert entry.actor_name == COURIER.name
        assert entry.reason == "not_home"
        assert entry.batch_id is None
        assert gateway.calls["insert_history"] == 1

    async def test_record_creation_entry(self, recorder):
        entry = await recorder.record(uuid4(), None, DeliveryState.REQUESTED, RESIDENT)

        assert entry.previous_state is None
        assert entry.actor_type == ActorType.RESIDENT

    async def test_record_many(self, recorder, gateway):
        ids = [uuid4(), uuid4()]

        entries = await recorder.record_many(
            [
                NewStatusHistoryEntry(
                    request_id=request_id,
                    previous_state=DeliveryState.REQUESTED,
                    new_state=DeliveryState.PRINTING,
                    actor=STAFF,
                    batch_id="BATCH-1",
                )
                for request_id in ids
            ]
        )

        assert [e.request_id for e in entries] == ids
        assert {e.batch_id for e in entries} == {"BATCH-1"}
        assert gateway.calls["insert_history_many"] == 1

    async def test_record_many_empty_skips_store(self, recorder, gateway):
        assert await recorder.record_many([]) == []
        assert gateway.calls["insert_history_many"] == 0


class TestHistory:
    """Tests for reading the timeline."""

    async def test_history_oldest_first(self):
        request_id = uuid4()
        later = make_entry(request_id, DeliveryState.REQUESTED, DeliveryState.PRINTING, None, 10)
        earlier = make_entry(request_id, None, DeliveryState.REQUESTED, None, 0)
        gateway = AsyncMock()
        gateway.select_history.return_value = [later, earlier]

        history = await StatusHistoryRecorder(gateway).history(request_id)

        assert history == [earlier, later]
        gateway.select_history.assert_awaited_once_with(request_id)

    async def test_history_keeps_store_order_on_ties(self):
        request_id = uuid4()
        first = make_entry(request_id, None, DeliveryState.REQUESTED)
        second = make_entry(request_id, DeliveryState.REQUESTED, DeliveryState.PRINTING)
        gateway = AsyncMock()
        gateway.select_history.return_value = [first, second]

        assert await StatusHistoryRecorder(gateway).history(request_id) == [first, second]

    async def test_history_filters_by_request(self, recorder):
        mine, other = uuid4(), uuid4()
        await recorder.record(mine, None, DeliveryState.REQUESTED, RESIDENT)
        await recorder.record(other, None, DeliveryState.REQUESTED, RESIDENT)

        history = await recorder.history(mine)

        assert [e.request_id for e in history] == [mine]


class TestFailureReasons:
    """Tests for reconstructing the sequence of failed attempts."""

    async def test_reasons_in_order(self, recorder):
        request_id = uuid4()
        ofd = DeliveryState.OUT_FOR_DELIVERY
        await recorder.record(request_id, ofd, DeliveryState.DELIVERY_FAILED, COURIER, "not_home")
        await recorder.record(
            request_id, DeliveryState.DELIVERY_FAILED, DeliveryState.PRINTED, RESIDENT
        )
        await recorder.record(
            request_id, ofd, DeliveryState.PICKUP_REQUIRED, COURIER, "refused: Declined at door"
        )

        reasons = await recorder.failure_reasons(request_id)

        assert reasons == [FailureReason.NOT_HOME, FailureReason.REFUSED]

    async def test_unrecognized_reason(self, recorder):
        request_id = uuid4()
        await recorder.record(
            request_id,
            DeliveryState.OUT_FOR_DELIVERY,
            DeliveryState.DELIVERY_FAILED,
            COURIER,
            "legacy free text",
        )

        assert await recorder.failure_reasons(request_id) == [None]

    async def test_no_failures(self, recorder):
        request_id = uuid4()
        await recorder.record(request_id, None, DeliveryState.REQUESTED, RESIDENT)

        assert await recorder.failure_reasons(request_id) == []
