import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from crm_delivery.models_sqlalchemy.models import DeliveryStatus
from crm_delivery.services.delivery import SyncAlreadyRunningError, build_delivery_container
from crm_delivery.workers.delivery_sync_worker import _is_due, run_due_agency_syncs_once
from crm_delivery.services.delivery.types import AgencyConfig

from conftest import FAKE_AGENCY_ID


@pytest.fixture()
def sync(container):
    return container.sync_service


@pytest.mark.asyncio
async def test_second_sync_is_rejected_while_one_runs(sync, add_agency, add_order, add_shipment, fake_courier):
    add_agency()
    add_shipment(add_order())
    fake_courier.current_status = DeliveryStatus.DEPOSIT
    fake_courier.track_gate = asyncio.Event()
    fake_courier.track_started = asyncio.Event()

    first = asyncio.create_task(sync.sync_all_shipments())
    await fake_courier.track_started.wait()

    assert sync.is_running
    assert sync.get_status()["currentRun"] == "all"
    with pytest.raises(SyncAlreadyRunningError):
        await sync.sync_all_shipments()

    fake_courier.track_gate.set()
    result = await first

    assert result.processed == 1
    assert result.updated == 1
    assert not sync.is_running
    assert len(fake_courier.track_calls) == 1


@pytest.mark.asyncio
async def test_sync_counts_updates_and_errors(sync, add_agency, add_order, add_shipment, fake_courier):
    add_agency()
    add_shipment(add_order(), tracking_number="TRK-A")
    add_shipment(add_order(), tracking_number="TRK-B")
    add_shipment(add_order(), tracking_number="TRK-C")
    fake_courier.current_status = DeliveryStatus.IN_TRANSIT
    fake_courier.failing_tracking_numbers.add("TRK-B")

    result = await sync.sync_all_shipments()

    assert result.processed == 3
    assert result.updated == 2
    assert result.errors == 1
    assert [f.tracking_number for f in result.failures] == ["TRK-B"]
    assert result.failures[0].error_kind == "timeout"
    assert {d.tracking_number for d in result.details} == {"TRK-A", "TRK-C"}
    assert all(d.old_status == "UPLOADED" and d.new_status == "IN_TRANSIT" for d in result.details)
    assert sync.get_status()["lastResult"]["processed"] == 3


@pytest.mark.asyncio
async def test_unexpected_exception_counts_as_error(sync, add_agency, add_order, add_shipment, fake_courier):
    add_agency()
    add_shipment(add_order(), tracking_number="TRK-A")
    add_shipment(add_order(), tracking_number="TRK-B")

    async def explode(tracking_number, credentials):
        raise RuntimeError("adapter bug")

    fake_courier.track_order = explode

    result = await sync.sync_all_shipments()

    assert result.processed == 2
    assert result.errors == 2
    assert "adapter bug" in result.failures[0].error
    assert not sync.is_running


@pytest.mark.asyncio
async def test_oldest_shipments_are_polled_first(sync, add_agency, add_order, add_shipment, fake_courier):
    add_agency()
    add_shipment(add_order(), tracking_number="RECENT", age_hours=1)
    add_shipment(add_order(), tracking_number="OLDEST", age_hours=5)
    add_shipment(add_order(), tracking_number="MIDDLE", age_hours=3)
    fake_courier.current_status = DeliveryStatus.UPLOADED

    await sync.sync_all_shipments()

    assert fake_courier.track_calls == ["OLDEST", "MIDDLE", "RECENT"]


@pytest.mark.asyncio
async def test_only_active_shipments_are_polled(sync, add_agency, add_order, add_shipment, fake_courier):
    add_agency()
    add_shipment(add_order(), tracking_number="ACTIVE", status=DeliveryStatus.DEPOSIT)
    add_shipment(add_order(), tracking_number="DONE", status=DeliveryStatus.DELIVERED)
    add_shipment(add_order(), tracking_number="BACK", status=DeliveryStatus.RETURNED)
    fake_courier.current_status = DeliveryStatus.DEPOSIT

    result = await sync.sync_all_shipments()

    assert fake_courier.track_calls == ["ACTIVE"]
    assert result.processed == 1
    assert result.updated == 0


@pytest.mark.asyncio
async def test_calls_are_spaced_by_the_configured_delay(session_factory, add_agency, add_order, add_shipment, fake_courier):
    sleeps = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    container = build_delivery_container(
        session_factory,
        adapters_factory=lambda: [fake_courier],
        sleep=record_sleep,
        delay_seconds=0.5,
    )
    add_agency()
    for _ in range(3):
        add_shipment(add_order())
    fake_courier.current_status = DeliveryStatus.UPLOADED

    await container.sync_service.sync_all_shipments()

    assert sleeps == [0.5, 0.5]


@pytest.mark.asyncio
async def test_cancel_stops_after_current_shipment(sync, add_agency, add_order, add_shipment, fake_courier):
    add_agency()
    for _ in range(3):
        add_shipment(add_order())
    fake_courier.current_status = DeliveryStatus.UPLOADED
    fake_courier.track_gate = asyncio.Event()
    fake_courier.track_started = asyncio.Event()

    task = asyncio.create_task(sync.sync_all_shipments())
    await fake_courier.track_started.wait()
    assert sync.cancel() is True
    fake_courier.track_gate.set()
    result = await task

    assert result.cancelled
    assert result.processed == 1
    assert not sync.is_running
    assert sync.cancel() is False


@pytest.mark.asyncio
async def test_sync_by_status(sync, add_agency, add_order, add_shipment, fake_courier):
    add_agency()
    add_shipment(add_order(), tracking_number="UP", status=DeliveryStatus.UPLOADED)
    add_shipment(add_order(), tracking_number="TRANSIT", status=DeliveryStatus.IN_TRANSIT)
    fake_courier.current_status = DeliveryStatus.IN_TRANSIT

    result = await sync.sync_shipments_by_status(DeliveryStatus.UPLOADED)

    assert fake_courier.track_calls == ["UP"]
    assert result.updated == 1


@pytest.mark.asyncio
async def test_sync_by_status_rejects_final_statuses(sync):
    with pytest.raises(ValueError):
        await sync.sync_shipments_by_status(DeliveryStatus.DELIVERED)
    assert not sync.is_running


@pytest.mark.asyncio
async def test_sync_by_agency_records_last_sync(container, sync, add_agency, add_order, add_shipment, fake_courier):
    add_agency()
    add_shipment(add_order(), tracking_number="MINE")
    add_shipment(add_order(), tracking_number="OTHER", agency_id="other-courier")
    fake_courier.current_status = DeliveryStatus.UPLOADED

    await sync.sync_shipments_by_agency(FAKE_AGENCY_ID)

    assert fake_courier.track_calls == ["MINE"]
    assert container.registry.get_agency_config(FAKE_AGENCY_ID).last_sync is not None


def test_stale_shipments(sync, add_agency, add_order, add_shipment):
    add_agency()
    add_shipment(add_order(), tracking_number="FRESH", age_hours=0)
    add_shipment(add_order(), tracking_number="STUCK", age_hours=5)
    add_shipment(add_order(), tracking_number="DELIVERED", status=DeliveryStatus.DELIVERED, age_hours=48)

    assert [s["trackingNumber"] for s in sync.get_stale_shipments(2)] == ["STUCK"]
    assert sync.get_stale_shipments(6) == []


@pytest.mark.asyncio
async def test_single_shipment_sync(sync, add_agency, add_order, add_shipment, fake_courier):
    add_agency()
    shipment_id = add_shipment(add_order())
    fake_courier.current_status = DeliveryStatus.DELIVERED

    result = await sync.sync_single_shipment(shipment_id)

    assert result.status_changed
    assert result.status.status == DeliveryStatus.DELIVERED


@pytest.mark.parametrize(
    "last_sync, minutes_later, expected",
    [
        (None, 0, True),
        (datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc), 10, False),
        (datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc), 30, True),
        (datetime(2025, 3, 1, 10, 0), 45, True),
    ],
)
def test_agency_is_due_after_polling_interval(last_sync, minutes_later, expected):
    config = AgencyConfig(id="x", name="X", enabled=True, polling_interval=30, last_sync=last_sync)
    now = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes_later)
    assert _is_due(config, now) is expected


@pytest.mark.asyncio
async def test_worker_tick_syncs_due_agencies_only(sync, add_agency, add_order, add_shipment, fake_courier):
    add_agency()
    add_shipment(add_order())
    fake_courier.current_status = DeliveryStatus.UPLOADED

    assert await run_due_agency_syncs_once(sync) == [FAKE_AGENCY_ID]
    assert await run_due_agency_syncs_once(sync) == []

    later = datetime.now(timezone.utc) + timedelta(minutes=31)
    assert await run_due_agency_syncs_once(sync, now=later) == [FAKE_AGENCY_ID]
    assert len(fake_courier.track_calls) == 2


@pytest.mark.asyncio
async def test_worker_tick_skips_disabled_agencies(sync, add_agency, add_order, add_shipment, fake_courier):
    add_agency(enabled=False)
    add_shipment(add_order())

    assert await run_due_agency_syncs_once(sync) == []
    assert fake_courier.track_calls == []
