import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from crm_delivery.models_sqlalchemy import Base
from crm_delivery.models_sqlalchemy.models import (
    CredentialsType,
    DeliveryAgency,
    DeliveryShipment,
    DeliveryStatus,
    DeliveryStatusLog,
    DeliveryStatusSource,
    Order,
    OrderStatus,
)
from crm_delivery.services.delivery import build_delivery_container
from crm_delivery.services.delivery.types import (
    ConnectionTestResult,
    DeliveryErrorKind,
    DeliveryOrder,
    DeliveryOrderResponse,
    DeliveryTrackingResponse,
    TrackedStatus,
)
from crm_delivery.utils.crypto import encrypt


FAKE_AGENCY_ID = "fake-courier"


class FakeCourier:
    """In-memory adapter that records every call and returns scripted results."""

    id = FAKE_AGENCY_ID
    name = "Fake Courier"
    supported_regions = ["Tunis", "Sfax", "Sousse"]
    credentials_type = CredentialsType.USERNAME_PASSWORD
    status_table = {}

    def __init__(self):
        self.create_calls: List[DeliveryOrder] = []
        self.track_calls: List[str] = []
        self.test_calls = 0
        self.create_results: List[DeliveryOrderResponse] = []
        self.track_results: List[DeliveryTrackingResponse] = []
        # Status reported for any tracking number not scripted below.
        self.current_status: Optional[DeliveryStatus] = None
        self.statuses = {}
        self.failing_tracking_numbers = set()
        # When set, track_order waits on it; track_started fires on entry.
        self.track_gate: Optional[asyncio.Event] = None
        self.track_started: Optional[asyncio.Event] = None
        self._numbers = itertools.count(1000)

    async def create_order(self, order, credentials):
        self.create_calls.append(order)
        if self.create_results:
            return self.create_results.pop(0)
        number = str(next(self._numbers))
        return DeliveryOrderResponse(
            success=True,
            tracking_number=number,
            barcode=number,
            print_url=f"https://courier.test/print/{number}",
            status=DeliveryStatus.UPLOADED,
        )

    async def track_order(self, tracking_number, credentials):
        self.track_calls.append(tracking_number)
        if self.track_started is not None:
            self.track_started.set()
        if self.track_gate is not None:
            await self.track_gate.wait()
        if self.track_results:
            return self.track_results.pop(0)
        if tracking_number in self.failing_tracking_numbers:
            return DeliveryTrackingResponse.failure(DeliveryErrorKind.TIMEOUT, "Courier request failed", ["timed out"])
        status = self.statuses.get(tracking_number) or self.current_status
        if status is None:
            return DeliveryTrackingResponse.failure(DeliveryErrorKind.BUSINESS, "Unknown tracking number")
        return DeliveryTrackingResponse(
            success=True,
            status=TrackedStatus(
                tracking_number=tracking_number,
                status=status,
                message=f"Courier says {status.value}",
                last_updated=datetime.now(timezone.utc),
            ),
        )

    async def test_connection(self, credentials):
        self.test_calls += 1
        return ConnectionTestResult(success=True, details={"responseReceived": True})


async def _no_sleep(_seconds):
    return None


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture()
def fake_courier():
    return FakeCourier()


@pytest.fixture()
def add_agency(session_factory):
    def _add(agency_id=FAKE_AGENCY_ID, name="Fake Courier", enabled=True, username="shop", password="s3cret-pass"):
        db = session_factory()
        try:
            db.add(
                DeliveryAgency(
                    id=agency_id,
                    name=name,
                    enabled=enabled,
                    credentials_type=CredentialsType.USERNAME_PASSWORD,
                    credentials_username=username,
                    credentials_password=encrypt(password),
                    settings={},
                    polling_interval=30,
                )
            )
            db.commit()
        finally:
            db.close()

    return _add


@pytest.fixture()
def add_order(session_factory):
    counter = itertools.count(1)

    def _add(status=OrderStatus.CONFIRMED, city="Tunis", **fields):
        order_id = fields.pop("id", None) or f"order-{next(counter)}"
        db = session_factory()
        try:
            db.add(
                Order(
                    id=order_id,
                    customer_name=fields.pop("customer_name", "Amira Ben Salah"),
                    customer_phone=fields.pop("customer_phone", "+216 20 123 456"),
                    customer_address=fields.pop("customer_address", "12 Rue de Marseille"),
                    customer_city=city,
                    customer_governorate=city,
                    total_price=fields.pop("total_price", 45),
                    status=status,
                    **fields,
                )
            )
            db.commit()
        finally:
            db.close()
        return order_id

    return _add


@pytest.fixture()
def add_shipment(session_factory):
    counter = itertools.count(1)

    def _add(order_id, status=DeliveryStatus.UPLOADED, agency_id=FAKE_AGENCY_ID, tracking_number=None, age_hours=0, snapshot=None):
        now = datetime.now(timezone.utc) - timedelta(hours=age_hours)
        tracking_number = tracking_number or f"TRK{next(counter):05d}"
        db = session_factory()
        try:
            shipment = DeliveryShipment(
                order_id=order_id,
                agency_id=agency_id,
                tracking_number=tracking_number,
                barcode=tracking_number,
                status=status,
                last_status_update=now,
                order_snapshot=snapshot,
            )
            db.add(shipment)
            db.commit()
            db.add(
                DeliveryStatusLog(
                    shipment_id=shipment.id,
                    status=status,
                    message="seeded",
                    source=DeliveryStatusSource.API,
                    timestamp=now,
                )
            )
            db.commit()
            return shipment.id
        finally:
            db.close()

    return _add


@pytest.fixture()
def container(session_factory, fake_courier):
    return build_delivery_container(
        session_factory,
        adapters_factory=lambda: [fake_courier],
        sleep=_no_sleep,
        delay_seconds=0,
    )


@pytest.fixture()
def delivery_order():
    return DeliveryOrder(
        customer_name="Amira Ben Salah",
        customer_phone="+216 20 123 456",
        customer_address="12 Rue de Marseille",
        customer_city="Sfax",
        customer_governorate="Sfax",
        product_name="Coffee grinder",
        price=45.00,
        notes="Call before delivery",
    )
