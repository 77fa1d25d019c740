import asyncio

import httpx
import pytest

from crm_delivery.config import settings
from crm_delivery.models_sqlalchemy.models import DeliveryStatus
from crm_delivery.services.delivery.agencies.best_delivery import (
    BEST_DELIVERY_STATUS_TABLE,
    BestDeliveryAgency,
    BestDeliveryProtocolError,
    build_create_pickup_xml,
    format_price,
    parse_create_pickup_response,
)
from crm_delivery.services.delivery.types import DeliveryCredentials, DeliveryErrorKind, DeliveryOrder, map_status
from crm_delivery.utils.logger import courier_logger


API_URL = "https://courier.test/serviceShipments.php"


def _envelope(inner: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/" xmlns:ns1="urn:shipments">'
        f"<SOAP-ENV:Body><ns1:Response><return>{inner}</return></ns1:Response></SOAP-ENV:Body>"
        "</SOAP-ENV:Envelope>"
    )


PICKUP_OK = _envelope(
    "<HasErrors>0</HasErrors><ErrorsTxt></ErrorsTxt>"
    "<CodeBarre>BD123456</CodeBarre><Url>https://courier.test/print/BD123456</Url>"
)


def _status_xml(code: str, message: str = "Colis en route") -> str:
    return _envelope(
        "<HasErrors>0</HasErrors><ErrorsTxt></ErrorsTxt>"
        f"<tracking_number>BD123456</tracking_number><status>{code}</status><message>{message}</message>"
    )


class Recorder:
    """Collects requests seen by an httpx.MockTransport and replays one response."""

    def __init__(self, status_code=200, text="", exc=None):
        self.status_code = status_code
        self.text = text
        self.exc = exc
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc(request)
        return httpx.Response(self.status_code, text=self.text)


def _agency(recorder: Recorder) -> BestDeliveryAgency:
    return BestDeliveryAgency(api_url=API_URL, transport=httpx.MockTransport(recorder))


@pytest.fixture(autouse=True)
def _clear_exchange_logs():
    courier_logger.clear_logs()
    yield
    courier_logger.clear_logs()


@pytest.fixture()
def credentials():
    return DeliveryCredentials(username="shop", password="s3cret-pass")


@pytest.fixture()
def order():
    return DeliveryOrder(
        customer_name="Amira & Co",
        customer_phone="+216 20 123 456",
        customer_address="12 Rue de Marseille",
        customer_city="Sakiet Ezzit",
        customer_governorate="Sfax",
        product_name="Coffee grinder",
        price=45.5,
    )


def test_every_documented_code_maps_to_a_delivery_status():
    """Codes 0-10 are all covered and land on a known status."""

    for code in range(11):
        assert code in BEST_DELIVERY_STATUS_TABLE
        assert isinstance(map_status(BEST_DELIVERY_STATUS_TABLE, code), DeliveryStatus)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0", DeliveryStatus.UPLOADED),
        ("2", DeliveryStatus.UPLOADED),
        ("3", DeliveryStatus.DEPOSIT),
        ("6", DeliveryStatus.IN_TRANSIT),
        (" 7 ", DeliveryStatus.DELIVERED),
        ("8", DeliveryStatus.RETURNED),
        ("10", DeliveryStatus.RETURNED),
        ("42", DeliveryStatus.UPLOADED),
        ("unknown", DeliveryStatus.UPLOADED),
        (None, DeliveryStatus.UPLOADED),
    ],
)
def test_map_status(raw, expected):
    assert map_status(BEST_DELIVERY_STATUS_TABLE, raw) == expected


@pytest.mark.parametrize(
    "price, expected",
    [(45.0, "45"), (45.5, "45,5"), (12.25, "12,25"), (7, "7")],
)
def test_format_price_uses_comma_separator(price, expected):
    assert format_price(price) == expected


def test_pickup_xml_escapes_values_and_prefers_governorate(order, credentials):
    xml = build_create_pickup_xml(order, credentials)

    assert "<nom>Amira &amp; Co</nom>" in xml
    assert "<gouvernerat>Sfax</gouvernerat>" in xml
    assert "<ville>Sakiet Ezzit</ville>" in xml
    assert "<prix>45,5</prix>" in xml
    assert "<echange>0</echange>" in xml


def test_parse_rejects_invalid_xml():
    with pytest.raises(BestDeliveryProtocolError):
        parse_create_pickup_response("<not-closed>")


def test_parse_rejects_response_without_has_errors():
    with pytest.raises(BestDeliveryProtocolError):
        parse_create_pickup_response(_envelope("<CodeBarre>1</CodeBarre>"))


@pytest.mark.asyncio
async def test_create_order_success(order, credentials):
    recorder = Recorder(text=PICKUP_OK)

    result = await _agency(recorder).create_order(order, credentials)

    assert result.success
    assert result.tracking_number == "BD123456"
    assert result.barcode == "BD123456"
    assert result.print_url == "https://courier.test/print/BD123456"
    assert result.status == DeliveryStatus.UPLOADED
    assert len(recorder.requests) == 1
    request = recorder.requests[0]
    assert request.headers["SOAPAction"] == "CreatePickup"
    assert b"<prix>45,5</prix>" in request.content


@pytest.mark.asyncio
async def test_unsupported_region_fails_without_network_call(order, credentials):
    """Validation errors are collected before anything is sent."""

    order.customer_governorate = None
    order.customer_city = "Paris"
    order.price = 0
    recorder = Recorder(text=PICKUP_OK)

    result = await _agency(recorder).create_order(order, credentials)

    assert not result.success
    assert result.error_kind == DeliveryErrorKind.VALIDATION
    assert "Region Paris is not supported by Best Delivery" in result.error_details
    assert "Valid price is required" in result.error_details
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_missing_credentials_fail_validation(order):
    recorder = Recorder(text=PICKUP_OK)

    result = await _agency(recorder).create_order(order, DeliveryCredentials(username="shop"))

    assert result.error_kind == DeliveryErrorKind.VALIDATION
    assert "Password is required" in result.error_details
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_courier_rejection_is_business_error(order, credentials):
    recorder = Recorder(text=_envelope("<HasErrors>1</HasErrors><ErrorsTxt>Adresse incomplete</ErrorsTxt>"))

    result = await _agency(recorder).create_order(order, credentials)

    assert not result.success
    assert result.error_kind == DeliveryErrorKind.BUSINESS
    assert result.error_details == ["Adresse incomplete"]


@pytest.mark.asyncio
async def test_unparseable_response_is_protocol_error(order, credentials):
    recorder = Recorder(text="<html>Service Unavailable")

    result = await _agency(recorder).create_order(order, credentials)

    assert result.error_kind == DeliveryErrorKind.PROTOCOL


@pytest.mark.asyncio
async def test_missing_barcode_is_protocol_error(order, credentials):
    recorder = Recorder(text=_envelope("<HasErrors>0</HasErrors>"))

    result = await _agency(recorder).create_order(order, credentials)

    assert result.error_kind == DeliveryErrorKind.PROTOCOL
    assert result.tracking_number is None


@pytest.mark.asyncio
async def test_http_error_status_is_http_error(order, credentials):
    recorder = Recorder(status_code=500, text="Internal Server Error")

    result = await _agency(recorder).create_order(order, credentials)

    assert result.error_kind == DeliveryErrorKind.HTTP
    assert result.error_details == ["HTTP 500"]


@pytest.mark.asyncio
async def test_timeout_is_reported_as_timeout(order, credentials):
    recorder = Recorder(exc=lambda request: httpx.ReadTimeout("timed out", request=request))

    result = await _agency(recorder).create_order(order, credentials)

    assert result.error_kind == DeliveryErrorKind.TIMEOUT
    assert result.error_details[0].startswith("Request timed out after")


@pytest.mark.asyncio
async def test_connection_failure_is_network_error(credentials):
    recorder = Recorder(exc=lambda request: httpx.ConnectError("connection refused", request=request))

    result = await _agency(recorder).track_order("BD123456", credentials)

    assert result.error_kind == DeliveryErrorKind.NETWORK


@pytest.mark.asyncio
async def test_slow_courier_is_cut_off_by_hard_timeout(order, credentials, monkeypatch):
    monkeypatch.setattr(settings, "DELIVERY_HTTP_TIMEOUT_SECONDS", 0.05)

    async def slow(request):
        await asyncio.sleep(1)
        return httpx.Response(200, text=PICKUP_OK)

    agency = BestDeliveryAgency(api_url=API_URL, transport=httpx.MockTransport(slow))
    result = await agency.create_order(order, credentials)

    assert result.error_kind == DeliveryErrorKind.TIMEOUT


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code, expected",
    [("3", DeliveryStatus.DEPOSIT), ("7", DeliveryStatus.DELIVERED), ("99", DeliveryStatus.UPLOADED)],
)
async def test_track_order_maps_courier_code(credentials, code, expected):
    recorder = Recorder(text=_status_xml(code))

    result = await _agency(recorder).track_order("BD123456", credentials)

    assert result.success
    assert result.status.status == expected
    assert result.status.status_code == int(code)
    assert result.status.message == "Colis en route"
    assert recorder.requests[0].headers["SOAPAction"] == "TrackShipmentStatus"


@pytest.mark.asyncio
async def test_track_history_is_sorted_newest_first(credentials):
    recorder = Recorder(
        text=_envelope(
            "<HasErrors>0</HasErrors><tracking_number>BD123456</tracking_number><history>"
            "<item><status>3</status><date>2025-03-01 09:00:00</date><message>Enleve</message></item>"
            "<item><status>7</status><date>2025-03-03 15:30:00</date><message>Livre</message></item>"
            "<item><status>5</status><date>2025-03-02 11:00:00</date><message>En transit</message></item>"
            "</history>"
        )
    )

    result = await _agency(recorder).track_history("BD123456", credentials)

    assert result.success
    history = result.status.history
    assert [h.status for h in history] == [
        DeliveryStatus.DELIVERED,
        DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.DEPOSIT,
    ]
    assert result.status.status == DeliveryStatus.DELIVERED
    assert recorder.requests[0].headers["SOAPAction"] == "TrackShipment"


@pytest.mark.asyncio
async def test_connection_test_rejects_bad_login(credentials):
    recorder = Recorder(text=_envelope("<HasErrors>1</HasErrors><ErrorsTxt>Authentication failed</ErrorsTxt>"))

    result = await _agency(recorder).test_connection(credentials)

    assert not result.success
    assert result.error == "Authentication failed"
    assert result.error_kind == DeliveryErrorKind.BUSINESS


@pytest.mark.asyncio
async def test_connection_test_accepts_not_found_answer(credentials):
    """A "not found" reply to the dummy lookup still proves the login works."""

    recorder = Recorder(text=_envelope("<HasErrors>1</HasErrors><ErrorsTxt>Colis introuvable</ErrorsTxt>"))

    result = await _agency(recorder).test_connection(credentials)

    assert result.success
    assert result.details["responseReceived"] is True
    assert result.details["apiUrl"] == API_URL
    assert b"<tracking_number>0</tracking_number>" in recorder.requests[0].content


@pytest.mark.asyncio
async def test_exchange_log_masks_credentials(order, credentials):
    await _agency(Recorder(text=PICKUP_OK)).create_order(order, credentials)

    entry = courier_logger.get_logs(adapter="best-delivery")[-1]
    body = entry["request_data"]["body"]
    assert "s3cret-pass" not in body
    assert "<pwd>***</pwd>" in body
    assert entry["response_status"] == 200
    assert entry["action"] == "CreatePickup"
