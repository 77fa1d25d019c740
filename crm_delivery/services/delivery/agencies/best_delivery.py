"""Best Delivery (Tunisia) SOAP integration.

The service exposes three SOAP actions on a single endpoint:

* ``CreatePickup`` registers a parcel and returns its barcode (``CodeBarre``)
  and a printable label URL.
* ``TrackShipmentStatus`` returns the current numeric status.
* ``TrackShipment`` returns the full status history.

Every response carries ``HasErrors`` (1 on failure) and ``ErrorsTxt``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from xml.etree import ElementTree as ET
from xml.sax.saxutils import escape

import httpx

from crm_delivery.config import settings
from crm_delivery.models_sqlalchemy.models import CredentialsType, DeliveryStatus
from crm_delivery.services.delivery.transport import CourierRequestError, courier_post
from crm_delivery.services.delivery.types import (
    ConnectionTestResult,
    DeliveryCredentials,
    DeliveryErrorKind,
    DeliveryOrder,
    DeliveryOrderResponse,
    DeliveryTrackingResponse,
    StatusHistoryEntry,
    TrackedStatus,
    map_status,
)
from crm_delivery.services.delivery.validation import validate_credentials, validate_order
from crm_delivery.utils.logger import logger


SOAP_NS = "http://schemas.xmlsoap.org/soap/envelope/"

# Tracking number used by the connection test; the courier answers "not found"
# for it, which still proves the credentials were accepted.
CONNECTION_TEST_TRACKING_NUMBER = "0"

_AUTH_ERROR_MARKERS = ("authentication failed", "invalid credentials", "login failed")


BEST_DELIVERY_STATUS_TABLE: Dict[Any, DeliveryStatus] = {
    0: DeliveryStatus.UPLOADED,    # pending
    1: DeliveryStatus.UPLOADED,    # pending
    2: DeliveryStatus.UPLOADED,    # confirmed
    3: DeliveryStatus.DEPOSIT,     # picked up
    4: DeliveryStatus.IN_TRANSIT,
    5: DeliveryStatus.IN_TRANSIT,
    6: DeliveryStatus.IN_TRANSIT,  # out for delivery
    7: DeliveryStatus.DELIVERED,
    8: DeliveryStatus.RETURNED,    # failed delivery
    9: DeliveryStatus.RETURNED,
    10: DeliveryStatus.RETURNED,   # cancelled
}


BEST_DELIVERY_REGIONS = [
    "Ariana",
    "Béja",
    "Ben Arous",
    "Bizerte",
    "Gabès",
    "Gafsa",
    "Jendouba",
    "Kairouan",
    "Kasserine",
    "Kébili",
    "La Manouba",
    "Le Kef",
    "Mahdia",
    "Médenine",
    "Monastir",
    "Nabeul",
    "Sfax",
    "Sidi Bouzid",
    "Siliana",
    "Sousse",
    "Tataouine",
    "Tozeur",
    "Tunis",
    "Zaghouan",
]


def _xml_text(val: Any) -> str:
    return escape("" if val is None else str(val))


def format_price(price: float) -> str:
    """Best Delivery expects a comma decimal separator (``45,5``)."""

    text = f"{float(price):.3f}".rstrip("0").rstrip(".")
    return text.replace(".", ",")


def _envelope(action: str, pickup_xml: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP_NS}">'
        "<soap:Body>"
        f"<{action}><pickup>{pickup_xml}</pickup></{action}>"
        "</soap:Body>"
        "</soap:Envelope>"
    )


def build_create_pickup_xml(order: DeliveryOrder, credentials: DeliveryCredentials) -> str:
    pickup = (
        f"<nom>{_xml_text(order.customer_name)}</nom>"
        f"<gouvernerat>{_xml_text(order.customer_governorate or order.customer_city)}</gouvernerat>"
        f"<ville>{_xml_text(order.customer_city)}</ville>"
        f"<adresse>{_xml_text(order.customer_address)}</adresse>"
        f"<tel>{_xml_text(order.customer_phone)}</tel>"
        f"<tel2>{_xml_text(order.customer_phone2)}</tel2>"
        f"<designation>{_xml_text(order.product_name)}</designation>"
        f"<prix>{_xml_text(format_price(order.price))}</prix>"
        f"<msg>{_xml_text(order.notes)}</msg>"
        f"<echange>{'1' if order.is_exchange else '0'}</echange>"
        f"<login>{_xml_text(credentials.username)}</login>"
        f"<pwd>{_xml_text(credentials.password)}</pwd>"
    )
    return _envelope("CreatePickup", pickup)


def build_track_xml(action: str, tracking_number: str, credentials: DeliveryCredentials) -> str:
    pickup = (
        f"<login>{_xml_text(credentials.username)}</login>"
        f"<pwd>{_xml_text(credentials.password)}</pwd>"
        f"<tracking_number>{_xml_text(tracking_number)}</tracking_number>"
    )
    return _envelope(action, pickup)


class BestDeliveryProtocolError(ValueError):
    pass


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find(root: ET.Element, name: str) -> Optional[ET.Element]:
    for el in root.iter():
        if _local(el.tag) == name:
            return el
    return None


def _findtext(root: ET.Element, name: str) -> Optional[str]:
    el = _find(root, name)
    if el is None or el.text is None:
        return None
    return el.text.strip()


def _child_text(el: ET.Element, name: str) -> Optional[str]:
    for child in el:
        if _local(child.tag) == name:
            return (child.text or "").strip()
    return None


def _parse_envelope(xml_text: str) -> Dict[str, Any]:
    """Parse the parts every response shares; raise on anything malformed."""

    if not xml_text or not xml_text.strip():
        raise BestDeliveryProtocolError("Empty response body")
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise BestDeliveryProtocolError(f"invalid_xml: {exc}")

    has_errors = _findtext(root, "HasErrors")
    if has_errors is None:
        raise BestDeliveryProtocolError("Response is missing HasErrors")
    try:
        has_errors_flag = int(has_errors) == 1
    except ValueError:
        raise BestDeliveryProtocolError(f"Unexpected HasErrors value: {has_errors!r}")

    return {
        "root": root,
        "has_errors": has_errors_flag,
        "errors_txt": _findtext(root, "ErrorsTxt") or "",
    }


def parse_create_pickup_response(xml_text: str) -> Dict[str, Any]:
    out = _parse_envelope(xml_text)
    root = out.pop("root")
    out["barcode"] = _findtext(root, "CodeBarre")
    out["url"] = _findtext(root, "Url")
    return out


def parse_track_status_response(xml_text: str) -> Dict[str, Any]:
    out = _parse_envelope(xml_text)
    root = out.pop("root")
    out["tracking_number"] = _findtext(root, "tracking_number")
    out["status"] = _findtext(root, "status")
    out["message"] = _findtext(root, "message")
    return out


_DATE_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%d/%m/%Y %H:%M:%S", "%d/%m/%Y %H:%M", "%Y-%m-%d", "%d/%m/%Y")


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        dt = None
        for fmt in _DATE_FORMATS:
            try:
                dt = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_track_history_response(xml_text: str) -> Dict[str, Any]:
    out = _parse_envelope(xml_text)
    root = out.pop("root")
    out["tracking_number"] = _findtext(root, "tracking_number")

    entries: List[Dict[str, Any]] = []
    for el in root.iter():
        code = _child_text(el, "status")
        date = _child_text(el, "date")
        if code is None or date is None:
            continue
        entries.append({"status": code, "date": date, "message": _child_text(el, "message")})
    out["history"] = entries
    return out


def _is_auth_error(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _AUTH_ERROR_MARKERS)


def _status_code(raw: Optional[str]) -> Optional[int]:
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


class BestDeliveryAgency:
    id = "best-delivery"
    name = "Best Delivery"
    credentials_type = CredentialsType.USERNAME_PASSWORD
    supported_regions = BEST_DELIVERY_REGIONS
    status_table = BEST_DELIVERY_STATUS_TABLE

    def __init__(
        self,
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url or settings.BEST_DELIVERY_API_URL
        self._transport = transport

    async def _call(self, action: str, body: str) -> str:
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": action,
        }
        result = await courier_post(
            adapter=self.id,
            action=action,
            url=self.api_url,
            body=body,
            headers=headers,
            transport=self._transport,
        )
        return result.response_body

    async def create_order(self, order: DeliveryOrder, credentials: DeliveryCredentials) -> DeliveryOrderResponse:
        errors = validate_credentials(credentials, self.credentials_type)
        errors += validate_order(order, self.name, self.supported_regions)
        if errors:
            return DeliveryOrderResponse.failure(DeliveryErrorKind.VALIDATION, "Order validation failed", errors)

        logger.info(f"[{self.id}] Creating pickup for {order.customer_name} ({order.region})")
        try:
            body = await self._call("CreatePickup", build_create_pickup_xml(order, credentials))
            parsed = parse_create_pickup_response(body)
        except CourierRequestError as exc:
            return DeliveryOrderResponse.failure(exc.kind, "Courier request failed", [exc.message])
        except BestDeliveryProtocolError as exc:
            logger.error(f"[{self.id}] Unparseable CreatePickup response: {exc}")
            return DeliveryOrderResponse.failure(DeliveryErrorKind.PROTOCOL, "Invalid courier response", [str(exc)])

        if parsed["has_errors"]:
            return DeliveryOrderResponse.failure(
                DeliveryErrorKind.BUSINESS,
                "Courier rejected the order",
                [parsed["errors_txt"] or "Unknown error from Best Delivery API"],
            )

        barcode = parsed["barcode"]
        if not barcode:
            return DeliveryOrderResponse.failure(
                DeliveryErrorKind.PROTOCOL,
                "Invalid courier response",
                ["Response has no CodeBarre"],
            )

        logger.info(f"[{self.id}] Pickup created: tracking={barcode}")
        return DeliveryOrderResponse(
            success=True,
            tracking_number=barcode,
            barcode=barcode,
            print_url=parsed["url"],
            status=DeliveryStatus.UPLOADED,
        )

    async def track_order(self, tracking_number: str, credentials: DeliveryCredentials) -> DeliveryTrackingResponse:
        errors = validate_credentials(credentials, self.credentials_type)
        if errors:
            return DeliveryTrackingResponse.failure(DeliveryErrorKind.VALIDATION, "Credentials validation failed", errors)

        try:
            body = await self._call("TrackShipmentStatus", build_track_xml("TrackShipmentStatus", tracking_number, credentials))
            parsed = parse_track_status_response(body)
        except CourierRequestError as exc:
            return DeliveryTrackingResponse.failure(exc.kind, "Courier request failed", [exc.message])
        except BestDeliveryProtocolError as exc:
            logger.error(f"[{self.id}] Unparseable TrackShipmentStatus response: {exc}")
            return DeliveryTrackingResponse.failure(DeliveryErrorKind.PROTOCOL, "Invalid courier response", [str(exc)])

        if parsed["has_errors"]:
            return DeliveryTrackingResponse.failure(
                DeliveryErrorKind.BUSINESS,
                "Courier returned an error",
                [parsed["errors_txt"] or "Unknown error from Best Delivery API"],
            )

        raw_status = parsed["status"]
        return DeliveryTrackingResponse(
            success=True,
            status=TrackedStatus(
                tracking_number=parsed["tracking_number"] or tracking_number,
                status=map_status(self.status_table, raw_status),
                status_code=_status_code(raw_status),
                message=parsed["message"] or "No message available",
                last_updated=datetime.now(timezone.utc),
            ),
        )

    async def track_history(self, tracking_number: str, credentials: DeliveryCredentials) -> DeliveryTrackingResponse:
        errors = validate_credentials(credentials, self.credentials_type)
        if errors:
            return DeliveryTrackingResponse.failure(DeliveryErrorKind.VALIDATION, "Credentials validation failed", errors)

        try:
            body = await self._call("TrackShipment", build_track_xml("TrackShipment", tracking_number, credentials))
            parsed = parse_track_history_response(body)
        except CourierRequestError as exc:
            return DeliveryTrackingResponse.failure(exc.kind, "Courier request failed", [exc.message])
        except BestDeliveryProtocolError as exc:
            logger.error(f"[{self.id}] Unparseable TrackShipment response: {exc}")
            return DeliveryTrackingResponse.failure(DeliveryErrorKind.PROTOCOL, "Invalid courier response", [str(exc)])

        if parsed["has_errors"]:
            return DeliveryTrackingResponse.failure(
                DeliveryErrorKind.BUSINESS,
                "Courier returned an error",
                [parsed["errors_txt"] or "Unknown error from Best Delivery API"],
            )

        history = [
            StatusHistoryEntry(
                status=map_status(self.status_table, item["status"]),
                status_code=_status_code(item["status"]),
                message=item["message"] or item["status"],
                date=_parse_date(item["date"]),
            )
            for item in parsed["history"]
        ]
        # Most recent first; undated entries sink to the bottom.
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        history.sort(key=lambda h: h.date or epoch, reverse=True)

        if history:
            current = history[0]
            status = TrackedStatus(
                tracking_number=parsed["tracking_number"] or tracking_number,
                status=current.status,
                status_code=current.status_code,
                message=current.message,
                last_updated=current.date or datetime.now(timezone.utc),
                history=history,
            )
        else:
            status = TrackedStatus(
                tracking_number=parsed["tracking_number"] or tracking_number,
                status=DeliveryStatus.UPLOADED,
                message="No status available",
                last_updated=datetime.now(timezone.utc),
            )
        return DeliveryTrackingResponse(success=True, status=status)

    async def test_connection(self, credentials: DeliveryCredentials) -> ConnectionTestResult:
        """Check reachability and credentials without creating anything.

        Runs a status query for a tracking number that cannot exist; a
        "not found" style answer still means the login was accepted.
        """

        errors = validate_credentials(credentials, self.credentials_type)
        if errors:
            return ConnectionTestResult(
                success=False,
                error="Invalid credentials format",
                error_kind=DeliveryErrorKind.VALIDATION,
                details={"errors": errors},
            )

        try:
            body = await self._call(
                "TrackShipmentStatus",
                build_track_xml("TrackShipmentStatus", CONNECTION_TEST_TRACKING_NUMBER, credentials),
            )
            parsed = parse_track_status_response(body)
        except CourierRequestError as exc:
            return ConnectionTestResult(
                success=False,
                error=exc.message,
                error_kind=exc.kind,
                details={"apiUrl": self.api_url, "statusCode": exc.status_code},
            )
        except BestDeliveryProtocolError as exc:
            return ConnectionTestResult(
                success=False,
                error="Invalid courier response",
                error_kind=DeliveryErrorKind.PROTOCOL,
                details={"apiUrl": self.api_url, "parseError": str(exc)},
            )

        if parsed["has_errors"] and _is_auth_error(parsed["errors_txt"]):
            return ConnectionTestResult(
                success=False,
                error="Authentication failed",
                error_kind=DeliveryErrorKind.BUSINESS,
                details={"apiUrl": self.api_url, "courierMessage": parsed["errors_txt"]},
            )

        return ConnectionTestResult(
            success=True,
            details={
                "responseReceived": True,
                "apiUrl": self.api_url,
                "supportedRegions": len(self.supported_regions),
            },
        )
