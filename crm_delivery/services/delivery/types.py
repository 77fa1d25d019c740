"""Normalized delivery types shared by adapters, the registry and the services.

Adapters speak their courier's protocol on one side and these types on the
other. Nothing outside ``agencies/`` should ever see a courier-specific field.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Union, runtime_checkable

from crm_delivery.models_sqlalchemy.models import CredentialsType, DeliveryStatus, OrderStatus
from crm_delivery.utils.crypto import mask_secret


class DeliveryErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    AGENCY_DISABLED = "agency_disabled"
    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP = "http"
    PROTOCOL = "protocol"
    BUSINESS = "business"


# Failures worth retrying automatically: the courier never saw (or never
# answered) the request.
TRANSIENT_ERROR_KINDS = {DeliveryErrorKind.TIMEOUT, DeliveryErrorKind.NETWORK}


@dataclass
class DeliveryCredentials:
    type: CredentialsType = CredentialsType.USERNAME_PASSWORD
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.username or self.email or self.api_key)

    def masked(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "username": self.username,
            "email": self.email,
            "password": mask_secret(self.password),
            "apiKey": mask_secret(self.api_key),
        }


@dataclass
class DeliveryOrder:
    """Courier-agnostic view of an order being handed to a delivery agency."""

    customer_name: str
    customer_phone: str
    customer_address: str
    customer_city: str
    product_name: str
    price: float
    customer_phone2: Optional[str] = None
    customer_governorate: Optional[str] = None
    notes: Optional[str] = None
    is_exchange: bool = False

    @property
    def region(self) -> Optional[str]:
        return self.customer_governorate or self.customer_city

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "customerName": self.customer_name,
            "phone": self.customer_phone,
            "phone2": self.customer_phone2,
            "customerAddress": self.customer_address,
            "customerCity": self.customer_city,
            "customerGovernorate": self.customer_governorate,
            "productName": self.product_name,
            "price": self.price,
            "notes": self.notes,
            "isExchange": self.is_exchange,
        }

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> "DeliveryOrder":
        price = data.get("price")
        return cls(
            customer_name=data.get("customerName") or "",
            customer_phone=data.get("phone") or "",
            customer_phone2=data.get("phone2"),
            customer_address=data.get("customerAddress") or "",
            customer_city=data.get("customerCity") or "",
            customer_governorate=data.get("customerGovernorate"),
            product_name=data.get("productName") or "",
            price=float(price) if price is not None else 0.0,
            notes=data.get("notes"),
            is_exchange=bool(data.get("isExchange")),
        )


@dataclass
class DeliveryOrderResponse:
    success: bool
    tracking_number: Optional[str] = None
    barcode: Optional[str] = None
    print_url: Optional[str] = None
    # Status the courier reported on creation, when it reports one.
    status: Optional[DeliveryStatus] = None
    status_code: Optional[int] = None
    shipment_id: Optional[str] = None
    error: Optional[str] = None
    error_details: List[str] = field(default_factory=list)
    error_kind: Optional[DeliveryErrorKind] = None

    @classmethod
    def failure(
        cls,
        kind: DeliveryErrorKind,
        error: str,
        details: Optional[List[str]] = None,
    ) -> "DeliveryOrderResponse":
        return cls(success=False, error=error, error_details=list(details or []), error_kind=kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "shipmentId": self.shipment_id,
            "trackingNumber": self.tracking_number,
            "barcode": self.barcode,
            "printUrl": self.print_url,
            "status": self.status.value if self.status else None,
            "error": self.error,
            "errorDetails": self.error_details or None,
            "errorKind": self.error_kind.value if self.error_kind else None,
        }


@dataclass
class StatusHistoryEntry:
    status: DeliveryStatus
    message: str
    date: Optional[datetime]
    status_code: Optional[int] = None


@dataclass
class TrackedStatus:
    tracking_number: str
    status: DeliveryStatus
    message: str
    last_updated: datetime
    status_code: Optional[int] = None
    history: List[StatusHistoryEntry] = field(default_factory=list)


@dataclass
class DeliveryTrackingResponse:
    success: bool
    status: Optional[TrackedStatus] = None
    status_changed: bool = False
    previous_status: Optional[DeliveryStatus] = None
    previous_order_status: Optional[OrderStatus] = None
    order_status: Optional[OrderStatus] = None
    error: Optional[str] = None
    error_details: List[str] = field(default_factory=list)
    error_kind: Optional[DeliveryErrorKind] = None

    @classmethod
    def failure(
        cls,
        kind: DeliveryErrorKind,
        error: str,
        details: Optional[List[str]] = None,
    ) -> "DeliveryTrackingResponse":
        return cls(success=False, error=error, error_details=list(details or []), error_kind=kind)

    def to_dict(self) -> Dict[str, Any]:
        status = None
        if self.status is not None:
            status = {
                "trackingNumber": self.status.tracking_number,
                "status": self.status.status.value,
                "statusCode": self.status.status_code,
                "message": self.status.message,
                "lastUpdated": self.status.last_updated.isoformat(),
                "history": [
                    {
                        "status": h.status.value,
                        "message": h.message,
                        "date": h.date.isoformat() if h.date else None,
                        "statusCode": h.status_code,
                    }
                    for h in self.status.history
                ],
            }
        return {
            "success": self.success,
            "statusChanged": self.status_changed,
            "status": status,
            "error": self.error,
            "errorDetails": self.error_details or None,
            "errorKind": self.error_kind.value if self.error_kind else None,
        }


@dataclass
class ConnectionTestResult:
    success: bool
    error: Optional[str] = None
    error_kind: Optional[DeliveryErrorKind] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgencyConfig:
    id: str
    name: str
    enabled: bool = False
    credentials: DeliveryCredentials = field(default_factory=DeliveryCredentials)
    settings: Dict[str, Any] = field(default_factory=dict)
    webhook_url: Optional[str] = None
    polling_interval: int = 30
    last_sync: Optional[datetime] = None

    def masked(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "configured": self.credentials.configured,
            "credentialsType": self.credentials.type.value,
            "credentials": self.credentials.masked(),
            "settings": self.settings,
            "webhookUrl": self.webhook_url,
            "pollingInterval": self.polling_interval,
            "lastSync": self.last_sync.isoformat() if self.last_sync else None,
        }


@runtime_checkable
class AgencyAdapter(Protocol):
    """Contract every courier integration implements.

    Expected failures (validation, transport, courier-side errors) come back as
    ``success=False`` results; adapters do not raise for them.
    """

    id: str
    name: str
    supported_regions: Sequence[str]
    credentials_type: CredentialsType
    status_table: Mapping[Union[int, str], DeliveryStatus]

    async def create_order(self, order: DeliveryOrder, credentials: DeliveryCredentials) -> DeliveryOrderResponse:
        ...

    async def track_order(self, tracking_number: str, credentials: DeliveryCredentials) -> DeliveryTrackingResponse:
        ...

    async def test_connection(self, credentials: DeliveryCredentials) -> ConnectionTestResult:
        ...


def map_status(
    table: Mapping[Union[int, str], DeliveryStatus],
    raw: Union[int, str, None],
    default: DeliveryStatus = DeliveryStatus.UPLOADED,
) -> DeliveryStatus:
    """Translate a raw courier status through an adapter's table.

    Numeric strings are looked up as integers, other strings case-insensitively.
    Unknown codes fall back to ``default`` so an unrecognized but valid
    shipment never looks broken.
    """

    if raw is None:
        return default
    if isinstance(raw, str):
        value = raw.strip()
        if value.lstrip("-").isdigit():
            raw = int(value)
        else:
            return table.get(value.lower(), default)
    return table.get(raw, default)


_STATUS_RANK = {
    DeliveryStatus.UPLOADED: 0,
    DeliveryStatus.DEPOSIT: 1,
    DeliveryStatus.IN_TRANSIT: 2,
    DeliveryStatus.DELIVERED: 3,
}


def is_forward_transition(old: DeliveryStatus, new: DeliveryStatus) -> bool:
    """True when an automated sync may move a shipment from ``old`` to ``new``."""

    if old == new:
        return False
    if old == DeliveryStatus.RETURNED:
        return False
    if new == DeliveryStatus.RETURNED:
        return True
    return _STATUS_RANK[new] > _STATUS_RANK[old]


@dataclass
class SyncDetail:
    shipment_id: str
    tracking_number: str
    agency_id: str
    old_status: Optional[str]
    new_status: Optional[str]
    old_order_status: Optional[str]
    new_order_status: Optional[str]


@dataclass
class SyncFailure:
    shipment_id: str
    tracking_number: str
    error: str
    error_kind: Optional[str] = None


@dataclass
class SyncResult:
    processed: int = 0
    updated: int = 0
    errors: int = 0
    duration: int = 0  # milliseconds
    cancelled: bool = False
    details: List[SyncDetail] = field(default_factory=list)
    failures: List[SyncFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BulkUpdateResult:
    success: bool
    updated: int
    errors: List[str] = field(default_factory=list)
