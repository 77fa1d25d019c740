from .agency_registry import AgencyRegistry
from .container import DeliveryContainer, build_delivery_container, get_delivery
from .delivery_service import DeliveryService
from .sync_service import DeliverySyncService, SyncAlreadyRunningError
from .types import (
    AgencyAdapter,
    AgencyConfig,
    ConnectionTestResult,
    DeliveryCredentials,
    DeliveryErrorKind,
    DeliveryOrder,
    DeliveryOrderResponse,
    DeliveryTrackingResponse,
    SyncResult,
)

__all__ = [
    "AgencyAdapter",
    "AgencyConfig",
    "AgencyRegistry",
    "ConnectionTestResult",
    "DeliveryContainer",
    "DeliveryCredentials",
    "DeliveryErrorKind",
    "DeliveryOrder",
    "DeliveryOrderResponse",
    "DeliveryService",
    "DeliverySyncService",
    "DeliveryTrackingResponse",
    "SyncAlreadyRunningError",
    "SyncResult",
    "build_delivery_container",
    "get_delivery",
]
