from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, validator

from crm_delivery.models_sqlalchemy.models import ACTIVE_DELIVERY_STATUSES, DeliveryStatus
from crm_delivery.services.activity_logger import ActivityType
from crm_delivery.services.auth import Actor, admin_required, get_current_user
from crm_delivery.services.delivery import (
    DeliveryContainer,
    DeliveryErrorKind,
    DeliveryOrder,
    SyncAlreadyRunningError,
    get_delivery,
)
from crm_delivery.utils.logger import courier_logger, logger


router = APIRouter(prefix="/api/delivery", tags=["delivery"])


_ERROR_HTTP_STATUS = {
    DeliveryErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    DeliveryErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    DeliveryErrorKind.AGENCY_DISABLED: status.HTTP_409_CONFLICT,
    DeliveryErrorKind.BUSINESS: status.HTTP_422_UNPROCESSABLE_ENTITY,
    DeliveryErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    DeliveryErrorKind.NETWORK: status.HTTP_502_BAD_GATEWAY,
    DeliveryErrorKind.HTTP: status.HTTP_502_BAD_GATEWAY,
    DeliveryErrorKind.PROTOCOL: status.HTTP_502_BAD_GATEWAY,
}


def _raise_for_failure(result) -> None:
    code = _ERROR_HTTP_STATUS.get(result.error_kind, status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=code, detail=result.to_dict())


# ----------------------------
# Pydantic models
# ----------------------------


class ShipmentOrderPayload(BaseModel):
    customerName: str
    customerPhone: str
    customerPhone2: Optional[str] = None
    customerAddress: str
    customerCity: str
    customerGovernorate: Optional[str] = None
    productName: str
    price: float
    notes: Optional[str] = None
    isExchange: bool = False

    def to_delivery_order(self) -> DeliveryOrder:
        return DeliveryOrder(
            customer_name=self.customerName,
            customer_phone=self.customerPhone,
            customer_phone2=self.customerPhone2,
            customer_address=self.customerAddress,
            customer_city=self.customerCity,
            customer_governorate=self.customerGovernorate,
            product_name=self.productName,
            price=self.price,
            notes=self.notes,
            is_exchange=self.isExchange,
        )


class CreateShipmentRequest(BaseModel):
    orderId: str
    agencyId: str
    order: ShipmentOrderPayload


class BulkStatusRequest(BaseModel):
    shipmentIds: List[str] = Field(..., min_length=1)
    newStatus: DeliveryStatus


class SyncRequest(BaseModel):
    scope: str = "all"  # "all" | "agency" | "status"
    agencyId: Optional[str] = None
    status: Optional[DeliveryStatus] = None

    @validator("scope")
    def _known_scope(cls, v: str) -> str:
        v = (v or "all").strip().lower()
        if v not in {"all", "agency", "status"}:
            raise ValueError("scope must be one of: all, agency, status")
        return v


# ----------------------------
# Shipments
# ----------------------------


@router.get("/shipments")
async def list_shipments(
    orderId: Optional[str] = Query(None),
    status_filter: Optional[DeliveryStatus] = Query(None, alias="status"),
    agencyId: Optional[str] = Query(None),
    limit: Optional[int] = Query(100, ge=1, le=1000),
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    if orderId:
        shipments = delivery.delivery_service.get_shipments_by_order_id(orderId)
    else:
        shipments = delivery.delivery_service.get_all_shipments(limit, status=status_filter, agency_id=agencyId)
    return {"shipments": shipments, "count": len(shipments)}


@router.post("/shipments", status_code=status.HTTP_201_CREATED)
async def create_shipment(
    payload: CreateShipmentRequest,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    result = await delivery.delivery_service.create_shipment(
        payload.orderId,
        payload.agencyId,
        payload.order.to_delivery_order(),
        current_user,
    )
    if not result.success:
        _raise_for_failure(result)
    return result.to_dict()


@router.put("/shipments/bulk")
async def bulk_update_shipments(
    payload: BulkStatusRequest,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    result = await delivery.delivery_service.bulk_update_shipment_status(
        payload.shipmentIds,
        payload.newStatus,
        current_user,
    )
    return {"success": result.success, "updated": result.updated, "errors": result.errors}


@router.get("/shipments/{shipment_id}")
async def get_shipment(
    shipment_id: str,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    shipment = delivery.delivery_service.get_shipment(shipment_id)
    if shipment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shipment not found")
    return shipment


@router.get("/shipments/{shipment_id}/logs")
async def get_shipment_logs(
    shipment_id: str,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    if delivery.delivery_service.get_shipment(shipment_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shipment not found")
    return {"logs": delivery.delivery_service.get_status_logs(shipment_id)}


@router.get("/shipments/{shipment_id}/history")
async def get_courier_history(
    shipment_id: str,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    result = await delivery.delivery_service.get_courier_history(shipment_id)
    if not result.success:
        _raise_for_failure(result)
    return result.to_dict()


@router.post("/shipments/{shipment_id}/track")
async def track_shipment(
    shipment_id: str,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    result = await delivery.delivery_service.track_shipment(shipment_id)
    if not result.success:
        _raise_for_failure(result)
    return result.to_dict()


@router.post("/shipments/{shipment_id}/retry")
async def retry_shipment(
    shipment_id: str,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    result = await delivery.delivery_service.retry_shipment(shipment_id, current_user)
    if not result.success:
        _raise_for_failure(result)
    return result.to_dict()


@router.delete("/shipments/{shipment_id}")
async def delete_shipment(
    shipment_id: str,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    ok = await delivery.delivery_service.delete_shipment(shipment_id, current_user)
    if not ok:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shipment not found")
    return {"success": True, "shipmentId": shipment_id, "status": DeliveryStatus.RETURNED.value}


@router.get("/track/{tracking_number}")
async def track_by_tracking_number(
    tracking_number: str,
    agencyId: Optional[str] = Query(None),
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    result = await delivery.delivery_service.track_shipment_by_tracking_number(tracking_number, agencyId)
    if not result.success:
        _raise_for_failure(result)
    return result.to_dict()


# ----------------------------
# Sync
# ----------------------------


@router.post("/sync")
async def run_sync(
    payload: SyncRequest,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(admin_required),
) -> Dict[str, Any]:
    sync = delivery.sync_service
    try:
        if payload.scope == "agency":
            if not payload.agencyId:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="agencyId is required")
            result = await sync.sync_shipments_by_agency(payload.agencyId)
        elif payload.scope == "status":
            if payload.status is None or payload.status not in ACTIVE_DELIVERY_STATUSES:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="status must be one of: " + ", ".join(s.value for s in ACTIVE_DELIVERY_STATUSES),
                )
            result = await sync.sync_shipments_by_status(payload.status)
        else:
            result = await sync.sync_all_shipments()
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    delivery.activity.log_for_actor(
        current_user,
        ActivityType.DELIVERY_MANUAL_SYNC,
        f"Manual delivery sync ({payload.scope}): {result.processed} processed, "
        f"{result.updated} updated, {result.errors} errors",
        metadata={
            "scope": payload.scope,
            "agencyId": payload.agencyId,
            "status": payload.status.value if payload.status else None,
            "processed": result.processed,
            "updated": result.updated,
            "errors": result.errors,
            "cancelled": result.cancelled,
        },
    )
    return result.to_dict()


@router.get("/sync")
async def get_sync_status(
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    return delivery.sync_service.get_status()


@router.post("/sync/cancel")
async def cancel_sync(
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(admin_required),
) -> Dict[str, Any]:
    cancelled = delivery.sync_service.cancel()
    if cancelled:
        logger.info(f"Delivery sync cancel requested by {current_user.id}")
    return {"cancelRequested": cancelled}


@router.get("/sync/stale")
async def get_stale_shipments(
    hours: Optional[int] = Query(None, ge=1, le=24 * 30),
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    shipments = delivery.sync_service.get_stale_shipments(hours)
    return {"shipments": shipments, "count": len(shipments)}


# ----------------------------
# Courier exchange logs
# ----------------------------


@router.get("/exchange-logs")
async def get_exchange_logs(
    limit: Optional[int] = Query(100, ge=1, le=1000),
    adapter: Optional[str] = Query(None),
    current_user: Actor = Depends(admin_required),
) -> Dict[str, Any]:
    logs = courier_logger.get_logs(limit=limit, adapter=adapter)
    return {"logs": logs, "count": len(logs)}


@router.delete("/exchange-logs")
async def clear_exchange_logs(current_user: Actor = Depends(admin_required)) -> Dict[str, Any]:
    courier_logger.clear_logs()
    return {"success": True}
