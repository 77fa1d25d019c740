from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crm_delivery.config import settings
from crm_delivery.models_sqlalchemy.models import (
    ACTIVE_DELIVERY_STATUSES,
    DeliveryShipment,
    DeliveryStatus,
    DeliveryStatusLog,
    DeliveryStatusSource,
    Order,
    OrderStatus,
)
from crm_delivery.services.activity_logger import ActivityLogger, ActivityType
from crm_delivery.services.delivery.agency_registry import AgencyRegistry
from crm_delivery.services.delivery.types import (
    TRANSIENT_ERROR_KINDS,
    AgencyAdapter,
    BulkUpdateResult,
    DeliveryCredentials,
    DeliveryErrorKind,
    DeliveryOrder,
    DeliveryOrderResponse,
    DeliveryTrackingResponse,
    is_forward_transition,
)
from crm_delivery.utils.logger import logger


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _next_timestamp(last: Optional[datetime]) -> datetime:
    """Current time, nudged past ``last`` so a shipment's log rows sort in write order."""

    now = _utcnow()
    if last is None:
        return now
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    if now <= last:
        return last + timedelta(microseconds=1)
    return now


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def shipment_to_dict(s: DeliveryShipment) -> Dict[str, Any]:
    return {
        "id": s.id,
        "orderId": s.order_id,
        "agencyId": s.agency_id,
        "trackingNumber": s.tracking_number,
        "barcode": s.barcode,
        "status": s.status.value if s.status else None,
        "lastStatusUpdate": _iso(s.last_status_update),
        "printUrl": s.print_url,
        "metadata": s.order_snapshot,
        "createdBy": s.created_by,
        "createdAt": _iso(s.created_at),
        "updatedAt": _iso(s.updated_at),
    }


def status_log_to_dict(log: DeliveryStatusLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "shipmentId": log.shipment_id,
        "previousStatus": log.previous_status.value if log.previous_status else None,
        "status": log.status.value,
        "statusCode": log.status_code,
        "message": log.message,
        "source": log.source.value if log.source else None,
        "userId": log.user_id,
        "timestamp": _iso(log.timestamp),
    }


class DeliveryService:
    """Shipment lifecycle: create, track, retry, cancel and manual overrides.

    Every status change goes through :meth:`_apply_status_change`, which
    writes the shipment, then its status-log row, then the order status, each
    committed on its own. Audit activities are written last and never fail
    the operation.
    """

    def __init__(
        self,
        registry: AgencyRegistry,
        session_factory: Callable[[], Session],
        activity_logger: ActivityLogger,
        *,
        max_create_attempts: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.registry = registry
        self._session_factory = session_factory
        self.activity = activity_logger
        self._max_create_attempts = max_create_attempts or settings.DELIVERY_CREATE_MAX_ATTEMPTS
        self._retry_backoff_seconds = (
            retry_backoff_seconds
            if retry_backoff_seconds is not None
            else settings.DELIVERY_CREATE_RETRY_BACKOFF_SECONDS
        )
        self._sleep = sleep
        self._order_locks: Dict[str, asyncio.Lock] = {}
        self._order_lock_users: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Status writes
    # ------------------------------------------------------------------

    def _apply_status_change(
        self,
        db: Session,
        shipment: DeliveryShipment,
        new_status: DeliveryStatus,
        *,
        source: DeliveryStatusSource,
        message: str,
        status_code: Optional[int] = None,
        raw_data: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        propagate_to_order: bool = True,
    ) -> Tuple[Optional[DeliveryStatus], Optional[OrderStatus], Optional[OrderStatus]]:
        """Persist a transition in three committed steps.

        A failure part-way leaves the earlier steps in place; the next
        successful sync of the shipment converges the rest.
        """

        old_status = shipment.status
        shipment_id = shipment.id
        order_id = shipment.order_id
        now = _next_timestamp(shipment.last_status_update)

        shipment.status = new_status
        shipment.last_status_update = now
        db.commit()

        db.add(
            DeliveryStatusLog(
                shipment_id=shipment_id,
                previous_status=old_status,
                status=new_status,
                status_code=status_code,
                message=message,
                source=source,
                raw_data=raw_data,
                user_id=user_id,
                timestamp=now,
            )
        )
        db.commit()

        old_order_status: Optional[OrderStatus] = None
        new_order_status: Optional[OrderStatus] = None
        if propagate_to_order:
            order = db.get(Order, order_id)
            if order is not None:
                old_order_status = order.status
                order.status = OrderStatus(new_status.value)
                db.commit()
                new_order_status = OrderStatus(new_status.value)
            else:
                logger.warning(f"Shipment {shipment_id} references missing order {order_id}")

        return old_status, old_order_status, new_order_status

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _order_lock(self, order_id: str) -> AsyncIterator[None]:
        """Serialize creates for one order; the lock is dropped once nobody holds or awaits it."""

        lock = self._order_locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._order_locks[order_id] = lock
        self._order_lock_users[order_id] = self._order_lock_users.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._order_lock_users[order_id] - 1
            if remaining:
                self._order_lock_users[order_id] = remaining
            else:
                del self._order_lock_users[order_id]
                del self._order_locks[order_id]

    async def _create_with_retry(
        self,
        adapter: AgencyAdapter,
        order: DeliveryOrder,
        credentials: DeliveryCredentials,
    ) -> DeliveryOrderResponse:
        attempts = max(1, int(self._max_create_attempts))
        result = DeliveryOrderResponse.failure(DeliveryErrorKind.NETWORK, "Courier request not attempted")
        for attempt in range(1, attempts + 1):
            result = await adapter.create_order(order, credentials)
            if result.success or result.error_kind not in TRANSIENT_ERROR_KINDS or attempt == attempts:
                return result
            backoff = self._retry_backoff_seconds * attempt
            logger.warning(
                f"[{adapter.id}] create attempt {attempt}/{attempts} failed ({result.error_kind.value}); "
                f"retrying in {backoff:g}s"
            )
            await self._sleep(backoff)
        return result

    async def create_shipment(
        self,
        order_id: str,
        agency_id: str,
        order: DeliveryOrder,
        actor=None,
        *,
        replaces_shipment_id: Optional[str] = None,
    ) -> DeliveryOrderResponse:
        logger.info(f"Creating shipment for order {order_id} via {agency_id}")

        await self.registry.ensure_initialized()
        adapter = self.registry.get_agency(agency_id)
        config = self.registry.get_agency_config(agency_id)
        if adapter is None or config is None:
            return DeliveryOrderResponse.failure(DeliveryErrorKind.NOT_FOUND, "Agency not found")
        if not config.enabled:
            return DeliveryOrderResponse.failure(DeliveryErrorKind.AGENCY_DISABLED, "Agency is disabled")

        async with self._order_lock(order_id):
            db = self._session_factory()
            try:
                if db.get(Order, order_id) is None:
                    return DeliveryOrderResponse.failure(DeliveryErrorKind.NOT_FOUND, "Order not found")
                active = (
                    db.query(DeliveryShipment)
                    .filter(
                        DeliveryShipment.order_id == order_id,
                        DeliveryShipment.status.in_(ACTIVE_DELIVERY_STATUSES),
                    )
                    .all()
                )
                blocking = [s for s in active if s.id != replaces_shipment_id]
                if blocking:
                    return DeliveryOrderResponse.failure(
                        DeliveryErrorKind.VALIDATION,
                        "Order already has an active shipment",
                        [f"Tracking number {blocking[0].tracking_number} ({blocking[0].status.value})"],
                    )
            finally:
                db.close()

            result = await self._create_with_retry(adapter, order, config.credentials)
            if not result.success:
                logger.warning(
                    f"Shipment creation failed for order {order_id} via {agency_id}: "
                    f"{result.error} {result.error_details}"
                )
                return result
            if not result.tracking_number:
                return DeliveryOrderResponse.failure(
                    DeliveryErrorKind.PROTOCOL,
                    "Invalid courier response",
                    ["Courier did not return a tracking number"],
                )

            user_id = actor.id if actor is not None else None
            initial_status = result.status or DeliveryStatus.UPLOADED
            created_at = _utcnow()

            db = self._session_factory()
            try:
                shipment = DeliveryShipment(
                    order_id=order_id,
                    agency_id=agency_id,
                    tracking_number=result.tracking_number,
                    barcode=result.barcode,
                    status=initial_status,
                    last_status_update=created_at,
                    print_url=result.print_url,
                    order_snapshot=order.to_snapshot(),
                    created_by=user_id,
                )
                db.add(shipment)
                try:
                    db.commit()
                except IntegrityError as e:
                    db.rollback()
                    logger.error(
                        f"Could not record shipment {result.tracking_number} for order {order_id}: {e}"
                    )
                    return DeliveryOrderResponse.failure(
                        DeliveryErrorKind.PROTOCOL,
                        "Tracking number already registered for this agency",
                        [result.tracking_number],
                    )

                shipment_id = shipment.id

                # The old shipment is only retired once its replacement is stored.
                if replaces_shipment_id:
                    previous = db.get(DeliveryShipment, replaces_shipment_id)
                    if previous is not None and previous.status != DeliveryStatus.RETURNED:
                        self._apply_status_change(
                            db,
                            previous,
                            DeliveryStatus.RETURNED,
                            source=DeliveryStatusSource.MANUAL,
                            message=f"Superseded by retry (new tracking {result.tracking_number})",
                            user_id=user_id,
                            propagate_to_order=False,
                        )

                db.add(
                    DeliveryStatusLog(
                        shipment_id=shipment_id,
                        previous_status=None,
                        status=initial_status,
                        status_code=result.status_code,
                        message=f"Shipment created and uploaded to {adapter.name}",
                        source=DeliveryStatusSource.API,
                        user_id=user_id,
                        timestamp=created_at,
                    )
                )
                db.commit()

                db_order = db.get(Order, order_id)
                if db_order is not None:
                    db_order.status = OrderStatus(initial_status.value)
                    db.commit()
            finally:
                db.close()

        self.activity.log_for_actor(
            actor,
            ActivityType.ORDER_SHIPPED,
            f"Order shipped via {adapter.name} - Tracking: {result.tracking_number}",
            order_id=order_id,
            metadata={
                "agencyId": agency_id,
                "agencyName": adapter.name,
                "trackingNumber": result.tracking_number,
                "shipmentId": shipment_id,
                "replacesShipmentId": replaces_shipment_id,
            },
        )
        logger.info(f"Shipment created: {result.tracking_number} (shipment {shipment_id})")

        result.shipment_id = shipment_id
        result.status = initial_status

        # Reconcile with the courier right away; a failure here leaves the
        # shipment as created and the next sync pass picks it up.
        tracking = await self.track_shipment(shipment_id)
        if tracking.success and tracking.status is not None and tracking.status_changed:
            result.status = tracking.status.status
        elif not tracking.success:
            logger.warning(f"Post-create reconcile failed for shipment {shipment_id}: {tracking.error}")

        return result

    async def retry_shipment(self, shipment_id: str, actor=None) -> DeliveryOrderResponse:
        """Re-send a shipment to its courier using the order snapshot taken at ship time."""

        db = self._session_factory()
        try:
            shipment = db.get(DeliveryShipment, shipment_id)
            if shipment is None or not shipment.order_snapshot:
                return DeliveryOrderResponse.failure(
                    DeliveryErrorKind.NOT_FOUND, "Shipment not found or missing data"
                )
            order_id = shipment.order_id
            agency_id = shipment.agency_id
            order = DeliveryOrder.from_snapshot(shipment.order_snapshot)
        finally:
            db.close()

        return await self.create_shipment(
            order_id,
            agency_id,
            order,
            actor,
            replaces_shipment_id=shipment_id,
        )

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    async def track_shipment(
        self,
        shipment_id: str,
        *,
        source: DeliveryStatusSource = DeliveryStatusSource.API,
    ) -> DeliveryTrackingResponse:
        db = self._session_factory()
        try:
            shipment = db.get(DeliveryShipment, shipment_id)
            if shipment is None:
                return DeliveryTrackingResponse.failure(DeliveryErrorKind.NOT_FOUND, "Shipment not found")
            agency_id = shipment.agency_id
            tracking_number = shipment.tracking_number
        finally:
            db.close()

        await self.registry.ensure_initialized()
        adapter = self.registry.get_agency(agency_id)
        config = self.registry.get_agency_config(agency_id)
        if adapter is None or config is None:
            return DeliveryTrackingResponse.failure(DeliveryErrorKind.NOT_FOUND, "Agency not found")

        result = await adapter.track_order(tracking_number, config.credentials)
        if not result.success or result.status is None:
            return result

        reported = result.status.status
        db = self._session_factory()
        try:
            # Re-read: the status may have moved while the courier call was in flight.
            shipment = db.get(DeliveryShipment, shipment_id)
            if shipment is None:
                return DeliveryTrackingResponse.failure(DeliveryErrorKind.NOT_FOUND, "Shipment not found")

            result.previous_status = shipment.status
            if reported == shipment.status:
                return result

            if not is_forward_transition(shipment.status, reported):
                logger.warning(
                    f"Ignoring regressive status for shipment {shipment_id} ({tracking_number}): "
                    f"{shipment.status.value} -> {reported.value}"
                )
                return result

            old_status, old_order_status, new_order_status = self._apply_status_change(
                db,
                shipment,
                reported,
                source=source,
                message=result.status.message,
                status_code=result.status.status_code,
                raw_data={"statusCode": result.status.status_code, "message": result.status.message},
            )
        finally:
            db.close()

        result.status_changed = True
        result.previous_order_status = old_order_status
        result.order_status = new_order_status
        logger.info(f"Status updated for {tracking_number}: {old_status.value} -> {reported.value}")

        self.activity.log(
            ActivityType.SHIPMENT_STATUS_CHANGED,
            f"Shipment {tracking_number} moved from {old_status.value} to {reported.value}",
            order_id=self._order_id_of(shipment_id),
            metadata={
                "shipmentId": shipment_id,
                "agencyId": agency_id,
                "trackingNumber": tracking_number,
                "oldStatus": old_status.value,
                "newStatus": reported.value,
                "source": source.value,
            },
        )
        return result

    async def track_shipment_by_tracking_number(
        self,
        tracking_number: str,
        agency_id: Optional[str] = None,
    ) -> DeliveryTrackingResponse:
        db = self._session_factory()
        try:
            q = db.query(DeliveryShipment).filter(DeliveryShipment.tracking_number == tracking_number)
            if agency_id:
                q = q.filter(DeliveryShipment.agency_id == agency_id)
            shipment = q.order_by(desc(DeliveryShipment.created_at)).first()
            shipment_id = shipment.id if shipment is not None else None
        finally:
            db.close()

        if shipment_id is None:
            return DeliveryTrackingResponse.failure(DeliveryErrorKind.NOT_FOUND, "Shipment not found")
        return await self.track_shipment(shipment_id)

    async def get_courier_history(self, shipment_id: str) -> DeliveryTrackingResponse:
        """Full status history as the courier reports it; nothing is persisted."""

        db = self._session_factory()
        try:
            shipment = db.get(DeliveryShipment, shipment_id)
            if shipment is None:
                return DeliveryTrackingResponse.failure(DeliveryErrorKind.NOT_FOUND, "Shipment not found")
            agency_id = shipment.agency_id
            tracking_number = shipment.tracking_number
        finally:
            db.close()

        await self.registry.ensure_initialized()
        adapter = self.registry.get_agency(agency_id)
        config = self.registry.get_agency_config(agency_id)
        if adapter is None or config is None:
            return DeliveryTrackingResponse.failure(DeliveryErrorKind.NOT_FOUND, "Agency not found")

        track_history = getattr(adapter, "track_history", None)
        if track_history is None:
            return DeliveryTrackingResponse.failure(
                DeliveryErrorKind.VALIDATION, f"{adapter.name} does not provide status history"
            )
        return await track_history(tracking_number, config.credentials)

    def _order_id_of(self, shipment_id: str) -> Optional[str]:
        db = self._session_factory()
        try:
            shipment = db.get(DeliveryShipment, shipment_id)
            return shipment.order_id if shipment is not None else None
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Manual overrides
    # ------------------------------------------------------------------

    async def bulk_update_shipment_status(
        self,
        shipment_ids: Sequence[str],
        new_status: DeliveryStatus,
        actor=None,
    ) -> BulkUpdateResult:
        errors: List[str] = []
        updated = 0
        user_id = actor.id if actor is not None else None

        for shipment_id in shipment_ids:
            db = self._session_factory()
            try:
                shipment = db.get(DeliveryShipment, shipment_id)
                if shipment is None:
                    errors.append(f"{shipment_id}: Shipment not found")
                    continue
                if shipment.status != new_status:
                    self._apply_status_change(
                        db,
                        shipment,
                        new_status,
                        source=DeliveryStatusSource.MANUAL,
                        message=f"Bulk update to {new_status.value}",
                        user_id=user_id,
                    )
                updated += 1
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Bulk update failed for shipment {shipment_id}: {e}")
                errors.append(f"{shipment_id}: {str(e)}")
            finally:
                db.close()

        if actor is not None:
            self.activity.log_for_actor(
                actor,
                ActivityType.SHIPMENTS_BULK_UPDATED,
                f"Bulk updated {updated} shipments to {new_status.value}",
                metadata={
                    "shipmentIds": list(shipment_ids),
                    "newStatus": new_status.value,
                    "updated": updated,
                    "errors": len(errors),
                },
            )

        return BulkUpdateResult(success=not errors, updated=updated, errors=errors)

    async def delete_shipment(self, shipment_id: str, actor=None) -> bool:
        """Soft delete: the shipment is marked RETURNED and kept for the audit trail."""

        db = self._session_factory()
        try:
            shipment = db.get(DeliveryShipment, shipment_id)
            if shipment is None:
                return False
            tracking_number = shipment.tracking_number
            order_id = shipment.order_id
            if shipment.status != DeliveryStatus.RETURNED:
                self._apply_status_change(
                    db,
                    shipment,
                    DeliveryStatus.RETURNED,
                    source=DeliveryStatusSource.MANUAL,
                    message="Shipment cancelled",
                    user_id=actor.id if actor is not None else None,
                )
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to delete shipment {shipment_id}: {e}")
            return False
        finally:
            db.close()

        self.activity.log_for_actor(
            actor,
            ActivityType.SHIPMENT_CANCELLED,
            f"Shipment {tracking_number} cancelled",
            order_id=order_id,
            metadata={"shipmentId": shipment_id, "trackingNumber": tracking_number},
        )
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_shipment(self, shipment_id: str) -> Optional[Dict[str, Any]]:
        db = self._session_factory()
        try:
            shipment = db.get(DeliveryShipment, shipment_id)
            return shipment_to_dict(shipment) if shipment is not None else None
        finally:
            db.close()

    def get_shipments_by_order_id(self, order_id: str) -> List[Dict[str, Any]]:
        db = self._session_factory()
        try:
            rows = (
                db.query(DeliveryShipment)
                .filter(DeliveryShipment.order_id == order_id)
                .order_by(desc(DeliveryShipment.created_at))
                .all()
            )
            return [shipment_to_dict(s) for s in rows]
        finally:
            db.close()

    def get_all_shipments(
        self,
        limit: Optional[int] = None,
        status: Optional[DeliveryStatus] = None,
        agency_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        db = self._session_factory()
        try:
            q = db.query(DeliveryShipment)
            if status is not None:
                q = q.filter(DeliveryShipment.status == status)
            if agency_id:
                q = q.filter(DeliveryShipment.agency_id == agency_id)
            q = q.order_by(desc(DeliveryShipment.created_at))
            if limit:
                q = q.limit(limit)
            return [shipment_to_dict(s) for s in q.all()]
        finally:
            db.close()

    def get_status_logs(self, shipment_id: str) -> List[Dict[str, Any]]:
        db = self._session_factory()
        try:
            rows = (
                db.query(DeliveryStatusLog)
                .filter(DeliveryStatusLog.shipment_id == shipment_id)
                .order_by(DeliveryStatusLog.timestamp)
                .all()
            )
            return [status_log_to_dict(r) for r in rows]
        finally:
            db.close()
